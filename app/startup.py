"""Application startup script and CLI interface."""

import argparse
import asyncio
import json
import sys
from typing import Optional

from pydantic import ValidationError

from app.config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from app.core.exceptions import WorkflowEngineError
from app.core.logging import get_logger, setup_logging
from app.factory import create_app
from app.models.core import ExecutionStatusEnum, Workflow, WorkflowRun


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Workflow Execution Engine - run graphs of trigger, action and logic nodes"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Execution configuration
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Maximum number of concurrent workflow executions"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow engine server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    execute_parser = subparsers.add_parser("execute", help="Execute a workflow JSON file once and print the run")
    execute_parser.add_argument("workflow_file", help="Path to the workflow definition (JSON)")
    execute_parser.add_argument("--start-node", help="Start from this node instead of the triggers")
    execute_parser.add_argument("--trigger-data", help="JSON payload handed to trigger nodes")

    subparsers.add_parser("node-types", help="List the registered node types")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Override with command line arguments
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = args.reload
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = args.debug
    if args.max_concurrent_executions:
        config.max_concurrent_executions = args.max_concurrent_executions

    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the workflow engine server."""
    import uvicorn

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        # Workers build their app from the environment.
        uvicorn.run("app.main:app", workers=workers, **uvicorn_config)
    else:
        app = create_app(config)
        uvicorn.run(app, **uvicorn_config)


async def execute_workflow_file(
    config: AppConfig,
    workflow_file: str,
    start_node_id: Optional[str] = None,
    trigger_data: Optional[str] = None
) -> WorkflowRun:
    """Run a workflow definition once and return the finished run."""
    from app.factory import initialize_core_components

    logger = get_logger(__name__)

    with open(workflow_file, "r", encoding="utf-8") as f:
        workflow = Workflow.model_validate(json.load(f))
    payload = json.loads(trigger_data) if trigger_data else None

    _, workflow_registry, execution_engine = initialize_core_components(config, logger)
    workflow_registry.save_workflow(workflow)

    try:
        run = await execution_engine.execute_workflow(workflow, start_node_id=start_node_id, trigger_data=payload)
    finally:
        await execution_engine.shutdown()

    return run


def show_node_types(config: AppConfig):
    """Print the registered node types."""
    from app.nodes import build_node_registry

    for node_type in build_node_registry(config).list_node_types():
        print(f"  {node_type['category']}/{node_type['subtype']}: {node_type['description']}")


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Environment: {config.environment.value}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Executions: {config.max_concurrent_executions}")
    print(f"  Node Timeout: {config.node_timeout}s")
    print(f"  Node Retry Count: {config.node_retry_count}")
    print(f"  Node Retry Delay: {config.node_retry_delay}s")
    print(f"  Node Continue On Fail: {config.node_continue_on_fail}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except WorkflowEngineError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e.message}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        validate_config(config)

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, "workers", 1))

        elif args.command == "execute":
            setup_logging(level=config.log_level.value, log_file=config.log_file, structured=config.structured_logging)
            run = asyncio.run(
                execute_workflow_file(config, args.workflow_file, args.start_node, args.trigger_data)
            )
            print(run.model_dump_json(indent=2))
            sys.exit(0 if run.status == ExecutionStatusEnum.COMPLETED else 1)

        elif args.command == "node-types":
            show_node_types(config)

        else:
            parser.print_help()

    except (WorkflowEngineError, ValidationError, OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
