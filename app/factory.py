"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import router, init_dependencies, reset_dependencies
from .config import AppConfig, get_config, validate_config
from .core.execution_engine import ExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.node_registry import NodeRegistry
from .core.workflow_registry import WorkflowRegistry
from .nodes import build_node_registry


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.node_registry: Optional[NodeRegistry] = None
        self.workflow_registry: Optional[WorkflowRegistry] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.started_at: Optional[datetime] = None


# Global application state
app_state = ApplicationState()


def initialize_core_components(
    config: AppConfig,
    logger,
    http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> tuple:
    """Build the node registry, workflow registry and execution engine."""
    node_registry = build_node_registry(config, http_transport=http_transport)
    workflow_registry = WorkflowRegistry(max_history=config.execution_history_size)
    execution_engine = ExecutionEngine(
        node_registry=node_registry,
        workflow_registry=workflow_registry,
        default_run_settings=config.default_run_settings(),
        max_concurrent_executions=config.max_concurrent_executions,
    )

    logger.info(f"Core components initialized with {len(node_registry)} node types")
    return node_registry, workflow_registry, execution_engine


def create_lifespan_handler(config: AppConfig, http_transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version} ({config.environment.value})")

        node_registry, workflow_registry, execution_engine = initialize_core_components(
            config, logger, http_transport
        )

        app_state.config = config
        app_state.node_registry = node_registry
        app_state.workflow_registry = workflow_registry
        app_state.execution_engine = execution_engine
        app_state.started_at = datetime.utcnow()

        init_dependencies(
            node_registry=node_registry,
            workflow_registry=workflow_registry,
            execution_engine=execution_engine
        )
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            logger.info(f"Shutting down {config.app_name}")
            await execution_engine.shutdown()
            reset_dependencies()
            app_state.execution_engine = None

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        config: Application configuration; loaded from the environment when omitted
        http_transport: Optional httpx transport for HTTP-calling nodes (tests)
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Execute workflows of trigger, action and logic nodes with timeouts, retries and branching",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, http_transport)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware

    if config.enable_performance_monitoring:
        app.add_middleware(
            PerformanceMonitoringMiddleware,
            slow_request_threshold=config.slow_request_threshold,
            slow_execution_threshold=config.slow_execution_threshold
        )
    # Outermost layer: tags responses from every other layer
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": service_name,
            "version": config.app_version
        }

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check: the engine is initialized and the registry is sealed."""
        engine = app_state.execution_engine
        node_registry = app_state.node_registry
        ready = engine is not None and node_registry is not None and node_registry.sealed

        content = {
            "ready": ready,
            "service": service_name,
            "timestamp": datetime.utcnow().isoformat()
        }
        if ready:
            content["node_types"] = len(node_registry)
            content["active_executions"] = engine.get_active_executions()

        return JSONResponse(status_code=200 if ready else 503, content=content)

    @app.get("/health/live")
    async def liveness_check():
        return {
            "alive": True,
            "timestamp": datetime.utcnow().isoformat()
        }
