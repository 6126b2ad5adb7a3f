"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphError,
    ConfigValidationError,
    UnknownNodeTypeError,
    NodeExecutionError,
    NodeTimeoutError,
    ExecutionCancelledError,
    NodeRegistryError,
    ExecutionEngineError,
    WorkflowNotFoundError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .cancellation import CancellationToken
from .node_registry import NodeExecutor, NodeExecutionContext, NodeRegistry
from .resilience import ResilienceWrapper
from .run_store import RunStore
from .workflow_executor import WorkflowExecutor
from .workflow_registry import WorkflowRegistry
from .execution_engine import ExecutionEngine

__all__ = [
    "WorkflowEngineError",
    "GraphError",
    "ConfigValidationError",
    "UnknownNodeTypeError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ExecutionCancelledError",
    "NodeRegistryError",
    "ExecutionEngineError",
    "WorkflowNotFoundError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "CancellationToken",
    "NodeExecutor",
    "NodeExecutionContext",
    "NodeRegistry",
    "ResilienceWrapper",
    "RunStore",
    "WorkflowExecutor",
    "WorkflowRegistry",
    "ExecutionEngine",
]
