"""Exception hierarchy for the workflow engine with structured error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for classification in logs and API responses."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"
    NOT_FOUND = "not_found"
    SECURITY = "security"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphError(WorkflowEngineError):
    """Raised when a workflow graph cannot be run: missing start node, no triggers, or a cycle."""

    def __init__(
        self,
        message: str,
        workflow_id: Optional[str] = None,
        cycle: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.cycle = cycle or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if cycle:
            self.add_details(cycle=cycle)


class ConfigValidationError(WorkflowEngineError):
    """Raised when a node configuration fails validation. Never retried."""

    def __init__(
        self,
        violations: List[str],
        node_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            f"Invalid configuration: {'; '.join(violations)}",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.violations = list(violations)
        self.add_details(violations=self.violations)
        if node_id:
            self.add_context(node_id=node_id)


class UnknownNodeTypeError(WorkflowEngineError):
    """Raised when no executor is registered for a (category, subtype) pair."""

    def __init__(self, category: str, subtype: str, **kwargs):
        super().__init__(
            f"Unknown node type: {category}/{subtype}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.node_category = category
        self.node_subtype = subtype
        self.add_details(node_category=category, node_subtype=subtype)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node attempt fails."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
        attempt: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if run_id:
            self.add_context(run_id=run_id)
        if attempt is not None:
            self.add_details(attempt=attempt)


class NodeTimeoutError(NodeExecutionError):
    """Raised when a single node attempt exceeds its timeout."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(f"Node timed out after {timeout:g}s", **kwargs)
        self.timeout = timeout
        self.add_details(timeout=timeout)


class ExecutionCancelledError(WorkflowEngineError):
    """Raised when a run is stopped while a node is executing or waiting to retry."""

    def __init__(self, message: str = "Workflow execution was cancelled", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CANCELLATION,
            **kwargs
        )


class NodeRegistryError(WorkflowEngineError):
    """Raised when node registry operations fail."""

    def __init__(
        self,
        message: str,
        node_type: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if node_type:
            self.add_context(node_type=node_type)
        if operation:
            self.add_context(operation=operation)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow id is not present in the registry."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow not found: {workflow_id}",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        self.add_context(workflow_id=workflow_id)


class WebhookSignatureError(WorkflowEngineError):
    """Raised when an incoming webhook delivery carries a missing or invalid signature."""

    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.SECURITY,
            **kwargs
        )


class ConfigurationError(WorkflowEngineError):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }


def get_status_code(error: WorkflowEngineError) -> int:
    """Map an engine error to an HTTP status code."""
    if error.category == ErrorCategory.NOT_FOUND:
        return 404
    if error.category == ErrorCategory.VALIDATION:
        return 400
    if error.category == ErrorCategory.SECURITY:
        return 401
    if error.category == ErrorCategory.CANCELLATION:
        return 409
    return 500
