"""Data models for the workflow engine."""

from .core import (
    NodeCategory,
    TriggerType,
    ActionType,
    LogicType,
    ExecutionStatusEnum,
    LogSeverity,
    ValidationResult,
    RunSettings,
    Node,
    Edge,
    Workflow,
    LogEntry,
    NodeFailure,
    NodeExecutionResult,
    WorkflowRun,
    WorkflowSummary,
    WebhookDelivery,
)

__all__ = [
    "NodeCategory",
    "TriggerType",
    "ActionType",
    "LogicType",
    "ExecutionStatusEnum",
    "LogSeverity",
    "ValidationResult",
    "RunSettings",
    "Node",
    "Edge",
    "Workflow",
    "LogEntry",
    "NodeFailure",
    "NodeExecutionResult",
    "WorkflowRun",
    "WorkflowSummary",
    "WebhookDelivery",
]
