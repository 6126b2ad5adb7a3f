"""Core Pydantic models for the workflow engine."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator, model_validator


class NodeCategory(str, Enum):
    """Top-level node families."""
    TRIGGER = "trigger"
    ACTION = "action"
    LOGIC = "logic"


class TriggerType(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EMAIL = "email"


class ActionType(str, Enum):
    HTTP = "http"
    EMAIL = "email"
    DATABASE = "database"
    TRANSFORM = "transform"
    DELAY = "delay"


class LogicType(str, Enum):
    IF = "if"
    SWITCH = "switch"
    LOOP = "loop"
    FILTER = "filter"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow run statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != ExecutionStatusEnum.RUNNING


class LogSeverity(str, Enum):
    """Severity of a run log entry."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ValidationResult(BaseModel):
    """Result of workflow structure validation."""
    is_valid: bool = Field(..., description="Whether the workflow can be executed")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class RunSettings(BaseModel):
    """Per-node resilience settings. Unset fields fall back to engine defaults."""
    timeout: Optional[float] = Field(None, description="Per-attempt timeout in seconds")
    retry_count: Optional[int] = Field(None, description="Additional attempts after the first failure")
    retry_delay: Optional[float] = Field(None, description="Fixed wait between attempts in seconds")
    continue_on_fail: Optional[bool] = Field(None, description="Absorb exhausted failures and continue downstream")

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout

    @field_validator('retry_count')
    @classmethod
    def validate_retry_count(cls, retry_count):
        if retry_count is not None and retry_count < 0:
            raise ValueError("Retry count cannot be negative")
        return retry_count

    @field_validator('retry_delay')
    @classmethod
    def validate_retry_delay(cls, retry_delay):
        if retry_delay is not None and retry_delay < 0:
            raise ValueError("Retry delay cannot be negative")
        return retry_delay

    def merged_with(self, defaults: "RunSettings") -> "RunSettings":
        """Return settings where every unset field is taken from ``defaults``."""
        return RunSettings(
            timeout=self.timeout if self.timeout is not None else defaults.timeout,
            retry_count=self.retry_count if self.retry_count is not None else defaults.retry_count,
            retry_delay=self.retry_delay if self.retry_delay is not None else defaults.retry_delay,
            continue_on_fail=(
                self.continue_on_fail if self.continue_on_fail is not None else defaults.continue_on_fail
            ),
        )


class Node(BaseModel):
    """A single step in a workflow."""
    id: str = Field(..., description="Unique identifier for the node")
    label: Optional[str] = Field(None, description="Human readable label")
    category: NodeCategory = Field(..., description="Node family")
    subtype: str = Field(..., description="Node type within the family, e.g. http or if")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    run_settings: RunSettings = Field(default_factory=RunSettings, description="Timeout and retry settings")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @field_validator('subtype')
    @classmethod
    def validate_subtype(cls, subtype):
        if not subtype or not subtype.strip():
            raise ValueError("Node subtype cannot be empty")
        return subtype.strip()

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """Directed connection between two nodes."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    branch_handle: Optional[str] = Field(
        None, description="Branch discriminator this edge is followed for (logic nodes only)"
    )

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class Workflow(BaseModel):
    """A directed graph of nodes and edges."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Workflow identifier")
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = Field(None, description="Description of the workflow")
    nodes: List[Node] = Field(default_factory=list, description="Nodes in the workflow")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Edges leaving ``node_id`` in listed order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[Edge]:
        """Edges entering ``node_id`` in listed order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def trigger_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.category == NodeCategory.TRIGGER]

    def find_cycle(self, entry_ids: Optional[List[str]] = None) -> Optional[List[str]]:
        """
        Find a cycle reachable from the given entry nodes using DFS.

        Args:
            entry_ids: Node IDs to start the search from. Defaults to every node.

        Returns:
            The cycle as a list of node IDs whose first and last element are the
            same node, or None when the reachable subgraph is acyclic.
        """
        node_ids = {node.id for node in self.nodes}
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            if edge.target in node_ids:
                graph.setdefault(edge.source, []).append(edge.target)

        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def visit(node_id: str) -> Optional[List[str]]:
            visited.add(node_id)
            path.append(node_id)
            on_path.add(node_id)

            for neighbor in graph.get(node_id, []):
                if neighbor in on_path:
                    return path[path.index(neighbor):] + [neighbor]
                if neighbor not in visited:
                    cycle = visit(neighbor)
                    if cycle:
                        return cycle

            path.pop()
            on_path.remove(node_id)
            return None

        starts = entry_ids if entry_ids is not None else [node.id for node in self.nodes]
        for node_id in starts:
            if node_id in node_ids and node_id not in visited:
                cycle = visit(node_id)
                if cycle:
                    return cycle
        return None

    def validate_structure(self) -> ValidationResult:
        """Check the workflow for problems that would make a run fail or behave oddly."""
        errors = []
        warnings = []

        if not self.trigger_nodes():
            warnings.append("Workflow has no trigger nodes and can only run from an explicit start node")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

        node_ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.source not in node_ids:
                warnings.append(f"Edge {edge.id} references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                warnings.append(f"Edge {edge.id} references non-existent target node: {edge.target}")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )


class LogEntry(BaseModel):
    """One entry of a run's execution log."""
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Time the entry was appended")
    node_id: str = Field(..., description="Node that emitted the entry, or a workflow-* marker")
    level: LogSeverity = Field(LogSeverity.INFO, description="Entry severity")
    message: str = Field(..., description="Log message")
    data: Optional[Any] = Field(None, description="Structured payload, e.g. the node output")


class NodeFailure(BaseModel):
    """Output recorded for a node whose exhausted failure was absorbed by continue_on_fail."""
    error: bool = Field(True, description="Always true")
    message: str = Field(..., description="Final failure message")


class NodeExecutionResult(BaseModel):
    """What a node executor returns for one attempt."""
    success: bool = Field(..., description="Whether the attempt succeeded")
    output: Optional[Any] = Field(None, description="Node output on success")
    error: Optional[str] = Field(None, description="Failure message")

    @classmethod
    def ok(cls, output: Any = None) -> "NodeExecutionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str) -> "NodeExecutionResult":
        return cls(success=False, error=error)


class WorkflowRun(BaseModel):
    """Record of a single workflow execution."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Run identifier")
    workflow_id: str = Field(..., description="ID of the workflow being executed")
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.RUNNING, description="Current run status")
    started_at: datetime = Field(default_factory=datetime.utcnow, description="Run start time")
    completed_at: Optional[datetime] = Field(None, description="Time the run reached a terminal status")
    error: Optional[str] = Field(None, description="Top-level failure message")
    logs: List[LogEntry] = Field(default_factory=list, description="Ordered execution log")
    node_outputs: Dict[str, Any] = Field(default_factory=dict, description="Last output per node")

    def logs_for(self, node_id: str) -> List[LogEntry]:
        return [entry for entry in self.logs if entry.node_id == node_id]


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    node_count: int = Field(..., description="Number of nodes")
    edge_count: int = Field(..., description="Number of edges")
    created_at: datetime = Field(..., description="Time the workflow was first saved")
    updated_at: datetime = Field(..., description="Time the workflow was last saved")


class WebhookDelivery(BaseModel):
    """A payload received on a workflow's webhook endpoint."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Delivery identifier")
    workflow_id: str = Field(..., description="Target workflow")
    event: Optional[str] = Field(None, description="Event name supplied by the sender")
    data: Any = Field(None, description="Delivered payload")
    received_at: datetime = Field(default_factory=datetime.utcnow, description="Receive time")
    run_id: Optional[str] = Field(None, description="Run started for this delivery")
