"""Orchestrates a single workflow run: entry resolution, depth-first traversal and branch routing."""

from datetime import datetime
from typing import Any, List, Optional

from ..models.core import (
    ExecutionStatusEnum, LogicType, Node, NodeCategory, NodeFailure, RunSettings, Workflow, WorkflowRun
)
from .cancellation import CancellationToken
from .exceptions import (
    ExecutionCancelledError, ExecutionEngineError, GraphError, WorkflowEngineError
)
from .logging import get_logger
from .node_registry import NodeRegistry
from .resilience import ResilienceWrapper
from .run_store import RunStore

logger = get_logger(__name__)

WORKFLOW_START = "workflow-start"
WORKFLOW_END = "workflow-end"
WORKFLOW_ERROR = "workflow-error"
WORKFLOW_CANCELLED = "workflow-cancelled"


class WorkflowExecutor:
    """Executes one run of a workflow.

    Trigger nodes (or a single explicit start node) are executed one after
    another; from each, the graph is walked depth-first following outgoing
    edges in listed order. Nodes never run concurrently within a run. An
    instance owns exactly one run and cannot be reused.
    """

    def __init__(
        self,
        workflow: Workflow,
        node_registry: NodeRegistry,
        default_run_settings: Optional[RunSettings] = None,
        trigger_data: Optional[Any] = None
    ):
        """Initialize the executor.

        Args:
            workflow: Workflow to execute; not modified
            node_registry: Sealed registry used to resolve node executors
            default_run_settings: Defaults for nodes that leave run settings unset
            trigger_data: Payload handed to trigger nodes that have no incoming edge
        """
        self.workflow = workflow
        self.trigger_data = trigger_data
        self._run = WorkflowRun(workflow_id=workflow.id)
        self._store = RunStore(self._run, workflow)
        self._token = CancellationToken()
        self._wrapper = ResilienceWrapper(node_registry, default_run_settings)
        self._started = False

    @property
    def run(self) -> WorkflowRun:
        return self._run

    @property
    def is_running(self) -> bool:
        return self._started and not self._run.status.is_terminal

    async def execute(self, start_node_id: Optional[str] = None) -> WorkflowRun:
        """
        Run the workflow to a terminal status.

        Args:
            start_node_id: Execute only the subgraph reachable from this node
                instead of every trigger

        Returns:
            The finished run record. Failures are reported through its status,
            error and log rather than raised.

        Raises:
            ExecutionEngineError: If this executor has already been used
        """
        if self._started:
            raise ExecutionEngineError(
                "WorkflowExecutor instances are single-use",
                run_id=self._run.id, workflow_id=self.workflow.id
            )
        self._started = True

        self._store.info(WORKFLOW_START, f"Starting workflow: {self.workflow.name}")
        logger.info(f"Executing workflow {self.workflow.id} as run {self._run.id}")

        try:
            entry_nodes = self._resolve_entry_nodes(start_node_id)

            # Checked up front so no node runs in a cyclic graph
            cycle = self.workflow.find_cycle([node.id for node in entry_nodes])
            if cycle:
                raise GraphError(
                    f"Workflow contains a cycle: {' -> '.join(cycle)}",
                    workflow_id=self.workflow.id, cycle=cycle
                )

            for node in entry_nodes:
                if self._token.is_cancelled:
                    break
                await self._execute_node(node)

            if self._token.is_cancelled:
                self._mark_cancelled()
            else:
                self._finish(ExecutionStatusEnum.COMPLETED)
                self._store.info(WORKFLOW_END, "Workflow completed successfully")

        except ExecutionCancelledError:
            self._mark_cancelled()
        except WorkflowEngineError as e:
            self._fail(e.message)
        except Exception as e:
            logger.error(f"Unexpected error in run {self._run.id}: {e}", exc_info=True)
            self._fail(str(e) or type(e).__name__)

        return self._run

    def stop(self) -> None:
        """Cancel the run. Nodes not yet reached are never executed."""
        self._token.cancel("Workflow execution was stopped")
        if self._finish(ExecutionStatusEnum.CANCELLED):
            logger.info(f"Run {self._run.id} of workflow {self.workflow.id} stopped")

    def _resolve_entry_nodes(self, start_node_id: Optional[str]) -> List[Node]:
        if start_node_id:
            node = self.workflow.get_node(start_node_id)
            if node is None:
                raise GraphError(f"Start node not found: {start_node_id}", workflow_id=self.workflow.id)
            return [node]

        triggers = self.workflow.trigger_nodes()
        if not triggers:
            raise GraphError("No trigger nodes found in workflow", workflow_id=self.workflow.id)
        return triggers

    async def _execute_node(self, node: Node) -> None:
        self._token.raise_if_cancelled()
        self._store.info(node.id, f"Executing node: {node.display_name}")

        # Input comes from the first incoming edge only
        node_input = self._store.previous_output(node.id)
        previous_nodes = self._store.previous_node_ids(node.id)
        # Root triggers receive the run's trigger payload
        if node.category == NodeCategory.TRIGGER and not previous_nodes and self.trigger_data is not None:
            node_input = self.trigger_data

        try:
            output = await self._wrapper.invoke(node, self._store, self._token, node_input, previous_nodes)
        except ExecutionCancelledError:
            raise
        except WorkflowEngineError as e:
            self._store.error(node.id, f"Node execution failed: {e.message}")
            raise
        except Exception as e:
            self._store.error(node.id, f"Node execution failed: {e}")
            raise

        # continue_on_fail result
        if isinstance(output, NodeFailure):
            output = output.model_dump()

        self._store.record_output(node.id, output)
        self._store.info(node.id, "Node executed successfully", output)

        branch = self._branch_for(node, output)
        for edge in self.workflow.outgoing_edges(node.id):
            target = self.workflow.get_node(edge.target)
            if target is None:
                logger.debug(f"Skipping edge {edge.id}: target {edge.target} does not exist")
                continue
            # Unselected branch: skip before recursing so nothing below it runs
            if branch is not None and edge.branch_handle and edge.branch_handle != branch:
                continue
            await self._execute_node(target)

    @staticmethod
    def _branch_for(node: Node, output: Any) -> Optional[str]:
        """Branch label chosen by an if node, or None for nodes that do not branch."""
        if node.category != NodeCategory.LOGIC or node.subtype != LogicType.IF.value:
            return None
        if isinstance(output, dict):
            if isinstance(output.get("branch"), str):
                return output["branch"]
            if isinstance(output.get("condition_met"), bool):
                return "true" if output["condition_met"] else "false"
        return "false"

    def _finish(self, status: ExecutionStatusEnum, error: Optional[str] = None) -> bool:
        """Move the run to a terminal status. Returns False if it was already terminal."""
        if self._run.status.is_terminal:
            return False
        self._run.status = status
        self._run.error = error
        self._run.completed_at = datetime.utcnow()
        return True

    def _mark_cancelled(self) -> None:
        self._finish(ExecutionStatusEnum.CANCELLED)
        self._store.warning(WORKFLOW_CANCELLED, "Workflow cancelled")

    def _fail(self, message: str) -> None:
        if self._finish(ExecutionStatusEnum.FAILED, message):
            self._store.error(WORKFLOW_ERROR, f"Workflow failed: {message}")
        else:
            self._store.warning(WORKFLOW_CANCELLED, "Workflow cancelled")
