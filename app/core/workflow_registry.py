"""In-memory store for workflow definitions, execution history and webhook deliveries."""

import threading
from datetime import datetime
from typing import Dict, List

from ..models.core import WebhookDelivery, Workflow, WorkflowRun, WorkflowSummary
from .exceptions import GraphError, WorkflowNotFoundError
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowRegistry:
    """Keeps workflows and their run history for the lifetime of the process.

    Nothing is persisted; restarting the service starts from an empty registry.
    """

    def __init__(self, max_history: int = 100):
        """Initialize the registry.

        Args:
            max_history: Runs and webhook deliveries kept per workflow
        """
        self._lock = threading.RLock()
        self._workflows: Dict[str, Workflow] = {}
        self._created_at: Dict[str, datetime] = {}
        self._updated_at: Dict[str, datetime] = {}
        self._executions: Dict[str, List[WorkflowRun]] = {}
        self._webhooks: Dict[str, List[WebhookDelivery]] = {}
        self._max_history = max_history

    def save_workflow(self, workflow: Workflow) -> Workflow:
        """
        Create or replace a workflow definition.

        Raises:
            GraphError: If the workflow contains a cycle
        """
        validation = workflow.validate_structure()
        if not validation.is_valid:
            raise GraphError(
                f"Workflow validation failed: {'; '.join(validation.errors)}",
                workflow_id=workflow.id
            ).add_details(validation_errors=validation.errors)

        if validation.warnings:
            logger.warning(f"Workflow {workflow.id} saved with warnings: {'; '.join(validation.warnings)}")

        now = datetime.utcnow()
        with self._lock:
            self._workflows[workflow.id] = workflow
            self._created_at.setdefault(workflow.id, now)
            self._updated_at[workflow.id] = now

        logger.info(f"Saved workflow {workflow.id} ({workflow.name})")
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list_workflows(self) -> List[WorkflowSummary]:
        with self._lock:
            return [
                WorkflowSummary(
                    id=workflow.id,
                    name=workflow.name,
                    description=workflow.description,
                    node_count=len(workflow.nodes),
                    edge_count=len(workflow.edges),
                    created_at=self._created_at[workflow.id],
                    updated_at=self._updated_at[workflow.id],
                )
                for workflow in self._workflows.values()
            ]

    def save_execution(self, run: WorkflowRun) -> None:
        """Record a run in its workflow's history, replacing an earlier copy of the same run."""
        with self._lock:
            history = self._executions.setdefault(run.workflow_id, [])
            history[:] = [existing for existing in history if existing.id != run.id]
            history.append(run)
            del history[:-self._max_history]

    def get_executions(self, workflow_id: str) -> List[WorkflowRun]:
        """Runs of a workflow, most recent first."""
        with self._lock:
            return list(reversed(self._executions.get(workflow_id, [])))

    def record_webhook(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._lock:
            deliveries = self._webhooks.setdefault(delivery.workflow_id, [])
            deliveries.append(delivery)
            del deliveries[:-self._max_history]
        return delivery

    def get_webhooks(self, workflow_id: str) -> List[WebhookDelivery]:
        """Webhook deliveries for a workflow, most recent first."""
        with self._lock:
            return list(reversed(self._webhooks.get(workflow_id, [])))
