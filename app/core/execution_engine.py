"""Execution engine service: runs workflows, tracks active runs and stops them on request."""

import asyncio
from typing import Any, Dict, List, Optional, Set

from ..models.core import RunSettings, Workflow, WorkflowRun
from .exceptions import ExecutionEngineError
from .logging import get_logger
from .node_registry import NodeRegistry
from .workflow_executor import WorkflowExecutor
from .workflow_registry import WorkflowRegistry

logger = get_logger(__name__)


class ExecutionEngine:
    """Service layer around WorkflowExecutor.

    Each run gets its own executor; runs of different workflows (or several
    runs of the same one) may proceed concurrently up to
    ``max_concurrent_executions``. Finished runs are recorded in the workflow
    registry.
    """

    def __init__(
        self,
        node_registry: NodeRegistry,
        workflow_registry: WorkflowRegistry,
        default_run_settings: Optional[RunSettings] = None,
        max_concurrent_executions: int = 10
    ):
        """Initialize the execution engine.

        Args:
            node_registry: Sealed registry of node executors
            workflow_registry: Store for workflows and run history
            default_run_settings: Run settings applied to nodes that leave them unset
            max_concurrent_executions: Maximum number of runs executing at once
        """
        if max_concurrent_executions < 1:
            raise ExecutionEngineError("max_concurrent_executions must be at least 1")

        self.node_registry = node_registry
        self.workflow_registry = workflow_registry
        self.default_run_settings = default_run_settings
        self._max_concurrent_executions = max_concurrent_executions
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._active: Dict[str, Dict[str, WorkflowExecutor]] = {}
        self._background_tasks: Set[asyncio.Task] = set()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrent_executions)
        return self._semaphore

    def _create_executor(self, workflow: Workflow, trigger_data: Optional[Any]) -> WorkflowExecutor:
        executor = WorkflowExecutor(
            workflow,
            self.node_registry,
            default_run_settings=self.default_run_settings,
            trigger_data=trigger_data,
        )
        # Registered before it starts so a queued run can be stopped too
        self._active.setdefault(workflow.id, {})[executor.run.id] = executor
        self.workflow_registry.save_execution(executor.run)
        return executor

    async def _run_executor(self, executor: WorkflowExecutor, start_node_id: Optional[str]) -> WorkflowRun:
        workflow_id = executor.workflow.id
        try:
            async with self._get_semaphore():
                if executor.run.status.is_terminal:
                    logger.info(f"Run {executor.run.id} was stopped before it started")
                    return executor.run
                run = await executor.execute(start_node_id)

            logger.info(f"Run {run.id} of workflow {workflow_id} finished with status {run.status.value}")
            return run
        finally:
            runs = self._active.get(workflow_id, {})
            runs.pop(executor.run.id, None)
            if not runs:
                self._active.pop(workflow_id, None)
            self.workflow_registry.save_execution(executor.run)

    async def execute_workflow(
        self,
        workflow: Workflow,
        start_node_id: Optional[str] = None,
        trigger_data: Optional[Any] = None
    ) -> WorkflowRun:
        """
        Execute a workflow and wait for the run to finish.

        Args:
            workflow: Workflow to execute
            start_node_id: Optional node to start from instead of the triggers
            trigger_data: Optional payload for trigger nodes

        Returns:
            The finished run
        """
        executor = self._create_executor(workflow, trigger_data)
        return await self._run_executor(executor, start_node_id)

    def start_background(
        self,
        workflow: Workflow,
        start_node_id: Optional[str] = None,
        trigger_data: Optional[Any] = None
    ) -> WorkflowRun:
        """
        Start a run without waiting for it. Must be called from a running event loop.

        Returns:
            The run record, still in the running state
        """
        executor = self._create_executor(workflow, trigger_data)
        task = asyncio.get_running_loop().create_task(self._run_executor(executor, start_node_id))
        # Strong reference; the loop only keeps weak ones
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        logger.info(f"Started background run {executor.run.id} for workflow {workflow.id}")
        return executor.run

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background run failed unexpectedly: {task.exception()}")

    def stop_workflow(self, workflow_id: str) -> List[str]:
        """
        Stop every active run of a workflow.

        Returns:
            IDs of the runs that were stopped
        """
        executors = list(self._active.get(workflow_id, {}).values())
        for executor in executors:
            executor.stop()
            self.workflow_registry.save_execution(executor.run)

        if executors:
            logger.info(f"Stopped {len(executors)} run(s) of workflow {workflow_id}")
        else:
            logger.warning(f"Attempted to stop workflow without active runs: {workflow_id}")
        return [executor.run.id for executor in executors]

    def get_active_executions(self) -> Dict[str, List[str]]:
        """Map of workflow id to the ids of its active runs."""
        return {workflow_id: list(runs.keys()) for workflow_id, runs in self._active.items() if runs}

    def is_workflow_running(self, workflow_id: str) -> bool:
        return bool(self._active.get(workflow_id))

    async def shutdown(self) -> None:
        """Stop all active runs and wait for background runs to wind down."""
        for workflow_id in list(self._active.keys()):
            self.stop_workflow(workflow_id)

        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        logger.info("ExecutionEngine shutdown completed")
