"""Timeout, retry and failure-absorption policy around a single node invocation."""

import asyncio
from typing import Any, List, Optional

from ..models.core import Node, NodeExecutionResult, NodeFailure, RunSettings
from .cancellation import CancellationToken
from .exceptions import (
    ConfigValidationError,
    ExecutionCancelledError,
    NodeExecutionError,
    NodeTimeoutError,
    WorkflowEngineError,
)
from .logging import get_logger, RetryLogger
from .node_registry import NodeExecutionContext, NodeExecutor, NodeRegistry, isolate_config
from .run_store import RunStore


logger = get_logger(__name__)

DEFAULT_RUN_SETTINGS = RunSettings(timeout=30.0, retry_count=0, retry_delay=0.0, continue_on_fail=False)


class RetryPolicy:
    """Effective attempt budget and fixed delay for one node."""

    def __init__(self, settings: RunSettings):
        self.timeout = settings.timeout
        self.max_attempts = (settings.retry_count or 0) + 1
        self.retry_delay = settings.retry_delay or 0.0
        self.continue_on_fail = bool(settings.continue_on_fail)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class ResilienceWrapper:
    """
    Runs one node through its executor with per-attempt timeout, bounded retry
    and optional continue-on-fail.

    Unknown node types and invalid configurations fail closed: they are raised
    before the executor is ever called and are never retried or absorbed. The
    same goes for run-level cancellation observed during an attempt or while
    waiting to retry.
    """

    def __init__(self, node_registry: NodeRegistry, default_settings: Optional[RunSettings] = None):
        self.node_registry = node_registry
        self.default_settings = (default_settings or RunSettings()).merged_with(DEFAULT_RUN_SETTINGS)
        self.retry_logger = RetryLogger("node_execution")

    def effective_settings(self, node: Node) -> RunSettings:
        return node.run_settings.merged_with(self.default_settings)

    async def invoke(
        self,
        node: Node,
        store: RunStore,
        run_token: CancellationToken,
        node_input: Any,
        previous_nodes: List[str]
    ) -> Any:
        """
        Execute ``node`` and return its output.

        Args:
            node: Node to execute
            store: Log and output store of the current run
            run_token: Run-level cancellation token
            node_input: Output of the node's first upstream source
            previous_nodes: IDs of every immediate predecessor

        Returns:
            The executor's output, or a NodeFailure when an exhausted failure
            is absorbed by continue_on_fail

        Raises:
            UnknownNodeTypeError: If no executor handles the node type
            ConfigValidationError: If the node configuration is invalid
            ExecutionCancelledError: If the run is stopped
            NodeExecutionError: If every attempt failed and continue_on_fail is off
        """
        executor = self.node_registry.get_executor(node.category, node.subtype)

        try:
            violations = executor.validate(isolate_config(node.config))
        except Exception as e:
            # A validator that trips over a malformed value still reports a violation
            violations = [f"Configuration could not be validated: {e}"]
        if violations:
            error = ConfigValidationError(violations, node_id=node.id)
            store.error(node.id, error.message, {"violations": violations})
            raise error

        policy = RetryPolicy(self.effective_settings(node))
        last_error: Optional[WorkflowEngineError] = None

        for attempt in range(1, policy.max_attempts + 1):
            run_token.raise_if_cancelled()
            # Fresh config copy and child token per attempt
            context = NodeExecutionContext(
                node_id=node.id,
                workflow_id=store.run.workflow_id,
                run_id=store.run.id,
                config=isolate_config(node.config),
                input=node_input,
                previous_nodes=list(previous_nodes),
                cancellation=run_token.child(),
            )

            try:
                output = await self._run_attempt(executor, context, run_token, policy.timeout, attempt)
                if attempt > 1:
                    self.retry_logger.log_retry_success(node.id, attempt)
                return output
            except ExecutionCancelledError:
                raise
            except NodeExecutionError as e:
                # A failure caused by a stop counts as cancellation
                if run_token.is_cancelled:
                    raise ExecutionCancelledError(run_token.reason or "Workflow execution was cancelled")
                last_error = e
            finally:
                context.cancellation.close()

            store.error(
                node.id,
                f"Attempt {attempt} failed: {last_error.message}",
                {"attempt": attempt, "max_attempts": policy.max_attempts}
            )
            self.retry_logger.log_attempt_failure(node.id, last_error, attempt, policy.max_attempts)

            # No delay after the final attempt
            if policy.should_retry(attempt) and policy.retry_delay > 0:
                await run_token.sleep(policy.retry_delay)

        self.retry_logger.log_retries_exhausted(node.id, last_error, policy.max_attempts)

        if policy.continue_on_fail:
            store.warning(node.id, "continue_on_fail enabled; proceeding downstream", {"error": last_error.message})
            return NodeFailure(message=last_error.message)

        raise last_error

    async def _run_attempt(
        self,
        executor: NodeExecutor,
        context: NodeExecutionContext,
        run_token: CancellationToken,
        timeout: Optional[float],
        attempt: int
    ) -> Any:
        """Race one executor call against its timeout and run-level cancellation."""
        # Executor call vs. run stop; timeout bounds both
        task = asyncio.ensure_future(self._call_executor(executor, context, attempt))
        run_waiter = asyncio.ensure_future(run_token.wait())

        try:
            done, _ = await asyncio.wait(
                {task, run_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not run_waiter.done():
                run_waiter.cancel()

        if task in done:
            result = task.result()
            # Stop landed in the same tick as the result
            run_token.raise_if_cancelled()
            return result

        # Still running: let it finish, drop whatever it returns
        task.add_done_callback(lambda t: self._discard_late_result(context.node_id, t))

        if run_token.is_cancelled:
            context.cancellation.cancel(run_token.reason or "Cancelled")
            raise ExecutionCancelledError(run_token.reason or "Workflow execution was cancelled")

        context.cancellation.cancel(f"Node timed out after {timeout:g}s")
        raise NodeTimeoutError(timeout, node_id=context.node_id, run_id=context.run_id, attempt=attempt)

    async def _call_executor(
        self,
        executor: NodeExecutor,
        context: NodeExecutionContext,
        attempt: int
    ) -> Any:
        try:
            result = await executor.execute(context)
        except NodeExecutionError:
            raise
        except ExecutionCancelledError as e:
            if context.cancellation.is_cancelled:
                raise
            raise NodeExecutionError(e.message, node_id=context.node_id, run_id=context.run_id, attempt=attempt)
        except WorkflowEngineError as e:
            raise NodeExecutionError(e.message, node_id=context.node_id, run_id=context.run_id, attempt=attempt)
        except Exception as e:
            raise NodeExecutionError(
                str(e) or type(e).__name__, node_id=context.node_id, run_id=context.run_id, attempt=attempt
            )

        if not isinstance(result, NodeExecutionResult):
            raise NodeExecutionError(
                f"Executor returned {type(result).__name__} instead of NodeExecutionResult",
                node_id=context.node_id, run_id=context.run_id, attempt=attempt
            )
        if not result.success:
            raise NodeExecutionError(
                result.error or "Node execution failed",
                node_id=context.node_id, run_id=context.run_id, attempt=attempt
            )
        return result.output

    @staticmethod
    def _discard_late_result(node_id: str, task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Discarded late failure from node {node_id}: {error}")
        else:
            logger.debug(f"Discarded late result from node {node_id}")
