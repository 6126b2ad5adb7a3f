"""Append-only execution log and per-node output map for a single run."""

import logging
from typing import Any, Dict, List, Optional

from ..models.core import LogEntry, LogSeverity, Workflow, WorkflowRun
from .logging import get_logger, log_with_context

logger = get_logger(__name__)

_LEVELS = {
    LogSeverity.INFO: logging.INFO,
    LogSeverity.WARNING: logging.WARNING,
    LogSeverity.ERROR: logging.ERROR,
}


class RunStore:
    """Owns the log entries and node outputs of one WorkflowRun.

    Entries are only ever appended, and each one is mirrored to process logging
    with the run and workflow identifiers attached. Outputs are keyed by node id;
    a node visited twice in one run keeps only its latest output.
    """

    def __init__(self, run: WorkflowRun, workflow: Workflow):
        self.run = run
        self.workflow = workflow

    @property
    def logs(self) -> List[LogEntry]:
        return self.run.logs

    @property
    def outputs(self) -> Dict[str, Any]:
        return self.run.node_outputs

    def log(
        self,
        level: LogSeverity,
        node_id: str,
        message: str,
        data: Optional[Any] = None
    ) -> LogEntry:
        entry = LogEntry(node_id=node_id, level=level, message=message, data=data)
        self.run.logs.append(entry)

        log_with_context(
            logger, _LEVELS[level], f"[{node_id}] {message}",
            run_id=self.run.id,
            workflow_id=self.run.workflow_id,
            node_id=node_id
        )
        return entry

    def info(self, node_id: str, message: str, data: Optional[Any] = None) -> LogEntry:
        return self.log(LogSeverity.INFO, node_id, message, data)

    def warning(self, node_id: str, message: str, data: Optional[Any] = None) -> LogEntry:
        return self.log(LogSeverity.WARNING, node_id, message, data)

    def error(self, node_id: str, message: str, data: Optional[Any] = None) -> LogEntry:
        return self.log(LogSeverity.ERROR, node_id, message, data)

    def record_output(self, node_id: str, output: Any) -> None:
        self.run.node_outputs[node_id] = output

    def previous_output(self, node_id: str) -> Any:
        """Output of the source of the first edge targeting ``node_id``.

        Only that single upstream output is visible, even when the node has
        several incoming edges. Returns an empty dict when there is no incoming
        edge or the source has not produced output yet.
        """
        incoming = self.workflow.incoming_edges(node_id)
        if not incoming:
            return {}
        output = self.run.node_outputs.get(incoming[0].source)
        return {} if output is None else output

    def previous_node_ids(self, node_id: str) -> List[str]:
        return [edge.source for edge in self.workflow.incoming_edges(node_id)]
