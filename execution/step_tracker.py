"""Per-node step state, execution logs and aggregate progress."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from shared.workflow_contracts import (
    ExecutionLogEntry,
    LogLevel,
    StepError,
    StepState,
    WorkflowExecution,
    WorkflowNode,
)

logger = logging.getLogger(__name__)


def elapsed_ms(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


class StepTracker:
    """Mutates the step list of an execution aggregate.

    The tracker owns no state of its own; every call works on the
    execution passed in, so one tracker serves all executions.
    """

    def ensure_step(self, execution: WorkflowExecution, node: WorkflowNode) -> StepState:
        step = execution.get_step(node.id)
        if step is None:
            step = StepState(node_id=node.id, node_type=node.type)
            execution.steps.append(step)
        return step

    def mark_running(self, execution: WorkflowExecution, node: WorkflowNode) -> StepState:
        step = self.ensure_step(execution, node)
        step.status = "running"
        step.started_at = datetime.now(timezone.utc)
        step.completed_at = None
        step.duration = None
        execution.current_step = node.id
        self._touch(execution)
        return step

    def mark_completed(self, execution: WorkflowExecution, node_id: str, output: Any) -> StepState | None:
        step = execution.get_step(node_id)
        if step is None:
            return None
        now = datetime.now(timezone.utc)
        step.status = "completed"
        step.completed_at = now
        step.duration = elapsed_ms(step.started_at, now)
        step.output = output
        step.error = None
        self._touch(execution)
        return step

    def mark_waiting_approval(
        self,
        execution: WorkflowExecution,
        node_id: str,
        assigned_to: str,
        output: Any = None,
    ) -> StepState | None:
        step = execution.get_step(node_id)
        if step is None:
            return None
        step.status = "waiting_approval"
        step.assigned_to = assigned_to
        step.output = output
        self._touch(execution)
        return step

    def mark_failed(self, execution: WorkflowExecution, node_id: str, error: dict[str, Any]) -> StepState | None:
        step = execution.get_step(node_id)
        if step is None:
            return None
        now = datetime.now(timezone.utc)
        step.status = "failed"
        step.completed_at = now
        step.duration = elapsed_ms(step.started_at, now)
        step.error = StepError(message=str(error.get("message", "")), code=error.get("code"))
        self._touch(execution)
        return step

    def mark_retry(self, execution: WorkflowExecution, node_id: str, error: dict[str, Any]) -> StepState | None:
        """Record a failed attempt and put the step back to pending."""
        step = execution.get_step(node_id)
        if step is None:
            return None
        step.retry_count += 1
        step.status = "pending"
        step.error = StepError(message=str(error.get("message", "")), code=error.get("code"))
        self._touch(execution)
        return step

    def update_progress(self, execution: WorkflowExecution, total_nodes: int) -> int:
        """Recompute progress as the share of template nodes completed.

        Progress never moves backwards; a re-entered step (resume, retry)
        does not lower the reported value.
        """
        completed = sum(1 for step in execution.steps if step.status == "completed")
        total = max(total_nodes, len(execution.steps), 1)
        computed = min(100, round(completed / total * 100))
        execution.progress = max(execution.progress, computed)
        self._touch(execution)
        return execution.progress

    def add_log(
        self,
        execution: WorkflowExecution,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        data: Any = None,
    ) -> None:
        execution.logs.append(ExecutionLogEntry(level=level, message=message, node_id=node_id, data=data))
        self._touch(execution)

    def counts(self, execution: WorkflowExecution) -> dict[str, int]:
        return {
            "total": len(execution.steps),
            "completed": sum(1 for step in execution.steps if step.status == "completed"),
            "failed": sum(1 for step in execution.steps if step.status == "failed"),
        }

    def _touch(self, execution: WorkflowExecution) -> None:
        execution.updated_at = datetime.now(timezone.utc)
