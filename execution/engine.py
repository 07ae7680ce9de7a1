"""Execution Engine.

Runs workflow template instances:
- admission control with a concurrency ceiling and a FIFO queue
- node dispatch through the processor table
- graph advancement along satisfied connections
- per-node retry with backoff, escalation to execution failure
- pause/resume/cancel and approval continuation
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Coroutine

from execution.execution_store import ExecutionStore
from execution.node_processors import (
    NodeProcessor,
    NodeResult,
    ProcessorServices,
    build_processor_registry,
)
from execution.step_tracker import StepTracker, elapsed_ms
from integrations.broadcaster import RealtimeBroadcaster
from integrations.http_client import OutboundHttpClient
from integrations.notifications import InMemoryNotificationDispatcher, NotificationDispatcher
from integrations.task_store import InMemoryTaskStore, TaskStore
from observability.logger import Observability
from shared.conditions import evaluate_condition
from shared.config import EngineSettings
from shared.errors import (
    ApprovalError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    TemplateNotFoundError,
    TemplateValidationError,
    WorkflowEngineError,
    WorkflowStructureError,
    error_payload,
)
from shared.models import ControlResult, ExecutionStatusView, NotificationRequest
from shared.workflow_contracts import (
    ApprovalRecord,
    ExecutionError,
    TriggerType,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowNode,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """Owns the lifecycle of every execution in this process.

    The running set, the admission queue and the per-execution work
    queues belong to the instance, so several executors (one per test,
    for example) never share state.
    """

    def __init__(
        self,
        store: ExecutionStore,
        *,
        settings: EngineSettings | None = None,
        task_store: TaskStore | None = None,
        notifier: NotificationDispatcher | None = None,
        http_client: OutboundHttpClient | None = None,
        broadcaster: RealtimeBroadcaster | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store
        self.tracker = StepTracker()
        self.task_store = task_store or InMemoryTaskStore()
        self.notifier = notifier or InMemoryNotificationDispatcher()
        self.http_client = http_client or OutboundHttpClient(timeout=self.settings.http_timeout_seconds)
        self.broadcaster = broadcaster or RealtimeBroadcaster()
        self.processors: dict[str, NodeProcessor] = build_processor_registry(
            ProcessorServices(
                task_store=self.task_store,
                notifier=self.notifier,
                http_client=self.http_client,
                settings=self.settings,
                tracker=self.tracker,
            )
        )

        self._lock = asyncio.Lock()
        self._running: set[str] = set()
        self._queue: deque[str] = deque()
        self._live: dict[str, WorkflowExecution] = {}
        self._templates: dict[str, WorkflowTemplate] = {}
        self._work: dict[str, deque[str]] = {}
        self._drivers: dict[str, asyncio.Task] = {}
        self._retries: dict[str, set[asyncio.Task]] = {}
        self._watchdogs: dict[str, dict[str, asyncio.Task]] = {}
        self._observers: dict[str, Observability] = {}
        self._inflight: dict[str, str] = {}
        self._parked: dict[str, tuple[str, NodeResult]] = {}

    # ─── Registration ───────────────────────────────────────────

    def register_processor(self, node_type: str, processor: NodeProcessor) -> None:
        """Register or override the processor for a node type."""
        key = str(node_type).strip()
        if not key:
            raise ValueError("node_type must not be empty")
        self.processors[key] = processor

    def register_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        self.store.save_template(template)
        self._templates[template.id] = template
        orphaned = template.find_orphaned_nodes()
        if orphaned:
            logger.warning("Template %s has orphaned nodes: %s", template.id, orphaned)
        return template

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_ids(self) -> list[str]:
        return list(self._queue)

    # ─── Instantiation ──────────────────────────────────────────

    def create_execution(
        self,
        template_id: str,
        triggered_by: str,
        *,
        variables: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        trigger_type: TriggerType = "manual",
        name: str | None = None,
    ) -> WorkflowExecution:
        """Instantiate a template as a pending execution."""
        template = self._load_template(template_id)
        merged = {**template.default_variables(), **(variables or {})}

        missing = [
            variable.name
            for variable in template.variables
            if variable.required and merged.get(variable.name) is None
        ]
        if missing:
            raise TemplateValidationError(
                f"Missing required variables for template {template_id}: {missing}",
                data={"missing": missing},
            )

        execution = WorkflowExecution(
            id=f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            template_id=template.id,
            name=name or template.name,
            triggered_by=triggered_by,
            trigger_type=trigger_type,
            variables=merged,
            context=dict(context or {}),
        )
        orphaned = template.find_orphaned_nodes()
        if orphaned:
            self.tracker.add_log(execution, "warn", "Template has orphaned nodes", data={"nodes": orphaned})
        self._persist(execution)

        used = template.model_copy(
            update={"times_used": template.times_used + 1, "last_used": datetime.now(timezone.utc)}
        )
        self.store.save_template(used)
        self._templates[used.id] = used

        self._record_event(execution, "execution_created")
        return execution

    # ─── Lifecycle ──────────────────────────────────────────────

    async def start_execution(self, execution_id: str) -> ControlResult:
        """Admit a pending execution, or queue it when the ceiling is reached."""
        execution = self._load_execution(execution_id)
        if execution.status != "pending":
            raise InvalidExecutionStateError(
                f"Workflow execution {execution_id} cannot be executed (status: {execution.status})"
            )
        template = self._load_template(execution.template_id)

        async with self._lock:
            admitted = self._try_admit_locked(execution_id)

        if not admitted:
            return await self._mark_queued(execution)

        self._live[execution_id] = execution
        execution.status = "running"
        if execution.start_time is None:
            execution.start_time = datetime.now(timezone.utc)
        self.tracker.add_log(execution, "info", "Workflow execution started")
        self._persist(execution)
        self._observer(execution).log_event("execution_started", {"triggered_by": execution.triggered_by})
        await self._emit(execution, "execution_started")

        self._enqueue(execution_id, template.start_node.id)
        self._ensure_driver(execution_id)
        return ControlResult(status="started", execution_id=execution_id)

    async def pause_execution(self, execution_id: str) -> ControlResult:
        execution = self._load_execution(execution_id)
        if execution.status != "running":
            raise InvalidExecutionStateError(
                f"Execution {execution_id} is not in running state (status: {execution.status})"
            )

        execution.status = "paused"
        self._cancel_retries(execution_id)
        self.tracker.add_log(execution, "info", "Workflow execution paused", execution.current_step)
        self._persist(execution)
        await self._emit(execution, "execution_paused", node_id=execution.current_step)
        await self._release_slot(execution_id)
        return ControlResult(status="paused", execution_id=execution_id)

    async def resume_execution(self, execution_id: str) -> ControlResult:
        execution = self._load_execution(execution_id)
        if execution.status != "paused":
            raise InvalidExecutionStateError(
                f"Execution {execution_id} is not in paused state (status: {execution.status})"
            )
        template = self._load_template(execution.template_id)

        async with self._lock:
            admitted = self._try_admit_locked(execution_id)

        if not admitted:
            return await self._mark_queued(execution)

        self._live[execution_id] = execution
        execution.status = "running"
        self.tracker.add_log(execution, "info", "Workflow execution resumed", execution.current_step)
        self._persist(execution)
        await self._emit(execution, "execution_resumed", node_id=execution.current_step)

        parked = self._parked.pop(execution_id, None)
        if parked is not None:
            node_id, result = parked
            await self._apply_result(execution, template, template.get_node(node_id), result)
        elif execution_id in self._inflight:
            # The running processor call hands its result to the live driver.
            logger.info(
                "Resuming execution %s while node %s is still running",
                execution_id,
                self._inflight[execution_id],
            )
        else:
            self._enqueue(execution_id, execution.current_step or template.start_node.id, front=True)
        # Retry timers were dropped on pause; steps still pending go back to work.
        for step in execution.steps:
            if step.status == "pending" and step.node_id != self._inflight.get(execution_id):
                self._enqueue(execution_id, step.node_id)
        if not execution.is_terminal:
            self._ensure_driver(execution_id)
        return ControlResult(status="resumed", execution_id=execution_id)

    async def cancel_execution(self, execution_id: str) -> ControlResult:
        """Cancel a non-terminal execution. Side effects already issued stay applied."""
        execution = self._load_execution(execution_id)
        if execution.is_terminal:
            raise InvalidExecutionStateError(
                f"Execution {execution_id} is already finished (status: {execution.status})"
            )

        now = datetime.now(timezone.utc)
        execution.status = "cancelled"
        execution.end_time = now
        execution.duration = elapsed_ms(execution.start_time, now)
        self.tracker.add_log(execution, "info", "Workflow execution cancelled")
        self._persist(execution)
        self._observer(execution).log_event("execution_cancelled", {"current_step": execution.current_step})
        await self._emit(execution, "execution_cancelled")

        await self._finalize(execution_id)
        return ControlResult(status="cancelled", execution_id=execution_id)

    def get_execution_status(self, execution_id: str) -> ExecutionStatusView:
        """Read-only projection of an execution."""
        execution = self._load_execution(execution_id)
        counts = self.tracker.counts(execution)
        return ExecutionStatusView(
            execution_id=execution.id,
            template_id=execution.template_id,
            name=execution.name,
            status=execution.status,
            progress=execution.progress,
            current_step=execution.current_step,
            triggered_by=execution.triggered_by,
            start_time=execution.start_time,
            end_time=execution.end_time,
            duration=execution.duration,
            total_steps=counts["total"],
            completed_steps=counts["completed"],
            failed_steps=counts["failed"],
            queued=execution_id in self._queue,
            steps=[step.model_copy(deep=True) for step in execution.steps],
            errors=[error.model_copy() for error in execution.errors],
        )

    # ─── Node dispatch ──────────────────────────────────────────

    async def process_node(self, execution: WorkflowExecution, node_id: str) -> None:
        """Run one node and advance the graph. Never raises."""
        template = self._load_template(execution.template_id)
        node = template.get_node(node_id)
        if node is None:
            await self.handle_execution_error(
                execution.id,
                WorkflowStructureError(f"Node {node_id} not found in template {template.id}"),
                node_id=node_id,
            )
            return

        processor = self.processors.get(node.type)
        if processor is None:
            await self.handle_execution_error(
                execution.id,
                WorkflowStructureError(f"Unknown node type: {node.type}"),
                node_id=node_id,
            )
            return

        if execution.status != "running":
            return

        self.tracker.mark_running(execution, node)
        self.tracker.add_log(execution, "info", f"Processing node: {node.type}", node_id)
        self._persist(execution)
        await self._emit(execution, "step_updated", node_id=node_id, payload={"status": "running"})

        self._inflight[execution.id] = node_id
        try:
            with self._observer(execution).measure(f"node:{node.type}", {"node_id": node_id}):
                result = await processor.process(execution, node)
        except Exception as exc:
            self._inflight.pop(execution.id, None)
            await self._handle_node_error(execution, node, exc)
            return
        self._inflight.pop(execution.id, None)

        if execution.status == "paused" and not result.terminal:
            # Applied by resume_execution.
            self._parked[execution.id] = (node_id, result)
            logger.info("Holding result of node %s until execution %s resumes", node_id, execution.id)
            return

        if execution.status != "running" and not result.terminal:
            logger.info(
                "Discarding result of node %s: execution %s is %s",
                node_id,
                execution.id,
                execution.status,
            )
            return

        await self._apply_result(execution, template, node, result)

    async def _apply_result(
        self,
        execution: WorkflowExecution,
        template: WorkflowTemplate,
        node: WorkflowNode,
        result: NodeResult,
    ) -> None:
        node_id = node.id
        if result.suspended:
            self.tracker.add_log(execution, "info", f"Node waiting: {node.type}", node_id, self._json_safe(result.output))
            self._persist(execution)
            await self._emit(execution, "step_updated", node_id=node_id, payload={"status": "waiting_approval"})
            self._schedule_approval_timeout(execution.id, node_id)
            return

        await self._complete_step(execution, template, node, result)

        if result.terminal:
            execution.progress = 100
            self.tracker.add_log(execution, "info", "Workflow execution completed")
            self._persist(execution)
            self._observer(execution).log_event("execution_completed", {"duration_ms": execution.duration})
            await self._emit(execution, "execution_completed", payload={"duration": execution.duration})
            await self._finalize(execution.id)
            return

        await self.process_next_nodes(execution, node_id, result.result_context)

    async def process_next_nodes(
        self,
        execution: WorkflowExecution,
        from_node_id: str,
        result_context: dict[str, Any] | None = None,
    ) -> list[str]:
        """Schedule every target whose connection is satisfied.

        All outgoing connections are evaluated before any target is
        scheduled. Returns the scheduled node ids.
        """
        if execution.status != "running":
            logger.info("Not advancing from %s: execution %s is %s", from_node_id, execution.id, execution.status)
            return []

        template = self._load_template(execution.template_id)
        scope = {**execution.variables, **(result_context or {})}
        targets: list[str] = []
        for connection in template.outgoing(from_node_id):
            if connection.condition and not evaluate_condition(connection.condition, scope, execution.context):
                self.tracker.add_log(
                    execution,
                    "debug",
                    f"Connection {from_node_id} -> {connection.target} not taken",
                    from_node_id,
                    {"condition": connection.condition},
                )
                continue
            targets.append(connection.target)

        if targets:
            for target in targets:
                self._enqueue(execution.id, target)
            self._persist(execution)
            self._ensure_driver(execution.id)
            return targets

        if self._is_stalled(execution, from_node_id):
            await self.handle_execution_error(
                execution.id,
                WorkflowStructureError(
                    f"No outgoing connection from node {from_node_id} could be followed",
                    code="WORKFLOW_DEAD_END",
                ),
                node_id=from_node_id,
            )
        return []

    # ─── Approvals ──────────────────────────────────────────────

    async def record_approval_response(
        self,
        execution_id: str,
        node_id: str,
        approver_id: str,
        decision: str,
        comment: str = "",
    ) -> ControlResult:
        """Apply an approver's decision to a waiting approval step."""
        if decision not in ("approved", "rejected"):
            raise ApprovalError(f"Unknown approval decision: {decision}")

        execution = self._load_execution(execution_id)
        if execution.status != "running":
            raise InvalidExecutionStateError(
                f"Execution {execution_id} is not running (status: {execution.status})"
            )
        step = execution.get_step(node_id)
        if step is None or step.status != "waiting_approval":
            raise ApprovalError(f"Step {node_id} is not waiting for approval")
        if step.assigned_to and step.assigned_to != approver_id:
            raise ApprovalError(f"User {approver_id} is not the approver for step {node_id}")

        step.approvals.append(ApprovalRecord(approver_id=approver_id, decision=decision, comment=comment or ""))
        self._cancel_watchdog(execution_id, node_id)

        if decision == "approved":
            output = {
                "decision": "approved",
                "approver": approver_id,
                "comment": comment or "",
                "message": "Approval granted",
            }
            template = self._load_template(execution.template_id)
            self.tracker.mark_completed(execution, node_id, output)
            self.tracker.update_progress(execution, len(template.nodes))
            self.tracker.add_log(execution, "info", f"Approval granted by {approver_id}", node_id, output)
            self._persist(execution)
            await self._emit(execution, "step_updated", node_id=node_id, payload={"status": "completed"})
            await self._emit(execution, "execution_progress", payload={"progress": execution.progress})
            await self.process_next_nodes(execution, node_id, output)
            return ControlResult(status="approved", execution_id=execution_id)

        message = f"Approval rejected by {approver_id}"
        if comment:
            message = f"{message}: {comment}"
        rejection = ApprovalError(message, code="APPROVAL_REJECTED")
        self.tracker.mark_failed(execution, node_id, error_payload(rejection))
        self.tracker.add_log(execution, "warn", message, node_id)
        self._persist(execution)
        await self._emit(execution, "step_updated", node_id=node_id, payload={"status": "failed"})
        await self.handle_execution_error(execution_id, rejection, node_id=node_id)
        return ControlResult(status="rejected", execution_id=execution_id, message=message)

    # ─── Error policy ───────────────────────────────────────────

    async def handle_execution_error(
        self,
        execution_id: str,
        error: BaseException,
        node_id: str | None = None,
    ) -> None:
        """Fail the execution. Only the first call for an execution has effect."""
        execution = self._live.get(execution_id) or self.store.get_execution(execution_id)
        if execution is None:
            logger.error("Cannot fail unknown execution %s: %s", execution_id, error)
            return
        if execution.is_terminal:
            logger.info("Execution %s already %s; ignoring error: %s", execution_id, execution.status, error)
            return

        payload = error_payload(error)
        now = datetime.now(timezone.utc)
        execution.status = "failed"
        execution.end_time = now
        execution.duration = elapsed_ms(execution.start_time, now)
        execution.errors.append(ExecutionError(node_id=node_id, message=payload["message"], code=payload["code"]))
        self.tracker.add_log(execution, "error", f"Workflow execution failed: {payload['message']}", node_id, payload)
        self._persist(execution)
        self._observer(execution).log_event("execution_failed", {"node_id": node_id, **payload}, level="ERROR")
        await self._emit(execution, "execution_failed", node_id=node_id, payload=payload)

        await self._finalize(execution_id)

        workflow_name = execution.name or execution.template_id
        try:
            await self.notifier.send_notification(
                NotificationRequest(
                    recipient=execution.triggered_by,
                    sender=execution.triggered_by,
                    type="workflow_failed",
                    title=f"Workflow Failed: {workflow_name}",
                    message=f'Your workflow "{workflow_name}" has failed: {payload["message"]}',
                    priority="high",
                    data={
                        "workflow_execution_id": execution.id,
                        "workflow_name": execution.name,
                        "error": payload["message"],
                        "code": payload["code"],
                    },
                )
            )
        except Exception as exc:
            logger.warning("Failed to send failure notification for %s: %s", execution_id, exc)

    async def _handle_node_error(self, execution: WorkflowExecution, node: WorkflowNode, exc: Exception) -> None:
        payload = error_payload(exc)
        logger.error("Error processing node %s of execution %s: %s", node.id, execution.id, payload["message"])

        if execution.is_terminal:
            return

        if isinstance(exc, WorkflowStructureError):
            self.tracker.mark_failed(execution, node.id, payload)
            await self.handle_execution_error(execution.id, exc, node_id=node.id)
            return

        if execution.status != "running":
            return

        step = execution.get_step(node.id)
        if step is not None and step.retry_count < self.settings.max_retries:
            self.tracker.mark_retry(execution, node.id, payload)
            delay = self._retry_delay(step.retry_count)
            self.tracker.add_log(
                execution,
                "warn",
                f"Node failed, retrying in {delay * 1000:.0f}ms (attempt {step.retry_count})",
                node.id,
                payload,
            )
            self._persist(execution)
            await self._emit(
                execution,
                "step_updated",
                node_id=node.id,
                payload={"status": "pending", "retry_count": step.retry_count, "error": payload},
            )
            self._schedule_retry(execution.id, node.id, delay)
            return

        retries = step.retry_count if step is not None else 0
        self.tracker.mark_failed(execution, node.id, payload)
        self.tracker.add_log(
            execution,
            "error",
            f"Node failed after {retries} retries: {payload['message']}",
            node.id,
            payload,
        )
        self._persist(execution)
        await self._emit(execution, "step_updated", node_id=node.id, payload={"status": "failed", "error": payload})
        await self.handle_execution_error(execution.id, exc, node_id=node.id)

    def _retry_delay(self, attempt: int) -> float:
        delay = self.settings.retry_base_delay_seconds * (2 ** max(0, attempt - 1))
        delay = min(delay, self.settings.retry_max_delay_seconds)
        if self.settings.retry_jitter_seconds > 0:
            delay += random.uniform(0.0, self.settings.retry_jitter_seconds)
        return delay

    # ─── Work queue & scheduling ────────────────────────────────

    def _enqueue(self, execution_id: str, node_id: str, *, front: bool = False) -> None:
        work = self._work.setdefault(execution_id, deque())
        if node_id in work:
            return
        if front:
            work.appendleft(node_id)
        else:
            work.append(node_id)

    def _ensure_driver(self, execution_id: str) -> None:
        driver = self._drivers.get(execution_id)
        if driver is not None and not driver.done():
            return
        self._drivers[execution_id] = asyncio.create_task(
            self._drive(execution_id),
            name=f"workflow-driver-{execution_id}",
        )

    async def _drive(self, execution_id: str) -> None:
        """Drain the work queue of one execution, one node at a time."""
        while True:
            work = self._work.get(execution_id)
            execution = self._live.get(execution_id)
            if not work or execution is None or execution.status != "running":
                return
            node_id = work.popleft()
            try:
                await self.process_node(execution, node_id)
            except Exception as exc:
                logger.critical("Engine crash on node %s of execution %s: %s", node_id, execution_id, exc)
                await self.handle_execution_error(execution_id, exc, node_id=node_id)
                return

    def _cancel_retries(self, execution_id: str) -> None:
        current = asyncio.current_task()
        for task in self._retries.pop(execution_id, set()):
            if task is not current and not task.done():
                task.cancel()

    def _schedule_retry(self, execution_id: str, node_id: str, delay: float) -> None:
        task = asyncio.create_task(self._retry_node(execution_id, node_id, delay))
        pending = self._retries.setdefault(execution_id, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

    async def _retry_node(self, execution_id: str, node_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        execution = self._live.get(execution_id)
        if execution is None or execution.status != "running":
            return
        step = execution.get_step(node_id)
        if step is None or step.status != "pending":
            return
        self._enqueue(execution_id, node_id, front=True)
        self._ensure_driver(execution_id)

    def _schedule_approval_timeout(self, execution_id: str, node_id: str) -> None:
        timeout = self.settings.approval_timeout_seconds
        if not timeout:
            return
        self._set_watchdog(execution_id, node_id, self._approval_timeout(execution_id, node_id, timeout))

    async def _approval_timeout(self, execution_id: str, node_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        execution = self._live.get(execution_id)
        if execution is None or execution.status != "running":
            return
        step = execution.get_step(node_id)
        if step is None or step.status != "waiting_approval":
            return
        error = WorkflowEngineError(
            f"Approval for step {node_id} not received within {timeout:g}s",
            code="APPROVAL_TIMEOUT",
        )
        self.tracker.mark_failed(execution, node_id, error_payload(error))
        await self.handle_execution_error(execution_id, error, node_id=node_id)

    async def _queue_timeout(self, execution_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        async with self._lock:
            if execution_id not in self._queue:
                return
            self._queue.remove(execution_id)
        await self.handle_execution_error(
            execution_id,
            WorkflowEngineError(f"Execution not admitted within {timeout:g}s", code="QUEUE_TIMEOUT"),
        )

    def _set_watchdog(self, execution_id: str, key: str, coro: Coroutine[Any, Any, None]) -> None:
        watchdogs = self._watchdogs.setdefault(execution_id, {})
        previous = watchdogs.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
        watchdogs[key] = asyncio.create_task(coro)

    def _cancel_watchdog(self, execution_id: str, key: str) -> None:
        task = self._watchdogs.get(execution_id, {}).pop(key, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def wait_until_idle(self, execution_id: str | None = None) -> None:
        """Wait until drivers and scheduled retries have nothing left to run.

        Approval and queue timeouts are not waited on.
        """
        current = asyncio.current_task()
        while True:
            ids = [execution_id] if execution_id else list(set(self._drivers) | set(self._retries))
            pending: list[asyncio.Task] = []
            for key in ids:
                driver = self._drivers.get(key)
                if driver is not None and not driver.done():
                    pending.append(driver)
                pending.extend(task for task in self._retries.get(key, set()) if not task.done())
            pending = [task for task in pending if task is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every background task owned by this executor."""
        tasks: list[asyncio.Task] = list(self._drivers.values())
        for retries in self._retries.values():
            tasks.extend(retries)
        for watchdogs in self._watchdogs.values():
            tasks.extend(watchdogs.values())
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        """Release engine resources."""
        if self.store and hasattr(self.store, "close"):
            try:
                self.store.close()
            except Exception as exc:
                logger.warning("Failed to close ExecutionStore: %s", exc)

    # ─── Admission ──────────────────────────────────────────────

    def _try_admit_locked(self, execution_id: str) -> bool:
        if execution_id in self._running:
            raise InvalidExecutionStateError(f"Execution {execution_id} is already running")
        if len(self._running) < self.settings.max_concurrent_executions:
            self._running.add(execution_id)
            if execution_id in self._queue:
                self._queue.remove(execution_id)
            return True
        if execution_id not in self._queue:
            self._queue.append(execution_id)
        return False

    async def _mark_queued(self, execution: WorkflowExecution) -> ControlResult:
        self.tracker.add_log(execution, "warn", "Execution queued due to concurrent execution limit")
        self._persist(execution)
        await self._emit(execution, "execution_queued", payload={"position": self.queued_ids.index(execution.id) + 1})
        if self.settings.queue_timeout_seconds:
            self._set_watchdog(
                execution.id,
                "__queue__",
                self._queue_timeout(execution.id, self.settings.queue_timeout_seconds),
            )
        return ControlResult(
            status="queued",
            execution_id=execution.id,
            message="Execution queued due to system load",
        )

    async def _release_slot(self, execution_id: str) -> None:
        async with self._lock:
            self._running.discard(execution_id)
        await self._drain_queue()

    async def _drain_queue(self) -> None:
        if not self.settings.auto_drain_queue:
            return
        while True:
            async with self._lock:
                if not self._queue or len(self._running) >= self.settings.max_concurrent_executions:
                    return
                next_id = self._queue.popleft()
            self._cancel_watchdog(next_id, "__queue__")
            try:
                execution = self._load_execution(next_id)
                if execution.status == "pending":
                    await self.start_execution(next_id)
                elif execution.status == "paused":
                    await self.resume_execution(next_id)
            except WorkflowEngineError as exc:
                logger.warning("Could not admit queued execution %s: %s", next_id, exc)

    async def _finalize(self, execution_id: str) -> None:
        """Drop scheduling state of a terminal execution and free its slot."""
        self._work.pop(execution_id, None)
        self._parked.pop(execution_id, None)
        self._cancel_retries(execution_id)
        current = asyncio.current_task()
        for task in self._watchdogs.pop(execution_id, {}).values():
            if task is not current and not task.done():
                task.cancel()
        async with self._lock:
            if execution_id in self._queue:
                self._queue.remove(execution_id)
        await self._release_slot(execution_id)
        self._live.pop(execution_id, None)
        self._observers.pop(execution_id, None)

    # ─── Helpers ────────────────────────────────────────────────

    async def _complete_step(
        self,
        execution: WorkflowExecution,
        template: WorkflowTemplate,
        node: WorkflowNode,
        result: NodeResult,
    ) -> None:
        output = self._json_safe(result.output)
        self.tracker.mark_completed(execution, node.id, output)
        progress = self.tracker.update_progress(execution, len(template.nodes))
        self.tracker.add_log(execution, "info", f"Node completed: {node.type}", node.id, output)
        self._persist(execution)
        await self._emit(execution, "step_updated", node_id=node.id, payload={"status": "completed"})
        await self._emit(execution, "execution_progress", payload={"progress": progress})

    def _is_stalled(self, execution: WorkflowExecution, from_node_id: str) -> bool:
        if self._work.get(execution.id):
            return False
        if any(not task.done() for task in self._retries.get(execution.id, set())):
            return False
        for step in execution.steps:
            if step.node_id == from_node_id:
                continue
            if step.status in ("running", "pending", "waiting_approval"):
                return False
        return True

    def _load_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self._live.get(execution_id) or self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Workflow execution {execution_id} not found")
        return execution

    def _load_template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            template = self.store.get_template(template_id)
            if template is None:
                raise TemplateNotFoundError(f"Workflow template {template_id} not found")
            self._templates[template_id] = template
        return template

    def _observer(self, execution: WorkflowExecution) -> Observability:
        observer = self._observers.get(execution.id)
        if observer is None:
            observer = Observability(execution_id=execution.id, template_id=execution.template_id)
            self._observers[execution.id] = observer
        return observer

    def _persist(self, execution: WorkflowExecution) -> None:
        execution.updated_at = datetime.now(timezone.utc)
        self.store.save_execution(execution)

    def _build_event(
        self,
        execution: WorkflowExecution,
        event_type: str,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        return WorkflowEvent(
            event_id=f"evt-{uuid.uuid4().hex[:14]}",
            execution_id=execution.id,
            template_id=execution.template_id,
            event_type=event_type,  # type: ignore[arg-type]
            status=execution.status,
            node_id=node_id,
            payload=self._json_safe(payload or {}),
        )

    def _record_event(self, execution: WorkflowExecution, event_type: str, **kwargs: Any) -> WorkflowEvent | None:
        try:
            event = self._build_event(execution, event_type, **kwargs)
            self.store.save_event(event)
            return event
        except Exception as exc:
            logger.warning("Failed to persist workflow event '%s': %s", event_type, exc)
            return None

    async def _emit(
        self,
        execution: WorkflowExecution,
        event_type: str,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = self._record_event(execution, event_type, node_id=node_id, payload=payload)
        if event is not None:
            await self.broadcaster.broadcast(event)

    def _json_safe(self, value: Any) -> Any:
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        if isinstance(value, dict):
            return {str(k): self._json_safe(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._json_safe(item) for item in value]
        if isinstance(value, datetime):
            return value.isoformat()
        if hasattr(value, "model_dump"):
            try:
                return self._json_safe(value.model_dump(mode="json"))
            except Exception:
                return str(value)
        try:
            json.dumps(value)
            return value
        except Exception:
            return str(value)
