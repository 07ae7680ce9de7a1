"""Node processors, one handler per workflow node type.

Every processor implements ``process(execution, node) -> NodeResult`` and
raises on failure; the controller owns retries, step bookkeeping and graph
advancement.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from execution.step_tracker import StepTracker, elapsed_ms
from integrations.http_client import OutboundHttpClient
from integrations.notifications import NotificationDispatcher
from integrations.task_store import TaskStore
from shared.conditions import evaluate_condition
from shared.config import EngineSettings
from shared.errors import NodeProcessingError, WorkflowStructureError
from shared.models import NotificationRequest, TaskCreateRequest
from shared.variables import resolve, resolve_value
from shared.workflow_contracts import WorkflowExecution, WorkflowNode

logger = logging.getLogger(__name__)

_HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"})


@dataclass
class NodeResult:
    output: dict[str, Any] = field(default_factory=dict)
    result_context: dict[str, Any] = field(default_factory=dict)
    suspended: bool = False  # waiting on an external event, do not advance
    terminal: bool = False  # node finished the execution


@dataclass
class ProcessorServices:
    """Collaborators shared by all processors of one executor."""

    task_store: TaskStore
    notifier: NotificationDispatcher
    http_client: OutboundHttpClient
    settings: EngineSettings
    tracker: StepTracker


class NodeProcessor(ABC):
    node_type: str = ""

    def __init__(self, services: ProcessorServices):
        self.services = services

    @abstractmethod
    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        """Run the node and return its result."""

    def _resolve(self, execution: WorkflowExecution, value: Any) -> Any:
        return resolve(value, execution.variables, execution.context)

    def _workflow_data(self, execution: WorkflowExecution, **extra: Any) -> dict[str, Any]:
        return {
            "workflow_execution_id": execution.id,
            "workflow_name": execution.name,
            **extra,
        }


class StartNodeProcessor(NodeProcessor):
    node_type = "start"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        return NodeResult(
            output={
                "message": "Workflow started",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "variables": dict(execution.variables),
                "context": dict(execution.context),
            }
        )


class EndNodeProcessor(NodeProcessor):
    node_type = "end"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        now = datetime.now(timezone.utc)
        execution.status = "completed"
        execution.end_time = now
        execution.duration = elapsed_ms(execution.start_time, now)

        try:
            await self.services.notifier.send_notification(
                NotificationRequest(
                    recipient=execution.triggered_by,
                    sender=execution.triggered_by,
                    type="workflow_completed",
                    title=f"Workflow Completed: {execution.name or execution.template_id}",
                    message=f'Your workflow "{execution.name or execution.template_id}" has completed successfully.',
                    priority="medium",
                    data=self._workflow_data(execution, duration=execution.duration),
                )
            )
        except Exception as exc:
            logger.warning("Failed to send completion notification for %s: %s", execution.id, exc)

        return NodeResult(
            output={
                "status": "completed",
                "duration": execution.duration,
                "message": "Workflow execution completed successfully",
            },
            terminal=True,
        )


class TaskNodeProcessor(NodeProcessor):
    node_type = "task"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        config = node.config
        title = self._resolve(execution, config.get("title"))
        if not isinstance(title, str) or not title.strip():
            raise NodeProcessingError(f"Task node '{node.id}' has no title", code="TASK_TITLE_MISSING")

        now = datetime.now(timezone.utc)
        assigned_to = self._resolve(execution, config.get("assigned_to")) or execution.triggered_by
        request = TaskCreateRequest(
            title=title,
            description=self._resolve(execution, config.get("description")) or "",
            priority=self._resolve(execution, config.get("priority")) or "medium",
            project=self._resolve(execution, config.get("project")) or "",
            assigned_to=str(assigned_to),
            assigned_by=execution.triggered_by,
            due_date=config.get("due_date") or now + timedelta(days=self.services.settings.task_due_days),
            scheduled_date=config.get("scheduled_date") or now,
            tags=[str(tag) for tag in config.get("tags") or []],
        )

        try:
            task_ref = await self.services.task_store.create(request)
        except Exception as exc:
            raise NodeProcessingError(f"Failed to create task: {exc}", code="TASK_CREATE_FAILED") from exc

        output = {
            "task_id": task_ref.task_id,
            "title": task_ref.title,
            "assigned_to": task_ref.assigned_to,
            "message": "Task created successfully",
        }
        return NodeResult(output=output, result_context=output)


class EmailNodeProcessor(NodeProcessor):
    node_type = "email"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        config = node.config
        recipient = self._resolve(execution, config.get("recipient")) or execution.triggered_by
        subject = self._resolve(execution, config.get("subject")) or ""
        body = self._resolve(execution, config.get("body")) or ""
        request_fields: dict[str, Any] = {
            "recipient": str(recipient),
            "sender": execution.triggered_by,
            "type": "workflow_notification",
            "title": subject,
            "message": body,
            "priority": config.get("priority") or "medium",
            "data": self._workflow_data(execution),
        }
        if config.get("channels"):
            request_fields["channels"] = list(config["channels"])

        try:
            request = NotificationRequest(**request_fields)
        except ValidationError as exc:
            raise WorkflowStructureError(
                f"Invalid email node configuration: {exc}", code="INVALID_NODE_CONFIG"
            ) from exc

        try:
            await self.services.notifier.send_notification(request)
        except Exception as exc:
            raise NodeProcessingError(f"Failed to send email: {exc}", code="NOTIFICATION_FAILED") from exc

        return NodeResult(
            output={
                "recipient": str(recipient),
                "subject": subject,
                "message": "Email notification sent successfully",
            }
        )


class DelayNodeProcessor(NodeProcessor):
    node_type = "delay"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        raw = node.config.get("duration", 1000)
        try:
            delay_ms = float(raw)
        except (TypeError, ValueError) as exc:
            raise NodeProcessingError(f"Invalid delay duration: {raw!r}", code="INVALID_DELAY") from exc
        if delay_ms < 0:
            raise NodeProcessingError(f"Invalid delay duration: {raw!r}", code="INVALID_DELAY")

        self.services.tracker.add_log(execution, "info", f"Delaying execution for {delay_ms:g}ms", node.id)
        await asyncio.sleep(delay_ms / 1000)
        return NodeResult(
            output={
                "delay_duration": delay_ms,
                "message": f"Delayed execution for {delay_ms:g}ms",
            }
        )


class ConditionNodeProcessor(NodeProcessor):
    node_type = "condition"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        raw = node.config.get("condition", "")
        # evaluate_condition substitutes tokens itself.
        result = evaluate_condition(raw, execution.variables, execution.context)
        condition = self._resolve(execution, raw)
        output = {
            "condition": condition,
            "result": result,
            "message": f"Condition evaluated to: {'true' if result else 'false'}",
        }
        return NodeResult(output=output, result_context=output)


class ApprovalNodeProcessor(NodeProcessor):
    node_type = "approval"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        config = node.config
        approver = str(self._resolve(execution, config.get("approver")) or execution.triggered_by)
        message = self._resolve(execution, config.get("message")) or (
            "Your approval is required to continue this workflow."
        )

        try:
            await self.services.notifier.send_notification(
                NotificationRequest(
                    recipient=approver,
                    sender=execution.triggered_by,
                    type="workflow_approval",
                    title=f"Approval Required: {execution.name or execution.template_id}",
                    message=message,
                    priority=config.get("priority") or "high",
                    data=self._workflow_data(execution, node_id=node.id),
                )
            )
        except Exception as exc:
            raise NodeProcessingError(f"Failed to request approval: {exc}", code="NOTIFICATION_FAILED") from exc

        output = {
            "status": "waiting_approval",
            "approver": approver,
            "message": "Approval request sent",
        }
        if not execution.is_terminal:
            self.services.tracker.mark_waiting_approval(execution, node.id, approver, output)
        return NodeResult(output=output, suspended=True)


class ApiCallNodeProcessor(NodeProcessor):
    """Outbound HTTP call.

    A response status >= 400 fails the node (and is retried) unless the
    node sets ``accept_error_status``.
    """

    node_type = "api_call"

    async def process(self, execution: WorkflowExecution, node: WorkflowNode) -> NodeResult:
        config = node.config
        url = self._resolve(execution, config.get("url"))
        if not isinstance(url, str) or not url.strip():
            raise NodeProcessingError(f"api_call node '{node.id}' has no url", code="API_CALL_URL_MISSING")

        method = str(config.get("method") or "GET").upper()
        if method not in _HTTP_METHODS:
            raise NodeProcessingError(f"Unsupported HTTP method: {method}", code="API_CALL_METHOD_INVALID")

        headers = resolve_value(config.get("headers") or {}, execution.variables, execution.context)
        body = resolve_value(config.get("body"), execution.variables, execution.context)

        try:
            response = await self.services.http_client.request(
                method,
                url,
                headers={str(k): str(v) for k, v in headers.items()},
                body=body,
            )
        except Exception as exc:
            raise NodeProcessingError(f"Failed to make API call: {exc}", code="API_CALL_FAILED") from exc

        if response.status >= 400 and not config.get("accept_error_status", False):
            raise NodeProcessingError(
                f"API call returned status {response.status}",
                code="API_CALL_HTTP_ERROR",
                data={"status": response.status, "data": response.data},
            )

        output = {
            "url": url,
            "method": method,
            "status": response.status,
            "data": response.data,
            "message": "API call completed successfully",
        }
        return NodeResult(output=output, result_context=output)


PROCESSOR_CLASSES: tuple[type[NodeProcessor], ...] = (
    StartNodeProcessor,
    EndNodeProcessor,
    TaskNodeProcessor,
    EmailNodeProcessor,
    DelayNodeProcessor,
    ConditionNodeProcessor,
    ApprovalNodeProcessor,
    ApiCallNodeProcessor,
)


def build_processor_registry(services: ProcessorServices) -> dict[str, NodeProcessor]:
    """Dispatch table keyed by node type."""
    return {processor_cls.node_type: processor_cls(services) for processor_cls in PROCESSOR_CLASSES}
