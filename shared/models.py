"""
Shared Pydantic models for collaborator payloads and control results.
Collaborator requests are immutable (frozen) after creation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from shared.workflow_contracts import ExecutionError, ExecutionStatus, StepState


# ─── Task Store ───────────────────────────────────────────────

class TaskCreateRequest(BaseModel):
    """Task record requested by a task node."""
    model_config = {"frozen": True}

    title: str
    description: str = Field(default="")
    priority: str = Field(default="medium")
    project: str = Field(default="")
    assigned_to: str
    assigned_by: str
    due_date: datetime | None = Field(default=None)
    scheduled_date: datetime | None = Field(default=None)
    tags: list[str] = Field(default_factory=list)


class TaskRef(BaseModel):
    """Reference to a created task record."""
    model_config = {"frozen": True}

    task_id: str
    title: str
    assigned_to: str
    assigned_by: str


# ─── Notification Dispatcher ──────────────────────────────────

NotificationChannel = Literal["in_app", "email", "websocket", "push", "chat"]


class NotificationRequest(BaseModel):
    model_config = {"frozen": True}

    recipient: str
    sender: str | None = Field(default=None)
    type: str = Field(..., description="e.g. 'workflow_notification', 'workflow_approval'")
    title: str
    message: str
    priority: str = Field(default="medium")
    data: dict[str, Any] = Field(default_factory=dict)
    channels: list[NotificationChannel] = Field(default_factory=lambda: ["in_app", "email", "websocket"])


# ─── Outbound HTTP ────────────────────────────────────────────

class ApiResponse(BaseModel):
    model_config = {"frozen": True}

    status: int
    data: Any = Field(default=None)
    reason: str = Field(default="")


# ─── Controller results ───────────────────────────────────────

ControlStatus = Literal[
    "started",
    "queued",
    "paused",
    "resumed",
    "cancelled",
    "approved",
    "rejected",
]


class ControlResult(BaseModel):
    """Outcome of a lifecycle operation on an execution."""
    model_config = {"frozen": True}

    status: ControlStatus
    execution_id: str
    message: str = Field(default="")


class ExecutionStatusView(BaseModel):
    """Read-only projection returned by get_execution_status."""
    model_config = {"frozen": True}

    execution_id: str
    template_id: str
    name: str
    status: ExecutionStatus
    progress: int
    current_step: str | None
    triggered_by: str
    start_time: datetime | None
    end_time: datetime | None
    duration: int | None
    total_steps: int
    completed_steps: int
    failed_steps: int
    queued: bool
    steps: list[StepState] = Field(default_factory=list)
    errors: list[ExecutionError] = Field(default_factory=list)
