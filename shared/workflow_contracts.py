"""Workflow template and execution contracts.

Templates are immutable graph definitions. Executions are the mutable
aggregate the engine updates while it walks a template.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


NodeType = Literal[
    "start",
    "end",
    "task",
    "email",
    "api_call",
    "condition",
    "delay",
    "approval",
]

ExecutionStatus = Literal["pending", "running", "paused", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "running", "completed", "failed", "waiting_approval"]
TriggerType = Literal["manual", "scheduled", "webhook", "api", "event"]
LogLevel = Literal["info", "warn", "error", "debug"]
ApprovalDecision = Literal["approved", "rejected"]
VariableType = Literal["string", "number", "boolean", "date", "array", "object"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

EventType = Literal[
    "execution_created",
    "execution_queued",
    "execution_started",
    "execution_progress",
    "step_updated",
    "execution_paused",
    "execution_resumed",
    "execution_cancelled",
    "execution_completed",
    "execution_failed",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowNode(BaseModel):
    """Single unit of work in a template graph."""

    model_config = {"frozen": True}

    id: str
    type: NodeType
    label: str = Field(default="")
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowConnection(BaseModel):
    """Directed edge, optionally guarded by a condition expression."""

    model_config = {"frozen": True}

    id: str = Field(default="")
    source: str
    target: str
    condition: str | None = Field(default=None)
    label: str = Field(default="")


class TemplateVariable(BaseModel):
    model_config = {"frozen": True}

    name: str
    type: VariableType = Field(default="string")
    default_value: Any = Field(default=None)
    required: bool = Field(default=False)
    description: str = Field(default="")


class WorkflowTemplate(BaseModel):
    """Immutable workflow graph instantiated by executions."""

    model_config = {"frozen": True}

    id: str
    name: str = Field(default="")
    description: str = Field(default="")
    version: str = Field(default="1.0.0")
    nodes: list[WorkflowNode]
    connections: list[WorkflowConnection] = Field(default_factory=list)
    variables: list[TemplateVariable] = Field(default_factory=list)
    created_by: str | None = Field(default=None)
    tags: list[str] = Field(default_factory=list)
    times_used: int = Field(default=0, ge=0)
    last_used: datetime | None = Field(default=None)

    @model_validator(mode="after")
    def validate_graph(self) -> "WorkflowTemplate":
        if not self.nodes:
            raise ValueError("WorkflowTemplate.nodes must not be empty")

        node_ids = [node.id.strip() for node in self.nodes]
        if any(not node_id for node_id in node_ids):
            raise ValueError("Workflow nodes must use non-empty ids")
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("Workflow node ids must be unique")

        start_nodes = [node for node in self.nodes if node.type == "start"]
        if len(start_nodes) != 1:
            raise ValueError(f"Workflow must have exactly one start node (found {len(start_nodes)})")
        if not any(node.type == "end" for node in self.nodes):
            raise ValueError("Workflow must have at least one end node")

        node_id_set = set(node_ids)
        for connection in self.connections:
            if connection.source not in node_id_set:
                raise ValueError(f"Connection source '{connection.source}' not found in nodes")
            if connection.target not in node_id_set:
                raise ValueError(f"Connection target '{connection.target}' not found in nodes")

        variable_names = [variable.name for variable in self.variables]
        if len(set(variable_names)) != len(variable_names):
            raise ValueError("Template variable names must be unique")
        return self

    @property
    def start_node(self) -> WorkflowNode:
        return next(node for node in self.nodes if node.type == "start")

    def get_node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[WorkflowConnection]:
        return [connection for connection in self.connections if connection.source == node_id]

    def find_orphaned_nodes(self) -> list[str]:
        """Return ids of non-start nodes not touched by any connection."""
        connected: set[str] = set()
        for connection in self.connections:
            connected.add(connection.source)
            connected.add(connection.target)
        return [node.id for node in self.nodes if node.type != "start" and node.id not in connected]

    def default_variables(self) -> dict[str, Any]:
        return {
            variable.name: variable.default_value
            for variable in self.variables
            if variable.default_value is not None
        }


class ApprovalRecord(BaseModel):
    approver_id: str
    decision: ApprovalDecision
    comment: str = Field(default="")
    timestamp: datetime = Field(default_factory=_utcnow)


class StepError(BaseModel):
    message: str
    code: str | None = Field(default=None)


class StepState(BaseModel):
    """Per-node progress record kept inside an execution."""

    node_id: str
    node_type: NodeType
    status: StepStatus = Field(default="pending")
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    duration: int | None = Field(default=None, description="Milliseconds")
    output: Any = Field(default=None)
    error: StepError | None = Field(default=None)
    retry_count: int = Field(default=0, ge=0)
    assigned_to: str | None = Field(default=None)
    approvals: list[ApprovalRecord] = Field(default_factory=list)


class ExecutionLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel = Field(default="info")
    message: str
    node_id: str | None = Field(default=None)
    data: Any = Field(default=None)


class ExecutionError(BaseModel):
    node_id: str | None = Field(default=None)
    timestamp: datetime = Field(default_factory=_utcnow)
    message: str
    code: str | None = Field(default=None)
    resolved: bool = Field(default=False)


class WorkflowExecution(BaseModel):
    """Mutable runtime aggregate for one run of a template."""

    id: str
    template_id: str
    name: str = Field(default="")
    triggered_by: str
    trigger_type: TriggerType = Field(default="manual")
    status: ExecutionStatus = Field(default="pending")
    current_step: str | None = Field(default=None)
    steps: list[StepState] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    start_time: datetime | None = Field(default=None)
    end_time: datetime | None = Field(default=None)
    duration: int | None = Field(default=None, description="Milliseconds")
    errors: list[ExecutionError] = Field(default_factory=list)
    logs: list[ExecutionLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_step(self, node_id: str) -> StepState | None:
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None


class WorkflowEvent(BaseModel):
    """Canonical event envelope pushed to the broadcaster and persisted."""

    model_config = {"frozen": True}

    event_id: str
    execution_id: str
    template_id: str
    event_type: EventType
    status: ExecutionStatus | None = Field(default=None)
    node_id: str | None = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
