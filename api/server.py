"""
HTTP API for the workflow engine.

Endpoints:
- POST /templates
- POST /templates/{template_id}/executions
- POST /executions/{execution_id}/start|pause|resume|cancel
- GET  /executions/{execution_id}
- GET  /executions/{execution_id}/events
- POST /executions/{execution_id}/approvals
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from execution.engine import WorkflowExecutor
from shared.errors import (
    ApprovalError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    TemplateNotFoundError,
    TemplateValidationError,
    WorkflowEngineError,
    error_payload,
)
from shared.models import ControlResult, ExecutionStatusView
from shared.workflow_contracts import TriggerType, WorkflowTemplate

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[WorkflowEngineError], int], ...] = (
    (ExecutionNotFoundError, 404),
    (TemplateNotFoundError, 404),
    (InvalidExecutionStateError, 409),
    (ApprovalError, 409),
    (TemplateValidationError, 422),
)


class CreateExecutionRequest(BaseModel):
    triggered_by: str
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    trigger_type: TriggerType = "manual"
    name: str | None = None
    start: bool = False


class ApprovalResponseRequest(BaseModel):
    node_id: str
    approver_id: str
    decision: Literal["approved", "rejected"]
    comment: str = ""


def _status_code_for(exc: WorkflowEngineError) -> int:
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 400


def create_app(executor: WorkflowExecutor | None = None) -> FastAPI:
    """Build the API around an executor (one is wired from settings when omitted)."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        owned = executor is None
        if owned:
            from main import build_executor

            _app.state.executor = build_executor()
        else:
            _app.state.executor = executor
        yield
        await _app.state.executor.shutdown()
        if owned:
            from main import close_executor

            close_executor(_app.state.executor)

    app = FastAPI(
        title="Workflow Engine API",
        version="0.1.0",
        lifespan=lifespan,
    )
    if executor is not None:
        app.state.executor = executor

    @app.exception_handler(WorkflowEngineError)
    async def engine_error_handler(_request: Request, exc: WorkflowEngineError) -> JSONResponse:
        status_code = _status_code_for(exc)
        logger.info("Request rejected (%s): %s", status_code, exc)
        return JSONResponse(status_code=status_code, content={"error": error_payload(exc)})

    def _executor() -> WorkflowExecutor:
        return app.state.executor

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/templates", status_code=201)
    async def register_template(template: WorkflowTemplate) -> dict[str, Any]:
        saved = _executor().register_template(template)
        return {
            "template": saved.model_dump(mode="json"),
            "orphaned_nodes": saved.find_orphaned_nodes(),
        }

    @app.post("/templates/{template_id}/executions", status_code=201)
    async def create_execution(template_id: str, request: CreateExecutionRequest) -> dict[str, Any]:
        engine = _executor()
        execution = engine.create_execution(
            template_id,
            request.triggered_by,
            variables=request.variables,
            context=request.context,
            trigger_type=request.trigger_type,
            name=request.name,
        )
        response: dict[str, Any] = {"execution": execution.model_dump(mode="json")}
        if request.start:
            result = await engine.start_execution(execution.id)
            response["start"] = result.model_dump(mode="json")
        return response

    @app.post("/executions/{execution_id}/start")
    async def start_execution(execution_id: str) -> ControlResult:
        return await _executor().start_execution(execution_id)

    @app.post("/executions/{execution_id}/pause")
    async def pause_execution(execution_id: str) -> ControlResult:
        return await _executor().pause_execution(execution_id)

    @app.post("/executions/{execution_id}/resume")
    async def resume_execution(execution_id: str) -> ControlResult:
        return await _executor().resume_execution(execution_id)

    @app.post("/executions/{execution_id}/cancel")
    async def cancel_execution(execution_id: str) -> ControlResult:
        return await _executor().cancel_execution(execution_id)

    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str) -> ExecutionStatusView:
        return _executor().get_execution_status(execution_id)

    @app.get("/executions/{execution_id}/events")
    async def list_events(execution_id: str) -> dict[str, Any]:
        engine = _executor()
        engine.get_execution_status(execution_id)
        events = engine.store.list_events(execution_id)
        return {"events": [event.model_dump(mode="json") for event in events]}

    @app.post("/executions/{execution_id}/approvals")
    async def record_approval(execution_id: str, request: ApprovalResponseRequest) -> ControlResult:
        return await _executor().record_approval_response(
            execution_id,
            request.node_id,
            request.approver_id,
            request.decision,
            request.comment,
        )

    return app
