"""Error taxonomy for the workflow execution engine."""

from __future__ import annotations

from typing import Any


class WorkflowEngineError(Exception):
    """Base class for engine errors."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, *, code: str | None = None, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.data = data or {}


class ExecutionNotFoundError(WorkflowEngineError):
    code = "EXECUTION_NOT_FOUND"


class TemplateNotFoundError(WorkflowEngineError):
    code = "TEMPLATE_NOT_FOUND"


class InvalidExecutionStateError(WorkflowEngineError):
    """Raised when a lifecycle operation is not allowed in the current status."""

    code = "INVALID_EXECUTION_STATE"


class TemplateValidationError(WorkflowEngineError):
    code = "TEMPLATE_VALIDATION_FAILED"


class WorkflowStructureError(WorkflowEngineError):
    """Unrecoverable graph problem (missing node, unknown node type)."""

    code = "WORKFLOW_STRUCTURE_ERROR"


class NodeProcessingError(WorkflowEngineError):
    """Transient node failure, subject to the retry policy."""

    code = "NODE_PROCESSING_FAILED"


class ApprovalError(WorkflowEngineError):
    """Approval response does not match a waiting approval step."""

    code = "APPROVAL_ERROR"


def error_payload(error: BaseException) -> dict[str, Any]:
    """Structured ``{message, code}`` view of any exception."""
    code = getattr(error, "code", None)
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    return {"message": message, "code": code if isinstance(code, str) else type(error).__name__}
