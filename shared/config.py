"""Engine configuration loaded from the environment (and a local .env)."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)


class EngineSettings(BaseModel):
    """Runtime knobs for the execution controller."""

    max_concurrent_executions: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0.0)
    retry_jitter_seconds: float = Field(default=0.0, ge=0.0)
    approval_timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    queue_timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    auto_drain_queue: bool = Field(default=True)
    http_timeout_seconds: float = Field(default=30.0, gt=0.0)
    task_due_days: int = Field(default=7, ge=0)
    db_path: str = Field(default="workflow.db")
    notification_service_url: Optional[str] = Field(default=None)


def load_settings() -> EngineSettings:
    """Build settings from environment variables.

    A local .env file is loaded first without overriding variables that
    are already set in the process environment.
    """
    load_dotenv(override=False)

    settings = EngineSettings()
    updates: dict = {}
    if os.getenv("MAX_CONCURRENT_WORKFLOWS"):
        updates["max_concurrent_executions"] = int(os.environ["MAX_CONCURRENT_WORKFLOWS"])
    if os.getenv("WORKFLOW_MAX_RETRIES"):
        updates["max_retries"] = int(os.environ["WORKFLOW_MAX_RETRIES"])
    for env_name, field_name in (
        ("WORKFLOW_RETRY_BASE_DELAY_SECONDS", "retry_base_delay_seconds"),
        ("WORKFLOW_RETRY_MAX_DELAY_SECONDS", "retry_max_delay_seconds"),
        ("WORKFLOW_RETRY_JITTER_SECONDS", "retry_jitter_seconds"),
        ("WORKFLOW_APPROVAL_TIMEOUT_SECONDS", "approval_timeout_seconds"),
        ("WORKFLOW_QUEUE_TIMEOUT_SECONDS", "queue_timeout_seconds"),
        ("WORKFLOW_HTTP_TIMEOUT_SECONDS", "http_timeout_seconds"),
    ):
        value = _env_float(env_name)
        if value is not None:
            updates[field_name] = value
    if os.getenv("WORKFLOW_TASK_DUE_DAYS"):
        updates["task_due_days"] = int(os.environ["WORKFLOW_TASK_DUE_DAYS"])
    updates["auto_drain_queue"] = _env_bool("WORKFLOW_AUTO_DRAIN_QUEUE", settings.auto_drain_queue)
    updates["db_path"] = os.getenv("WORKFLOW_DB_PATH", settings.db_path)
    notification_url = os.getenv("NOTIFICATION_SERVICE_URL", "").strip()
    if notification_url:
        updates["notification_service_url"] = notification_url

    return EngineSettings(**{**settings.model_dump(), **updates})
