import pytest
from pydantic import ValidationError

from shared.config import EngineSettings, load_settings


def test_defaults() -> None:
    settings = EngineSettings()

    assert settings.max_concurrent_executions == 10
    assert settings.max_retries == 3
    assert settings.approval_timeout_seconds is None
    assert settings.queue_timeout_seconds is None
    assert settings.auto_drain_queue is True
    assert settings.task_due_days == 7


def test_load_settings_reads_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAX_CONCURRENT_WORKFLOWS", "2")
    monkeypatch.setenv("WORKFLOW_MAX_RETRIES", "5")
    monkeypatch.setenv("WORKFLOW_RETRY_BASE_DELAY_SECONDS", "0.5")
    monkeypatch.setenv("WORKFLOW_APPROVAL_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("WORKFLOW_AUTO_DRAIN_QUEUE", "off")
    monkeypatch.setenv("WORKFLOW_DB_PATH", "custom.db")
    monkeypatch.setenv("NOTIFICATION_SERVICE_URL", "https://notify.test")

    settings = load_settings()

    assert settings.max_concurrent_executions == 2
    assert settings.max_retries == 5
    assert settings.retry_base_delay_seconds == 0.5
    assert settings.approval_timeout_seconds == 30.0
    assert settings.auto_drain_queue is False
    assert settings.db_path == "custom.db"
    assert settings.notification_service_url == "https://notify.test"


def test_invalid_ceiling_is_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(max_concurrent_executions=0)
