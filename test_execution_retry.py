import asyncio

import httpx

from execution.engine import WorkflowExecutor
from execution.execution_store import ExecutionStore
from execution.node_processors import NodeResult
from integrations.http_client import OutboundHttpClient
from integrations.notifications import InMemoryNotificationDispatcher
from shared.config import EngineSettings
from shared.errors import NodeProcessingError, WorkflowStructureError
from shared.workflow_contracts import WorkflowTemplate


class _FlakyProcessor:
    """Fails a fixed number of times before succeeding."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def process(self, execution, node) -> NodeResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise NodeProcessingError(f"attempt {self.calls} failed", code="FLAKY")
        return NodeResult(output={"attempts": self.calls})


def _template() -> WorkflowTemplate:
    return WorkflowTemplate.model_validate(
        {
            "id": "tpl-retry",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "work", "type": "task", "config": {"title": "unused"}},
                {"id": "end", "type": "end"},
            ],
            "connections": [
                {"source": "start", "target": "work"},
                {"source": "work", "target": "end"},
            ],
        }
    )


def _executor(tmp_path, **kwargs) -> WorkflowExecutor:
    return WorkflowExecutor(
        ExecutionStore(db_path=str(tmp_path / "workflow.db")),
        settings=EngineSettings(retry_base_delay_seconds=0, max_retries=2),
        notifier=InMemoryNotificationDispatcher(),
        **kwargs,
    )


def test_transient_failure_is_retried_until_success(tmp_path) -> None:
    async def _run() -> None:
        executor = _executor(tmp_path)
        flaky = _FlakyProcessor(failures=2)
        executor.register_processor("task", flaky)
        try:
            executor.register_template(_template())
            execution = executor.create_execution("tpl-retry", "ann")
            await executor.start_execution(execution.id)
            await executor.wait_until_idle(execution.id)

            view = executor.get_execution_status(execution.id)
            work = next(step for step in view.steps if step.node_id == "work")
            assert view.status == "completed"
            assert flaky.calls == 3
            assert work.retry_count == 2
            assert work.status == "completed"
            assert work.error is None
            assert work.output == {"attempts": 3}
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


def test_retry_exhaustion_fails_execution_once(tmp_path) -> None:
    async def _run() -> None:
        executor = _executor(tmp_path)
        flaky = _FlakyProcessor(failures=10)
        executor.register_processor("task", flaky)
        running_nodes: list[str] = []
        executor.broadcaster.subscribe(
            lambda event: running_nodes.append(event.node_id)
            if event.event_type == "step_updated" and event.payload.get("status") == "running"
            else None
        )
        try:
            executor.register_template(_template())
            execution = executor.create_execution("tpl-retry", "ann")
            await executor.start_execution(execution.id)
            await executor.wait_until_idle(execution.id)

            view = executor.get_execution_status(execution.id)
            work = next(step for step in view.steps if step.node_id == "work")
            assert view.status == "failed"
            assert view.end_time is not None
            assert flaky.calls == 3
            assert work.status == "failed"
            assert work.retry_count == 2
            assert work.error.code == "FLAKY"
            assert view.errors[0].node_id == "work"
            assert view.errors[0].code == "FLAKY"
            assert "end" not in running_nodes
            assert all(step.node_id != "end" for step in view.steps)
            assert len(executor.notifier.of_type("workflow_failed")) == 1
            assert executor.running_count == 0

            await executor.handle_execution_error(execution.id, RuntimeError("late"))
            assert len(executor.notifier.of_type("workflow_failed")) == 1
            assert len(executor.get_execution_status(execution.id).errors) == 1
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


def test_unknown_node_type_fails_without_retry(tmp_path) -> None:
    async def _run() -> None:
        executor = _executor(tmp_path)
        executor.processors.pop("task")
        try:
            executor.register_template(_template())
            execution = executor.create_execution("tpl-retry", "ann")
            await executor.start_execution(execution.id)
            await executor.wait_until_idle(execution.id)

            view = executor.get_execution_status(execution.id)
            assert view.status == "failed"
            assert view.errors[0].code == "WORKFLOW_STRUCTURE_ERROR"
            assert all(step.retry_count == 0 for step in view.steps)
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


def test_api_call_error_status_is_retried_then_fails(tmp_path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(500, json={"error": "down"})

    async def _run() -> None:
        executor = _executor(tmp_path, http_client=OutboundHttpClient(transport=httpx.MockTransport(handler)))
        template = WorkflowTemplate.model_validate(
            {
                "id": "tpl-api",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "call", "type": "api_call", "config": {"url": "https://api.test/{{resource}}"}},
                    {"id": "end", "type": "end"},
                ],
                "connections": [
                    {"source": "start", "target": "call"},
                    {"source": "call", "target": "end"},
                ],
            }
        )
        try:
            executor.register_template(template)
            execution = executor.create_execution("tpl-api", "ann", variables={"resource": "users"})
            await executor.start_execution(execution.id)
            await executor.wait_until_idle(execution.id)

            view = executor.get_execution_status(execution.id)
            assert view.status == "failed"
            assert view.errors[0].code == "API_CALL_HTTP_ERROR"
            assert calls == ["https://api.test/users"] * 3
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


def test_retry_delay_backs_off_exponentially(tmp_path) -> None:
    executor = WorkflowExecutor(
        ExecutionStore(db_path=str(tmp_path / "workflow.db")),
        settings=EngineSettings(retry_base_delay_seconds=1.0, retry_max_delay_seconds=3.0),
    )
    try:
        assert executor._retry_delay(1) == 1.0
        assert executor._retry_delay(2) == 2.0
        assert executor._retry_delay(3) == 3.0
    finally:
        executor.close()


def test_pending_retry_does_not_rerun_node_after_pause_and_resume(tmp_path) -> None:
    async def _run() -> None:
        executor = WorkflowExecutor(
            ExecutionStore(db_path=str(tmp_path / "workflow.db")),
            settings=EngineSettings(retry_base_delay_seconds=0.2, max_retries=2),
            notifier=InMemoryNotificationDispatcher(),
        )
        flaky = _FlakyProcessor(failures=1)
        executor.register_processor("task", flaky)
        template = WorkflowTemplate.model_validate(
            {
                "id": "tpl-retry-pause",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "work", "type": "task", "config": {"title": "unused"}},
                    {"id": "hold", "type": "delay", "config": {"duration": 400}},
                    {"id": "end", "type": "end"},
                ],
                "connections": [
                    {"source": "start", "target": "work"},
                    {"source": "work", "target": "hold"},
                    {"source": "hold", "target": "end"},
                ],
            }
        )
        try:
            executor.register_template(template)
            execution = executor.create_execution("tpl-retry-pause", "ann")
            await executor.start_execution(execution.id)

            for _ in range(100):
                steps = executor.get_execution_status(execution.id).steps
                if any(step.node_id == "work" and step.retry_count == 1 for step in steps):
                    break
                await asyncio.sleep(0.005)

            await executor.pause_execution(execution.id)
            await executor.resume_execution(execution.id)
            await executor.wait_until_idle(execution.id)
            await asyncio.sleep(0.25)

            view = executor.get_execution_status(execution.id)
            work = next(step for step in view.steps if step.node_id == "work")
            assert view.status == "completed"
            assert flaky.calls == 2
            assert work.retry_count == 1
            assert work.status == "completed"
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


class _LateStructureFailure:
    async def process(self, execution, node) -> NodeResult:
        await asyncio.sleep(0.05)
        raise WorkflowStructureError("node wiring is broken")


def test_late_structure_error_does_not_touch_cancelled_execution(tmp_path) -> None:
    async def _run() -> None:
        executor = _executor(tmp_path)
        executor.register_processor("task", _LateStructureFailure())
        try:
            executor.register_template(_template())
            execution = executor.create_execution("tpl-retry", "ann")
            await executor.start_execution(execution.id)

            for _ in range(100):
                if executor.get_execution_status(execution.id).current_step == "work":
                    break
                await asyncio.sleep(0.005)
            live = executor._live[execution.id]

            await executor.cancel_execution(execution.id)
            await asyncio.sleep(0.1)

            assert live.status == "cancelled"
            assert live.get_step("work").status == "running"
            assert live.errors == []
            assert executor.notifier.of_type("workflow_failed") == []
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())


def test_invalid_email_channel_fails_without_retry(tmp_path) -> None:
    async def _run() -> None:
        executor = _executor(tmp_path)
        template = WorkflowTemplate.model_validate(
            {
                "id": "tpl-bad-mail",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "mail", "type": "email", "config": {"subject": "Hi", "channels": ["fax"]}},
                    {"id": "end", "type": "end"},
                ],
                "connections": [
                    {"source": "start", "target": "mail"},
                    {"source": "mail", "target": "end"},
                ],
            }
        )
        try:
            executor.register_template(template)
            execution = executor.create_execution("tpl-bad-mail", "ann")
            await executor.start_execution(execution.id)
            await executor.wait_until_idle(execution.id)

            view = executor.get_execution_status(execution.id)
            mail = next(step for step in view.steps if step.node_id == "mail")
            assert view.status == "failed"
            assert view.errors[0].code == "INVALID_NODE_CONFIG"
            assert mail.retry_count == 0
            assert executor.notifier.of_type("workflow_notification") == []
        finally:
            await executor.shutdown()
            executor.close()

    asyncio.run(_run())
