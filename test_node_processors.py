import asyncio
import json

import httpx
import pytest

from execution.node_processors import (
    ApprovalNodeProcessor,
    ProcessorServices,
    build_processor_registry,
)
from execution.step_tracker import StepTracker
from integrations.http_client import OutboundHttpClient
from integrations.notifications import InMemoryNotificationDispatcher
from integrations.task_store import InMemoryTaskStore
from shared.config import EngineSettings
from shared.errors import NodeProcessingError, WorkflowStructureError
from shared.workflow_contracts import WorkflowExecution, WorkflowNode


def _services(handler=None) -> ProcessorServices:
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200, json={"ok": True})))
    return ProcessorServices(
        task_store=InMemoryTaskStore(),
        notifier=InMemoryNotificationDispatcher(),
        http_client=OutboundHttpClient(transport=transport),
        settings=EngineSettings(),
        tracker=StepTracker(),
    )


def _execution(**variables) -> WorkflowExecution:
    return WorkflowExecution(
        id="exec_1",
        template_id="tpl",
        name="Demo",
        triggered_by="ann",
        status="running",
        variables=variables,
        context={"tenant": "acme"},
    )


def test_registry_covers_every_node_type() -> None:
    registry = build_processor_registry(_services())
    assert set(registry) == {"start", "end", "task", "email", "delay", "condition", "approval", "api_call"}


def test_task_processor_resolves_fields_and_defaults_assignee() -> None:
    async def _run() -> None:
        services = _services()
        processor = build_processor_registry(services)["task"]
        node = WorkflowNode(
            id="task",
            type="task",
            config={"title": "Task for {{user}}", "description": "Tenant {{context.tenant}}", "tags": ["ops"]},
        )

        result = await processor.process(_execution(user="Ann"), node)

        assert result.output["title"] == "Task for Ann"
        assert result.output["assigned_to"] == "ann"
        assert result.result_context == result.output
        created = services.task_store.tasks[0]
        assert created["description"] == "Tenant acme"
        assert created["assigned_by"] == "ann"
        assert created["due_date"] > created["scheduled_date"]

    asyncio.run(_run())


def test_task_processor_requires_title() -> None:
    async def _run() -> None:
        processor = build_processor_registry(_services())["task"]
        with pytest.raises(NodeProcessingError):
            await processor.process(_execution(), WorkflowNode(id="task", type="task", config={}))

    asyncio.run(_run())


def test_email_processor_uses_default_channels() -> None:
    async def _run() -> None:
        services = _services()
        processor = build_processor_registry(services)["email"]
        node = WorkflowNode(
            id="mail",
            type="email",
            config={"recipient": "{{manager}}", "subject": "Hi {{user}}", "body": "Welcome"},
        )

        result = await processor.process(_execution(user="Ann", manager="bob"), node)

        sent = services.notifier.of_type("workflow_notification")
        assert len(sent) == 1
        assert sent[0].recipient == "bob"
        assert sent[0].title == "Hi Ann"
        assert sent[0].channels == ["in_app", "email", "websocket"]
        assert sent[0].data["workflow_execution_id"] == "exec_1"
        assert result.output["recipient"] == "bob"

    asyncio.run(_run())


def test_email_processor_rejects_unknown_channel_without_sending() -> None:
    async def _run() -> None:
        services = _services()
        processor = build_processor_registry(services)["email"]
        node = WorkflowNode(id="mail", type="email", config={"subject": "Hi", "channels": ["fax"]})

        with pytest.raises(WorkflowStructureError) as raised:
            await processor.process(_execution(), node)

        assert raised.value.code == "INVALID_NODE_CONFIG"
        assert services.notifier.sent == []

    asyncio.run(_run())


def test_delay_processor_rejects_invalid_duration() -> None:
    async def _run() -> None:
        processor = build_processor_registry(_services())["delay"]
        execution = _execution()

        result = await processor.process(execution, WorkflowNode(id="wait", type="delay", config={"duration": 5}))
        assert result.output["delay_duration"] == 5

        with pytest.raises(NodeProcessingError):
            await processor.process(execution, WorkflowNode(id="wait", type="delay", config={"duration": "soon"}))

    asyncio.run(_run())


def test_condition_processor_exposes_result() -> None:
    async def _run() -> None:
        processor = build_processor_registry(_services())["condition"]
        node = WorkflowNode(id="check", type="condition", config={"condition": "{{amount}} > 100"})

        result = await processor.process(_execution(amount=150), node)

        assert result.output["result"] is True
        assert result.output["condition"] == "150 > 100"
        assert result.result_context["result"] is True

    asyncio.run(_run())


def test_condition_processor_substitutes_variable_values_once() -> None:
    async def _run() -> None:
        processor = build_processor_registry(_services())["condition"]
        node = WorkflowNode(id="check", type="condition", config={"condition": "{{alias}} == x"})

        result = await processor.process(_execution(alias="{{target}}", target="x"), node)

        assert result.output["result"] is False
        assert result.output["condition"] == "{{target}} == x"

    asyncio.run(_run())


def test_approval_processor_suspends_and_notifies_approver() -> None:
    async def _run() -> None:
        services = _services()
        processor = ApprovalNodeProcessor(services)
        execution = _execution()
        node = WorkflowNode(id="approve", type="approval", config={"approver": "boss"})
        services.tracker.mark_running(execution, node)

        result = await processor.process(execution, node)

        assert result.suspended is True
        assert execution.get_step("approve").status == "waiting_approval"
        assert execution.get_step("approve").assigned_to == "boss"
        assert services.notifier.of_type("workflow_approval")[0].recipient == "boss"

    asyncio.run(_run())


def test_end_processor_completes_execution() -> None:
    async def _run() -> None:
        services = _services()
        processor = build_processor_registry(services)["end"]
        execution = _execution()

        result = await processor.process(execution, WorkflowNode(id="end", type="end"))

        assert result.terminal is True
        assert execution.status == "completed"
        assert execution.end_time is not None
        assert services.notifier.of_type("workflow_completed")[0].recipient == "ann"

    asyncio.run(_run())


def test_api_call_processor_sends_resolved_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": 7})

    async def _run() -> None:
        processor = build_processor_registry(_services(handler))["api_call"]
        node = WorkflowNode(
            id="call",
            type="api_call",
            config={
                "url": "https://hooks.example.com/{{context.tenant}}/users",
                "method": "post",
                "headers": {"X-User": "{{user}}"},
                "body": {"name": "{{user}}"},
            },
        )

        result = await processor.process(_execution(user="Ann"), node)

        assert result.output["status"] == 201
        assert result.output["method"] == "POST"
        assert result.output["data"] == {"id": 7}
        assert str(seen[0].url) == "https://hooks.example.com/acme/users"
        assert seen[0].headers["X-User"] == "Ann"
        assert json.loads(seen[0].content) == {"name": "Ann"}

    asyncio.run(_run())


def test_api_call_error_status_policy() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    async def _run() -> None:
        processor = build_processor_registry(_services(handler))["api_call"]
        execution = _execution()

        with pytest.raises(NodeProcessingError) as excinfo:
            await processor.process(execution, WorkflowNode(id="call", type="api_call", config={"url": "https://x.test"}))
        assert excinfo.value.code == "API_CALL_HTTP_ERROR"

        tolerant = WorkflowNode(
            id="call",
            type="api_call",
            config={"url": "https://x.test", "accept_error_status": True},
        )
        result = await processor.process(execution, tolerant)
        assert result.output["status"] == 503
        assert result.output["data"] == "unavailable"

    asyncio.run(_run())
