import pytest
from pydantic import ValidationError

from shared.workflow_contracts import WorkflowEvent, WorkflowExecution, WorkflowTemplate


def _template_payload(**overrides):
    payload = {
        "id": "tpl-onboarding",
        "name": "Onboarding",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "task", "type": "task", "config": {"title": "Welcome {{user}}"}},
            {"id": "end", "type": "end"},
        ],
        "connections": [
            {"id": "c1", "source": "start", "target": "task"},
            {"id": "c2", "source": "task", "target": "end"},
        ],
        "variables": [
            {"name": "user", "required": True},
            {"name": "team", "default_value": "core"},
        ],
    }
    payload.update(overrides)
    return payload


def test_template_accepts_valid_graph() -> None:
    template = WorkflowTemplate.model_validate(_template_payload())

    assert template.start_node.id == "start"
    assert template.get_node("task").config["title"] == "Welcome {{user}}"
    assert template.get_node("nope") is None
    assert [c.target for c in template.outgoing("start")] == ["task"]
    assert template.default_variables() == {"team": "core"}
    assert template.find_orphaned_nodes() == []


def test_template_requires_exactly_one_start_node() -> None:
    nodes = [
        {"id": "s1", "type": "start"},
        {"id": "s2", "type": "start"},
        {"id": "end", "type": "end"},
    ]
    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(_template_payload(nodes=nodes, connections=[]))

    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(
            _template_payload(nodes=[{"id": "end", "type": "end"}], connections=[])
        )


def test_template_requires_an_end_node() -> None:
    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(
            _template_payload(nodes=[{"id": "start", "type": "start"}], connections=[])
        )


def test_template_rejects_unknown_connection_endpoint() -> None:
    connections = [{"source": "start", "target": "ghost"}]
    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(_template_payload(connections=connections))


def test_template_rejects_duplicate_node_ids_and_unknown_types() -> None:
    duplicated = [
        {"id": "start", "type": "start"},
        {"id": "end", "type": "end"},
        {"id": "end", "type": "task"},
    ]
    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(_template_payload(nodes=duplicated, connections=[]))

    unknown = [
        {"id": "start", "type": "start"},
        {"id": "x", "type": "teleport"},
        {"id": "end", "type": "end"},
    ]
    with pytest.raises(ValidationError):
        WorkflowTemplate.model_validate(_template_payload(nodes=unknown, connections=[]))


def test_template_reports_orphaned_nodes() -> None:
    nodes = [
        {"id": "start", "type": "start"},
        {"id": "lonely", "type": "email"},
        {"id": "end", "type": "end"},
    ]
    template = WorkflowTemplate.model_validate(
        _template_payload(nodes=nodes, connections=[{"source": "start", "target": "end"}])
    )

    assert template.find_orphaned_nodes() == ["lonely"]


def test_template_is_immutable() -> None:
    template = WorkflowTemplate.model_validate(_template_payload())
    with pytest.raises(ValidationError):
        template.name = "changed"


def test_execution_defaults_and_helpers() -> None:
    execution = WorkflowExecution(id="exec_1", template_id="tpl", triggered_by="ann")

    assert execution.status == "pending"
    assert execution.progress == 0
    assert execution.is_terminal is False
    assert execution.get_step("start") is None

    execution.status = "cancelled"
    assert execution.is_terminal is True


def test_execution_progress_is_bounded() -> None:
    with pytest.raises(ValidationError):
        WorkflowExecution(id="exec_1", template_id="tpl", triggered_by="ann", progress=101)


def test_workflow_event_validates_type() -> None:
    event = WorkflowEvent(
        event_id="evt-1",
        execution_id="exec_1",
        template_id="tpl",
        event_type="execution_started",
        status="running",
    )
    assert event.model_dump(mode="json")["event_type"] == "execution_started"

    with pytest.raises(ValidationError):
        WorkflowEvent(event_id="evt-2", execution_id="exec_1", template_id="tpl", event_type="bogus")
