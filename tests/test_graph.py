"""Tests for workflow definition validation and activation."""

import pytest

from services.execution.errors import WorkflowDefinitionError
from services.execution.graph import collect_definition_errors, reachable_nodes, validate_graph
from tests.conftest import edge, node

TRIGGER = {"type": "lead_created", "config": {}}


def _nodes():
    return [
        node("t", "trigger"),
        node("send", "send_message", channel="whatsapp", content="Hi {{lead.name}}"),
        node("done", "end"),
    ]


class TestValidateGraph:
    """Structural validation collects every problem."""

    def test_valid_graph(self):
        graph = validate_graph(TRIGGER, _nodes(), [edge("t", "send"), edge("send", "done")])
        assert graph.trigger_node().id == "t"
        assert [e.target for e in graph.outgoing("t")] == ["send"]
        assert reachable_nodes(graph) == {"t", "send", "done"}

    def test_dangling_edge(self):
        errors = collect_definition_errors(TRIGGER, _nodes(), [edge("t", "ghost")])
        assert errors == ["edge 't->ghost' has dangling target 'ghost'"]

    def test_missing_trigger_node(self):
        nodes = [node("send", "send_message", content="Hi")]
        assert "missing trigger node" in collect_definition_errors(TRIGGER, nodes, [])

    def test_duplicate_ids_and_unknown_type(self):
        nodes = _nodes() + [node("send", "send_message", content="x"), node("x", "teleport")]
        errors = collect_definition_errors(TRIGGER, nodes, [])
        assert "duplicate node id 'send'" in errors
        assert "node 'x' has unknown type 'teleport'" in errors

    def test_invalid_node_config(self):
        nodes = [node("t", "trigger"), node("wait", "delay")]
        errors = collect_definition_errors(TRIGGER, nodes, [edge("t", "wait")])
        assert any(e.startswith("node 'wait'") for e in errors)

    def test_unknown_trigger_type(self):
        errors = collect_definition_errors({"type": "moon_landing"}, _nodes(), [])
        assert any("unknown trigger type" in e for e in errors)

    def test_bad_edge_condition(self):
        errors = collect_definition_errors(TRIGGER, _nodes(), [edge("t", "send", "score >")])
        assert len(errors) == 1
        assert errors[0].startswith("edge 't->send': Invalid condition")

    def test_bad_condition_node_expression(self):
        nodes = [node("t", "trigger"), node("check", "condition", expression="score >>> 3")]
        errors = collect_definition_errors(TRIGGER, nodes, [edge("t", "check")])
        assert len(errors) == 1
        assert errors[0].startswith("node 'check': Invalid condition")

    def test_blank_condition_node_expression_allowed(self):
        nodes = [node("t", "trigger"), node("check", "condition", expression="  ")]
        assert collect_definition_errors(TRIGGER, nodes, [edge("t", "check")]) == []

    def test_raises_with_all_errors(self):
        with pytest.raises(WorkflowDefinitionError) as exc:
            validate_graph(TRIGGER, [], [])
        assert exc.value.errors == ["workflow has no nodes"]

    def test_unreachable_nodes_are_allowed(self):
        graph = validate_graph(TRIGGER, _nodes(), [edge("t", "send")])
        assert "done" not in reachable_nodes(graph)

    def test_delay_units(self):
        graph = validate_graph(TRIGGER, [node("t", "trigger"), node("d", "delay", duration=2, unit="hours")],
                               [edge("t", "d")])
        assert graph.node("d").data.seconds == 7200


class TestActivation:
    async def test_invalid_definition_stays_inactive(self, engine):
        record = await engine.add_workflow(_nodes(), [edge("t", "ghost")], activate=False)

        with pytest.raises(WorkflowDefinitionError):
            await engine.service.activate(record.id)

        stored = await engine.service.get_workflow(record.id)
        assert stored.is_active is False

    async def test_activate_and_deactivate(self, engine):
        record = await engine.add_workflow(_nodes(), [edge("t", "send"), edge("send", "done")])
        assert record.is_active is True
        assert record.status == "active"

        record = await engine.service.deactivate(record.id)
        assert record.is_active is False
        assert record.status == "paused"

    async def test_schedule_trigger_requires_cron(self, engine):
        with pytest.raises(WorkflowDefinitionError) as exc:
            await engine.add_workflow(_nodes(), [edge("t", "send")], trigger_type="schedule")
        assert exc.value.errors == ["schedule trigger requires 'cron'"]

    async def test_definition_edit_bumps_version(self, engine):
        record = await engine.add_workflow(_nodes(), [edge("t", "send")])
        updated = await engine.service.update_workflow(
            record.id, edges=[edge("t", "send"), edge("send", "done")]
        )
        assert updated.version == record.version + 1

    async def test_invalid_edit_of_active_workflow_rejected(self, engine):
        record = await engine.add_workflow(_nodes(), [edge("t", "send")])
        with pytest.raises(WorkflowDefinitionError):
            await engine.service.update_workflow(record.id, edges=[edge("t", "ghost")])
        stored = await engine.service.get_workflow(record.id)
        assert stored.version == record.version

    async def test_malformed_condition_node_blocks_activation(self, engine):
        nodes = [node("t", "trigger"), node("check", "condition", expression="score >>> 3")]
        record = await engine.add_workflow(nodes, [edge("t", "check")], activate=False)

        with pytest.raises(WorkflowDefinitionError) as exc:
            await engine.service.activate(record.id)

        assert exc.value.errors[0].startswith("node 'check'")
        assert (await engine.service.get_workflow(record.id)).is_active is False
