"""WorkflowGraph parsing/serialization, Patch IR validation and the patch compiler.

Covers:
  - strict parsing of provider output (fences, wrappers, malformed input)
  - engine payload keyed by display name, storage form keyed by id
  - apply_patch_ops never mutates its input and reports unapplied ops
  - validate_patch_ops reference checking
"""

import json

import pytest

from autoflow_agent.agent.compiler import (
    Connection,
    GraphParseError,
    Node,
    WorkflowGraph,
    apply_patch_ops,
)
from autoflow_agent.agent.patch_ir import (
    AddNode,
    Connect,
    Disconnect,
    RemoveField,
    RemoveNode,
    RenameNode,
    SetParam,
    strip_code_fences,
    validate_patch_ops,
)


_ENGINE_JSON = {
    "name": "Daily weather email",
    "nodes": [
        {
            "id": "schedule_0",
            "name": "Every Day 8am",
            "type": "n8n-nodes-base.scheduleTrigger",
            "typeVersion": 1,
            "position": [250, 300],
            "parameters": {"rule": {"interval": [{"field": "cronExpression", "expression": "0 8 * * *"}]}},
        },
        {
            "id": "weather_1",
            "name": "Get Weather",
            "type": "n8n-nodes-base.openWeatherMap",
            "position": [470, 300],
            "parameters": {"operation": "currentWeather", "cityName": "Berlin"},
        },
        {
            "id": "email_2",
            "name": "Send Email",
            "type": "n8n-nodes-base.emailSend",
            "parameters": {"toEmail": "me@example.com"},
        },
    ],
    "connections": {
        "Every Day 8am": {"main": [[{"node": "Get Weather", "type": "main", "index": 0}]]},
        "weather_1": {"main": [[{"node": "Send Email", "type": "main", "index": 0}]]},
    },
    "active": False,
    "versionId": "3f1c",
    "description": "Morning digest",
}


def _graph() -> WorkflowGraph:
    return WorkflowGraph.from_dict(json.loads(json.dumps(_ENGINE_JSON)))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParsing:
    def test_connections_resolve_by_name_and_id(self):
        g = _graph()
        assert g.connections == [
            Connection("schedule_0", "weather_1"),
            Connection("weather_1", "email_2"),
        ]

    def test_unknown_top_level_keys_kept_in_extra(self):
        assert _graph().extra == {"description": "Morning digest"}

    def test_engine_managed_fields_dropped(self):
        g = WorkflowGraph.from_dict({**_ENGINE_JSON, "extra": {"id": "wf-9", "note": "x"}})
        assert g.extra == {"note": "x", "description": "Morning digest"}
        assert "active" not in g.to_dict()

    def test_position_and_version_defaults(self):
        email = _graph().get_node("email_2")
        assert email.type_version == 1
        # Third node, auto-placed on the layout grid.
        assert email.position == [690.0, 300.0]

    def test_id_falls_back_to_name(self):
        g = WorkflowGraph.from_dict({"nodes": [{"name": "Only", "type": "n8n-nodes-base.set"}]})
        assert g.nodes[0].id == "Only"

    def test_unresolved_connection_kept_verbatim(self):
        data = {
            "nodes": [{"id": "a", "type": "n8n-nodes-base.set"}],
            "connections": {"a": {"main": [[{"node": "ghost"}]]}},
        }
        g = WorkflowGraph.from_dict(data)
        assert g.connections[0].target == "ghost"

    def test_from_json_strips_fences_and_unwraps(self):
        raw = "```json\n" + json.dumps({"workflow": _ENGINE_JSON}) + "\n```"
        g = WorkflowGraph.from_json(raw)
        assert g.name == "Daily weather email"
        assert len(g.nodes) == 3

    @pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]", '{"name": "x"}'])
    def test_bad_input_raises_parse_error(self, raw):
        with pytest.raises(GraphParseError):
            WorkflowGraph.from_json(raw)

    def test_node_without_type_rejected(self):
        with pytest.raises(GraphParseError, match="type"):
            WorkflowGraph.from_dict({"nodes": [{"id": "a"}]})

    def test_parameters_must_be_object(self):
        with pytest.raises(GraphParseError, match="parameters"):
            WorkflowGraph.from_dict({"nodes": [{"id": "a", "type": "t", "parameters": [1]}]})


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_engine_payload_keys_connections_by_display_name(self):
        nodes, connections = _graph().to_engine_payload()
        assert [n["name"] for n in nodes] == ["Every Day 8am", "Get Weather", "Send Email"]
        assert connections["Every Day 8am"]["main"][0][0]["node"] == "Get Weather"
        assert connections["Get Weather"]["main"][0][0]["node"] == "Send Email"

    def test_to_dict_keys_connections_by_id(self):
        d = _graph().to_dict()
        assert set(d["connections"]) == {"schedule_0", "weather_1"}
        assert d["extra"] == {"description": "Morning digest"}

    def test_to_dict_is_parseable(self):
        g = _graph()
        again = WorkflowGraph.from_dict(g.to_dict())
        assert again.connections == g.connections
        assert [n.id for n in again.nodes] == [n.id for n in g.nodes]

    def test_digest_changes_with_parameters(self):
        g = _graph()
        h = g.copy()
        h.get_node("weather_1").parameters["cityName"] = "Paris"
        assert g.digest() != h.digest()
        assert g.digest() == _graph().digest()

    def test_shape(self):
        shape = _graph().shape()
        assert shape["node_count"] == 3
        assert shape["edges"] == ["schedule_0->weather_1", "weather_1->email_2"]

    def test_find_node_case_insensitive(self):
        assert _graph().find_node("get weather").id == "weather_1"


# ---------------------------------------------------------------------------
# Patch compiler
# ---------------------------------------------------------------------------


class TestApplyPatchOps:
    def test_input_graph_not_mutated(self):
        g = _graph()
        before = g.to_dict()
        result = apply_patch_ops(g, [SetParam(node_id="weather_1", param_name="format", value="metric")])
        assert result.ok
        assert g.to_dict() == before
        assert result.graph.get_node("weather_1").parameters["format"] == "metric"

    def test_add_and_connect(self):
        result = apply_patch_ops(_graph(), [
            AddNode(node_type="n8n-nodes-base.slack", node_id="slack_3", name="Post"),
            Connect(source_node_id="email_2", target_node_id="slack_3"),
        ])
        assert result.ok
        assert result.graph.get_node("slack_3").display_name == "Post"
        assert Connection("email_2", "slack_3") in result.graph.connections
        assert "NODE ADDED: [slack_3]" in result.diff_summary

    def test_remove_node_drops_its_edges(self):
        result = apply_patch_ops(_graph(), [RemoveNode(node_id="weather_1")])
        assert result.graph.connections == []

    def test_rename_rewires_connections(self):
        result = apply_patch_ops(_graph(), [RenameNode(node_id="weather_1", new_id="wx", new_name="Weather")])
        g = result.graph
        assert g.get_node("wx").name == "Weather"
        assert Connection("schedule_0", "wx") in g.connections
        assert Connection("wx", "email_2") in g.connections

    def test_rename_second_duplicate_leaves_edges(self):
        g = WorkflowGraph(nodes=[Node("dup", "n8n-nodes-base.set"), Node("dup", "n8n-nodes-base.set")])
        result = apply_patch_ops(g, [RenameNode(node_id="dup", new_id="dup_2", occurrence=1)])
        assert [n.id for n in result.graph.nodes] == ["dup", "dup_2"]

    def test_disconnect(self):
        result = apply_patch_ops(_graph(), [Disconnect(source_node_id="schedule_0", target_node_id="weather_1")])
        assert Connection("schedule_0", "weather_1") not in result.graph.connections

    def test_remove_field_targets_settings(self):
        g = _graph()
        g.settings = {"callerIds": "x", "executionOrder": "v1"}
        result = apply_patch_ops(g, [RemoveField(field_name="callerIds")])
        assert result.graph.settings == {"executionOrder": "v1"}
        assert result.graph.extra == {"description": "Morning digest"}

    def test_errors_reported_and_later_ops_still_run(self):
        result = apply_patch_ops(_graph(), [
            SetParam(node_id="ghost", param_name="x", value=1),
            AddNode(node_type="n8n-nodes-base.set", node_id="weather_1"),
            SetParam(node_id="email_2", param_name="subject", value="Weather"),
        ])
        assert not result.ok
        assert len(result.errors) == 2
        assert result.graph.get_node("email_2").parameters["subject"] == "Weather"

    def test_no_ops(self):
        assert apply_patch_ops(_graph(), []).diff_summary == "(no changes)"


# ---------------------------------------------------------------------------
# Patch IR validation
# ---------------------------------------------------------------------------


class TestValidatePatchOps:
    def test_valid_ops(self):
        errors, warnings = validate_patch_ops(
            [
                AddNode(node_type="n8n-nodes-base.set", node_id="set_9"),
                Connect(source_node_id="weather_1", target_node_id="set_9"),
                SetParam(node_id="set_9", param_name="values", value={}),
            ],
            base_node_ids={"weather_1"},
        )
        assert errors == []
        assert warnings == []

    def test_missing_references(self):
        errors, _ = validate_patch_ops([Connect(source_node_id="a", target_node_id="b")], set())
        assert len(errors) == 2

    def test_duplicate_add(self):
        errors, _ = validate_patch_ops([AddNode(node_type="t", node_id="x")], {"x"})
        assert "duplicate node_id" in errors[0]

    def test_rename_makes_new_id_resolvable(self):
        errors, _ = validate_patch_ops(
            [RenameNode(node_id="a", new_id="b"), SetParam(node_id="b", param_name="p", value=1)],
            {"a"},
        )
        assert errors == []

    def test_remove_unknown_is_warning(self):
        errors, warnings = validate_patch_ops([RemoveNode(node_id="nope")], set())
        assert errors == []
        assert warnings

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'
