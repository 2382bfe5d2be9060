import json
from pathlib import Path

import pytest

from trellis.cli_utils.definition import load_definition
from trellis.cli_utils.payload import parse_payload
from trellis.contracts import GatewayType, NodeType

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"


def test_load_yaml_definition_with_short_edge_keys():
    definition = load_definition(FIXTURES / "expense.yaml")
    assert definition.key == "expense"
    assert definition.version == 1
    assert definition.published_at is None
    assert definition.node("decide").gateway_type == GatewayType.EXCLUSIVE
    assert definition.node("submit").assignee == "$.employee"

    guarded = [t for t in definition.transitions if t.condition]
    assert len(guarded) == 1
    assert guarded[0].from_node_id == "decide"
    assert guarded[0].to_node_id == "approve"
    assert guarded[0].condition == "submit.amount > 100"


def test_load_json_definition_drops_publication_fields(tmp_path):
    path = tmp_path / "simple.json"
    path.write_text(
        json.dumps(
            {
                "id": "stale-id",
                "version": 7,
                "nodes": [
                    {"id": "start", "type": "START"},
                    {"id": "end", "type": "END"},
                ],
                "transitions": [{"from_node_id": "start", "to_node_id": "end"}],
            }
        )
    )
    definition = load_definition(path)
    assert definition.key == "simple"
    assert definition.id != "stale-id"
    assert definition.version == 1
    assert definition.start_node.type == NodeType.START


def test_load_definition_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_definition(path)


def test_parse_payload(tmp_path):
    assert parse_payload(None) == {}
    assert parse_payload('{"a": 1}') == {"a": 1}

    payload_file = tmp_path / "output.json"
    payload_file.write_text('{"approved": true}')
    assert parse_payload(f"@{payload_file}") == {"approved": True}

    with pytest.raises(ValueError):
        parse_payload("[1, 2]")
    with pytest.raises(ValueError):
        parse_payload("{not json")
