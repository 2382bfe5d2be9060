"""Tests for definition validation and transition resolution."""

import pytest

from trellis.contracts import GatewayType, NodeType, WorkflowDefinition
from trellis.errors import NoMatchingTransition, UnknownNode
from trellis.graph import resolve_transitions, validate


def _definition(nodes, transitions, key="wf"):
    return WorkflowDefinition(key=key, nodes=nodes, transitions=transitions)


def test_valid_definitions(linear_definition, exclusive_definition, join_definition):
    for definition in (linear_definition, exclusive_definition, join_definition):
        result = validate(definition)
        assert result.valid, result.errors


def test_start_and_end_are_required(node, edge):
    result = validate(
        _definition(
            [node("A", NodeType.TASK), node("B", NodeType.TASK)],
            [edge("A", "B"), edge("B", "A")],
        )
    )
    assert not result.valid
    assert "Expected exactly one START node, found 0" in result.errors
    assert "Definition has no END node" in result.errors

    result = validate(
        _definition(
            [node("s1", NodeType.START), node("s2", NodeType.START), node("end", NodeType.END)],
            [edge("s1", "end"), edge("s2", "end")],
        )
    )
    assert "Expected exactly one START node, found 2" in result.errors


def test_structural_errors(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("A", NodeType.TASK),
                node("A", NodeType.TASK),
                node("end", NodeType.END),
            ],
            [edge("start", "A"), edge("A", "ghost"), edge("end", "A")],
        )
    )
    assert "Duplicate node id 'A'" in result.errors
    assert any("unknown node 'ghost'" in e for e in result.errors)
    assert "END node 'end' has outgoing transitions" in result.errors


def test_task_rules(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("A", NodeType.TASK, function_code=""),
                node("B", NodeType.TASK),
                node("end", NodeType.END),
            ],
            [
                edge("start", "A"),
                edge("A", "B"),
                edge("B", "end", on_failure=True),
            ],
        )
    )
    assert "TASK node 'A' has no function_code" in result.errors
    assert "TASK node 'B' has only error transitions" in result.errors


def test_exclusive_gateway_allows_one_default(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("g", NodeType.GATEWAY, gateway_type=GatewayType.EXCLUSIVE),
                node("end", NodeType.END),
                node("end2", NodeType.END),
            ],
            [edge("start", "g"), edge("g", "end"), edge("g", "end2")],
        )
    )
    assert not result.valid
    assert any("at most one default" in e for e in result.errors)


def test_bad_condition_is_an_error(node, edge):
    result = validate(
        _definition(
            [node("start", NodeType.START), node("end", NodeType.END)],
            [edge("start", "end", "amount >")],
        )
    )
    assert not result.valid
    assert any("Invalid condition" in e for e in result.errors)


def test_unreachable_node(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("orphan", NodeType.TASK),
                node("end", NodeType.END),
            ],
            [edge("start", "end"), edge("orphan", "end")],
        )
    )
    assert "Node 'orphan' is unreachable from START" in result.errors


def test_cycle_without_exit_is_a_warning(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("A", NodeType.TASK),
                node("B", NodeType.TASK),
                node("end", NodeType.END),
            ],
            [
                edge("start", "A", "route == 'loop'"),
                edge("start", "end", "route != 'loop'"),
                edge("A", "B"),
                edge("B", "A"),
            ],
        )
    )
    assert result.valid, result.errors
    assert "Node 'A' has no path to an END node" in result.warnings
    assert "Node 'B' has no path to an END node" in result.warnings


def test_parallel_conditions_are_ignored_with_warning(node, edge):
    result = validate(
        _definition(
            [
                node("start", NodeType.START),
                node("split", NodeType.GATEWAY, gateway_type=GatewayType.PARALLEL),
                node("end", NodeType.END),
            ],
            [edge("start", "split"), edge("split", "end", "x == 1")],
        )
    )
    assert result.valid
    assert "Conditions on PARALLEL gateway 'split' are ignored" in result.warnings


def test_exclusive_resolution(exclusive_definition):
    assert resolve_transitions(exclusive_definition, "decide", {"approved": True}) == ["approve"]
    assert resolve_transitions(exclusive_definition, "decide", {"approved": False}) == ["reject"]
    assert resolve_transitions(exclusive_definition, "decide", {}) == ["reject"]


def test_exclusive_resolution_follows_priority(node, edge):
    definition = _definition(
        [
            node("start", NodeType.START),
            node("g", NodeType.GATEWAY, gateway_type=GatewayType.EXCLUSIVE),
            node("low", NodeType.END),
            node("high", NodeType.END),
        ],
        [
            edge("start", "g"),
            edge("g", "low", "amount > 10", priority=2),
            edge("g", "high", "amount > 100", priority=1),
        ],
    )
    assert resolve_transitions(definition, "g", {"amount": 500}) == ["high"]
    assert resolve_transitions(definition, "g", {"amount": 50}) == ["low"]
    with pytest.raises(NoMatchingTransition):
        resolve_transitions(definition, "g", {"amount": 1})


def test_parallel_resolution(parallel_definition):
    assert resolve_transitions(parallel_definition, "split", {}) == ["A", "B"]


def test_inclusive_resolution(inclusive_definition):
    assert resolve_transitions(inclusive_definition, "route", {"amount": 75}) == ["A", "B"]
    assert resolve_transitions(inclusive_definition, "route", {"amount": 10}) == ["A"]
    assert resolve_transitions(inclusive_definition, "route", {}) == []


def test_inclusive_default_only_when_nothing_matched(node, edge):
    definition = _definition(
        [
            node("start", NodeType.START),
            node("route", NodeType.GATEWAY, gateway_type=GatewayType.INCLUSIVE),
            node("A", NodeType.TASK),
            node("fallback", NodeType.TASK),
            node("end", NodeType.END),
        ],
        [
            edge("start", "route"),
            edge("route", "A", "amount > 10"),
            edge("route", "fallback"),
            edge("A", "end"),
            edge("fallback", "end"),
        ],
    )
    assert resolve_transitions(definition, "route", {"amount": 20}) == ["A"]
    assert resolve_transitions(definition, "route", {"amount": 5}) == ["fallback"]


def test_task_failure_follows_error_transitions(service_definition):
    assert resolve_transitions(service_definition, "charge", {}) == ["end"]
    assert resolve_transitions(service_definition, "charge", {}, failed=True) == ["refund"]
    with pytest.raises(NoMatchingTransition):
        resolve_transitions(service_definition, "refund", {}, failed=True)


def test_end_and_unknown_nodes(linear_definition):
    assert resolve_transitions(linear_definition, "end", {}) == []
    with pytest.raises(UnknownNode):
        resolve_transitions(linear_definition, "nope", {})
