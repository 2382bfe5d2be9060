"""Validation and transition resolution for workflow definitions."""

from __future__ import annotations

import logging
from collections import Counter, deque
from typing import Any, Iterable, List, Mapping, Set

from pydantic import BaseModel, Field

from .conditions import compile_condition, evaluate_condition
from .contracts import GatewayType, NodeType, Transition, WorkflowDefinition
from .errors import ConditionSyntaxError, NoMatchingTransition

logger = logging.getLogger(__name__)


class ValidationResult(BaseModel):
    """Outcome of :func:`validate`. Warnings never make a definition invalid."""

    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate(definition: WorkflowDefinition) -> ValidationResult:
    """Check the structural invariants of ``definition``.

    Loops that can never reach an END node are reported as warnings because
    human-in-the-loop workflows may legitimately cycle until someone acts.
    """
    result = ValidationResult()
    errors, warnings = result.errors, result.warnings

    counts = Counter(node.id for node in definition.nodes)
    for node_id, count in counts.items():
        if count > 1:
            errors.append(f"Duplicate node id '{node_id}'")

    starts = [n for n in definition.nodes if n.type == NodeType.START]
    if len(starts) != 1:
        errors.append(f"Expected exactly one START node, found {len(starts)}")
    if not any(n.type == NodeType.END for n in definition.nodes):
        errors.append("Definition has no END node")

    node_ids = set(counts)
    for transition in definition.transitions:
        for end in (transition.from_node_id, transition.to_node_id):
            if end not in node_ids:
                errors.append(
                    f"Transition {transition.from_node_id} -> "
                    f"{transition.to_node_id} references unknown node '{end}'"
                )
        if transition.condition:
            try:
                compile_condition(transition.condition)
            except ConditionSyntaxError as exc:
                errors.append(exc.message)

    for node in definition.nodes:
        outgoing = definition.outgoing(node.id)
        if node.type == NodeType.END:
            if outgoing:
                errors.append(f"END node '{node.id}' has outgoing transitions")
            continue
        if not outgoing:
            errors.append(f"Node '{node.id}' has no outgoing transition")

        if node.type == NodeType.TASK and not node.function_code:
            errors.append(f"TASK node '{node.id}' has no function_code")
        elif node.type == NodeType.TASK and not any(
            not t.on_failure for t in outgoing
        ):
            errors.append(f"TASK node '{node.id}' has only error transitions")

        if node.type != NodeType.TASK and any(t.on_failure for t in outgoing):
            warnings.append(
                f"Error transitions leaving {node.type.value} node '{node.id}' "
                "are never followed"
            )

        if node.type == NodeType.GATEWAY:
            _check_gateway(node.id, node.gateway_type, outgoing, errors, warnings)

    if starts and not errors:
        reachable = _reachable(definition, [starts[0].id], forward=True)
        for node in definition.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from START")

        ends = [n.id for n in definition.nodes if n.type == NodeType.END]
        can_finish = _reachable(definition, ends, forward=False)
        for node_id in sorted(reachable - can_finish):
            warnings.append(f"Node '{node_id}' has no path to an END node")

    for warning in warnings:
        logger.debug(f"Definition {definition.key}: {warning}")
    return result


def _check_gateway(
    node_id: str,
    gateway_type: GatewayType | None,
    outgoing: List[Transition],
    errors: List[str],
    warnings: List[str],
) -> None:
    if gateway_type is None:
        errors.append(f"GATEWAY node '{node_id}' has no gateway_type")
        return
    if gateway_type == GatewayType.PARALLEL:
        if any(not t.is_default for t in outgoing):
            warnings.append(
                f"Conditions on PARALLEL gateway '{node_id}' are ignored"
            )
        return
    defaults = [t for t in outgoing if t.is_default and not t.on_failure]
    if len(defaults) > 1:
        errors.append(
            f"{gateway_type.value} gateway '{node_id}' has {len(defaults)} "
            "unconditional transitions; at most one default is allowed"
        )


def _reachable(
    definition: WorkflowDefinition, roots: Iterable[str], forward: bool
) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        for t in definition.transitions:
            if forward and t.from_node_id == current:
                queue.append(t.to_node_id)
            elif not forward and t.to_node_id == current:
                queue.append(t.from_node_id)
    return seen


def resolve_transitions(
    definition: WorkflowDefinition,
    node_id: str,
    context: Mapping[str, Any],
    *,
    failed: bool = False,
) -> List[str]:
    """Return the node ids reached when leaving ``node_id``.

    Gateways resolve according to their type. START and TASK nodes follow
    every outgoing transition whose condition holds; ``failed`` restricts a
    TASK node to its error transitions. An INCLUSIVE gateway may return an
    empty list, every other node type raises ``NoMatchingTransition`` instead.
    """
    node = definition.node(node_id)
    if node.type == NodeType.END:
        return []

    if node.type == NodeType.GATEWAY:
        edges = [t for t in definition.outgoing(node_id) if not t.on_failure]
        if node.gateway_type == GatewayType.PARALLEL:
            return [t.to_node_id for t in edges]
        if node.gateway_type == GatewayType.EXCLUSIVE:
            return [_resolve_exclusive(node_id, edges, context)]
        return _resolve_inclusive(edges, context)

    edges = [t for t in definition.outgoing(node_id) if t.on_failure == failed]
    targets = [t.to_node_id for t in edges if evaluate_condition(t.condition, context)]
    if not targets:
        raise NoMatchingTransition(node_id)
    return targets


def _resolve_exclusive(
    node_id: str, edges: List[Transition], context: Mapping[str, Any]
) -> str:
    for transition in edges:
        if transition.is_default:
            continue
        if evaluate_condition(transition.condition, context):
            return transition.to_node_id
    for transition in edges:
        if transition.is_default:
            return transition.to_node_id
    raise NoMatchingTransition(node_id)


def _resolve_inclusive(edges: List[Transition], context: Mapping[str, Any]) -> List[str]:
    matched = [
        t.to_node_id
        for t in edges
        if not t.is_default and evaluate_condition(t.condition, context)
    ]
    if matched:
        return matched
    return [t.to_node_id for t in edges if t.is_default]
