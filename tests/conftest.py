from datetime import timedelta

import pytest

from trellis.api import WorkflowEngine
from trellis.contracts import (
    GatewayType,
    Node,
    NodeType,
    Transition,
    WorkflowDefinition,
)
from trellis.persistence import InMemoryWorkflowRepository
from trellis.persistence.models import utcnow
from trellis.queues.inmemory import InMemoryWorkQueue
from trellis.registry import FunctionRegistry


def _start(node_id="start"):
    return Node(id=node_id, type=NodeType.START)


def _end(node_id="end"):
    return Node(id=node_id, type=NodeType.END)


def _task(node_id, **kwargs):
    kwargs.setdefault("function_code", node_id)
    return Node(id=node_id, type=NodeType.TASK, **kwargs)


def _gateway(node_id, gateway_type):
    return Node(id=node_id, type=NodeType.GATEWAY, gateway_type=gateway_type)


def _edge(src, dst, condition=None, **kwargs):
    return Transition(from_node_id=src, to_node_id=dst, condition=condition, **kwargs)


@pytest.fixture
def engine():
    return WorkflowEngine(
        InMemoryWorkflowRepository(),
        InMemoryWorkQueue(),
        registry=FunctionRegistry(),
    )


@pytest.fixture
def drain():
    """Run a worker until nothing is claimable at ``now``."""

    async def _drain(worker, now=None, limit=100):
        now = now or utcnow() + timedelta(seconds=1)
        processed = 0
        while processed < limit and await worker.run_once(now=now):
            processed += 1
        return processed

    return _drain


@pytest.fixture
def linear_definition():
    """START -> A -> END"""
    return WorkflowDefinition(
        key="linear",
        nodes=[_start(), _task("A"), _end()],
        transitions=[_edge("start", "A"), _edge("A", "end")],
    )


@pytest.fixture
def exclusive_definition():
    """START -> XOR(approved == true -> approve, default -> reject) -> END"""
    return WorkflowDefinition(
        key="exclusive",
        nodes=[
            _start(),
            _gateway("decide", GatewayType.EXCLUSIVE),
            _task("approve"),
            _task("reject"),
            _end(),
        ],
        transitions=[
            _edge("start", "decide"),
            _edge("decide", "approve", "approved == true"),
            _edge("decide", "reject"),
            _edge("approve", "end"),
            _edge("reject", "end"),
        ],
    )


@pytest.fixture
def parallel_definition():
    """START -> AND -> [A, B] -> END"""
    return WorkflowDefinition(
        key="parallel",
        nodes=[
            _start(),
            _gateway("split", GatewayType.PARALLEL),
            _task("A"),
            _task("B"),
            _end(),
        ],
        transitions=[
            _edge("start", "split"),
            _edge("split", "A"),
            _edge("split", "B"),
            _edge("A", "end"),
            _edge("B", "end"),
        ],
    )


@pytest.fixture
def join_definition():
    """START -> AND -> [A, B] -> AND(join) -> C -> END"""
    return WorkflowDefinition(
        key="join",
        nodes=[
            _start(),
            _gateway("split", GatewayType.PARALLEL),
            _task("A"),
            _task("B"),
            _gateway("join", GatewayType.PARALLEL),
            _task("C"),
            _end(),
        ],
        transitions=[
            _edge("start", "split"),
            _edge("split", "A"),
            _edge("split", "B"),
            _edge("A", "join"),
            _edge("B", "join"),
            _edge("join", "C"),
            _edge("C", "end"),
        ],
    )


@pytest.fixture
def service_definition():
    """START -> charge(service) -> END, with an error branch to refund."""
    return WorkflowDefinition(
        key="service",
        nodes=[
            _start(),
            _task("charge", function_code="payments.charge"),
            _task("refund", function_code="payments.refund"),
            _end(),
            _end("end_refunded"),
        ],
        transitions=[
            _edge("start", "charge"),
            _edge("charge", "end"),
            _edge("charge", "refund", on_failure=True),
            _edge("refund", "end_refunded"),
        ],
    )


@pytest.fixture
def inclusive_definition():
    """START -> OR(small -> A, large -> B) -> END"""
    return WorkflowDefinition(
        key="inclusive",
        nodes=[
            _start(),
            _gateway("route", GatewayType.INCLUSIVE),
            _task("A"),
            _task("B"),
            _end(),
        ],
        transitions=[
            _edge("start", "route"),
            _edge("route", "A", "amount < 100"),
            _edge("route", "B", "amount >= 50"),
            _edge("A", "end"),
            _edge("B", "end"),
        ],
    )


@pytest.fixture
def node():
    """Factory for nodes in ad-hoc definitions."""

    def _make(node_id, node_type, **kwargs):
        if node_type == NodeType.TASK:
            return _task(node_id, **kwargs)
        if node_type == NodeType.GATEWAY:
            return _gateway(node_id, kwargs["gateway_type"])
        return Node(id=node_id, type=node_type, **kwargs)

    return _make


@pytest.fixture
def edge():
    return _edge
