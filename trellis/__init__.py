"""Trellis: workflow execution engine for human, service and AI agent tasks."""

from .agents import AgentRegistry
from .api import WorkflowEngine, build_engine
from .contracts import GatewayType, Node, NodeType, TaskType, Transition, WorkflowDefinition
from .engine import InstanceState
from .graph import resolve_transitions, validate
from .persistence import get_repository
from .queues import get_work_queue
from .registry import REGISTRY, register_function
from .services import HttpServiceCall, ServiceRegistry

__version__ = "0.1.0"
__all__ = [
    "AgentRegistry",
    "GatewayType",
    "HttpServiceCall",
    "InstanceState",
    "Node",
    "NodeType",
    "REGISTRY",
    "ServiceRegistry",
    "TaskType",
    "Transition",
    "WorkflowDefinition",
    "WorkflowEngine",
    "build_engine",
    "get_repository",
    "get_work_queue",
    "register_function",
    "resolve_transitions",
    "validate",
]
