"""Workflow definition graph contracts."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import UnknownNode


class NodeType(str, Enum):
    START = "START"
    TASK = "TASK"
    GATEWAY = "GATEWAY"
    END = "END"


class GatewayType(str, Enum):
    EXCLUSIVE = "EXCLUSIVE"
    PARALLEL = "PARALLEL"
    INCLUSIVE = "INCLUSIVE"


class TaskType(str, Enum):
    USER_TASK = "USER_TASK"
    SERVICE_TASK = "SERVICE_TASK"
    AI_AGENT_TASK = "AI_AGENT_TASK"


class Node(BaseModel):
    """A vertex of the workflow graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType
    name: Optional[str] = None
    function_code: Optional[str] = None
    task_type: Optional[TaskType] = None
    assignee: Optional[str] = Field(
        default=None,
        description="Principal id, or a '$.path' resolved against the context",
    )
    input_mapping: Optional[Dict[str, str]] = None
    gateway_type: Optional[GatewayType] = None


class Transition(BaseModel):
    """A directed, optionally conditional edge between two nodes."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    from_node_id: str
    to_node_id: str
    condition: Optional[str] = None
    priority: int = 0
    on_failure: bool = False

    @property
    def is_default(self) -> bool:
        return not (self.condition and self.condition.strip())


class WorkflowDefinition(BaseModel):
    """Immutable, versioned workflow graph.

    A definition is frozen once constructed; publishing a changed graph under
    the same ``key`` produces a new definition with a new ``id`` and a higher
    ``version``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    key: str
    version: int = 1
    name: Optional[str] = None
    nodes: List[Node] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    published_at: Optional[datetime] = None

    def node(self, node_id: str) -> Node:
        """Return the node with ``node_id`` or raise ``UnknownNode``."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise UnknownNode(node_id)

    def has_node(self, node_id: str) -> bool:
        return any(node.id == node_id for node in self.nodes)

    @property
    def start_node(self) -> Node:
        for node in self.nodes:
            if node.type == NodeType.START:
                return node
        raise UnknownNode("<start>")

    def outgoing(self, node_id: str) -> List[Transition]:
        """Outgoing transitions in evaluation order (priority, then declaration)."""
        edges = [t for t in self.transitions if t.from_node_id == node_id]
        return sorted(edges, key=lambda t: t.priority)

    def incoming(self, node_id: str) -> List[Transition]:
        return [t for t in self.transitions if t.to_node_id == node_id]

    def is_join(self, node_id: str) -> bool:
        """Return ``True`` for parallel gateways that synchronise branches."""
        node = self.node(node_id)
        return (
            node.type == NodeType.GATEWAY
            and node.gateway_type == GatewayType.PARALLEL
            and len(self.incoming(node_id)) > 1
        )

    def published(self, version: int) -> "WorkflowDefinition":
        """Return a published copy carrying ``version`` and a fresh id."""
        return self.model_copy(
            update={
                "id": str(uuid.uuid4()),
                "version": version,
                "published_at": datetime.now(timezone.utc),
            }
        )
