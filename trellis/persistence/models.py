"""Data models for persisted engine state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import TaskType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class InstanceStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SUSPENDED = "SUSPENDED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_open(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


OPEN_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class EventType(str, Enum):
    INSTANCE_STARTED = "INSTANCE_STARTED"
    NODE_ENTERED = "NODE_ENTERED"
    GATEWAY_EVALUATED = "GATEWAY_EVALUATED"
    GATEWAY_DEAD_END = "GATEWAY_DEAD_END"
    TASK_CREATED = "TASK_CREATED"
    TASK_STARTED = "TASK_STARTED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    TASK_SKIPPED = "TASK_SKIPPED"
    CONTEXT_UPDATED = "CONTEXT_UPDATED"
    SERVICE_CALL_FAILED = "SERVICE_CALL_FAILED"
    INSTANCE_COMPLETED = "INSTANCE_COMPLETED"
    INSTANCE_FAILED = "INSTANCE_FAILED"
    INSTANCE_SUSPENDED = "INSTANCE_SUSPENDED"
    INSTANCE_RESUMED = "INSTANCE_RESUMED"
    QUEUE_ITEM_FAILED = "QUEUE_ITEM_FAILED"


class QueueItemKind(str, Enum):
    ADVANCE_INSTANCE = "ADVANCE_INSTANCE"
    INVOKE_SERVICE_TASK = "INVOKE_SERVICE_TASK"
    INVOKE_AGENT_TASK = "INVOKE_AGENT_TASK"


class QueueItemStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Instance(BaseModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    frontier: List[str] = Field(default_factory=list)
    status: InstanceStatus = InstanceStatus.RUNNING
    ended_branches: int = 0
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def current_node_id(self) -> Optional[str]:
        if self.status.is_terminal or not self.frontier:
            return None
        return self.frontier[0]


class Task(BaseModel):
    """A unit of work bound to one TASK node occurrence."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    node_id: str
    function_code: str
    task_type: TaskType = TaskType.USER_TASK
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ContextVersion(BaseModel):
    """Full context snapshot; a new row is the only way to change context."""

    instance_id: str
    version: int
    context_data: Dict[str, Any] = Field(default_factory=dict)
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class HistoryEvent(BaseModel):
    """Write-once audit record."""

    id: str = Field(default_factory=new_id)
    sequence: Optional[int] = None
    instance_id: str
    event_type: EventType
    node_id: Optional[str] = None
    task_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    event_timestamp: datetime = Field(default_factory=utcnow)


class QueueItem(BaseModel):
    """Transient, retryable work descriptor."""

    id: str = Field(default_factory=new_id)
    kind: QueueItemKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempt_count: int = 0
    next_attempt_at: datetime = Field(default_factory=utcnow)
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def instance_id(self) -> Optional[str]:
        return self.payload.get("instance_id")

    @property
    def task_id(self) -> Optional[str]:
        return self.payload.get("task_id")
