"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Protocol

from ..contracts import WorkflowDefinition
from .models import (
    ContextVersion,
    EventType,
    HistoryEvent,
    Instance,
    InstanceStatus,
    Task,
    TaskStatus,
)


class WorkflowRepository(Protocol):
    """Protocol for the durable engine tables.

    Implementations must make three operations atomic: ``create_task`` rejects a
    second open task for the same ``(instance_id, node_id)`` with
    ``DuplicateOpenTask``; ``transition_task`` only updates a task whose status
    is still one of ``from_statuses``; ``insert_context_version`` rejects a
    duplicate ``(instance_id, version)`` with ``ContextVersionConflict``.
    """

    # definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a published definition."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id."""

    async def latest_definition_version(self, key: str) -> int:
        """Return the highest published version for ``key`` or 0."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all published definitions."""

    # instances ---------------------------------------------------------
    async def create_instance(self, instance: Instance) -> None:
        """Persist a new instance."""

    async def get_instance(self, instance_id: str) -> Instance | None:
        """Retrieve an instance by id."""

    async def update_instance(self, instance: Instance) -> None:
        """Persist frontier, status and bookkeeping fields of ``instance``."""

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[Instance]:
        """Return instances, optionally filtered by status."""

    # tasks -------------------------------------------------------------
    async def create_task(self, task: Task) -> None:
        """Persist a new task."""

    async def get_task(self, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    async def find_open_task(self, instance_id: str, node_id: str) -> Task | None:
        """Return the PENDING/IN_PROGRESS task for a node, if any."""

    async def latest_task(self, instance_id: str, node_id: str) -> Task | None:
        """Return the most recently created task for a node."""

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        """Return tasks matching the given filters in creation order."""

    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Task | None:
        """Conditionally move a task to ``to_status``.

        Returns the updated task, or ``None`` when the task's status was no
        longer one of ``from_statuses``.
        """

    # context -----------------------------------------------------------
    async def get_context(self, instance_id: str) -> ContextVersion | None:
        """Return the context version with the highest version number."""

    async def insert_context_version(self, context: ContextVersion) -> None:
        """Append a context snapshot."""

    async def list_context_versions(self, instance_id: str) -> list[ContextVersion]:
        """Return all context snapshots of an instance by ascending version."""

    # history -----------------------------------------------------------
    async def append_event(self, event: HistoryEvent) -> HistoryEvent:
        """Append an audit event and return it with its sequence number."""

    async def list_events(
        self,
        instance_id: str,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> list[HistoryEvent]:
        """Return the audit trail of an instance in append order."""
