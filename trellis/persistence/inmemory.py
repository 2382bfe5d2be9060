"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from ..contracts import WorkflowDefinition
from ..errors import ContextVersionConflict, DuplicateOpenTask
from .models import (
    ContextVersion,
    EventType,
    HistoryEvent,
    Instance,
    InstanceStatus,
    Task,
    TaskStatus,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, Instance] = {}
        self._tasks: Dict[str, Task] = {}
        self._contexts: Dict[str, List[ContextVersion]] = {}
        self._events: Dict[str, List[HistoryEvent]] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(definition_id)

    async def latest_definition_version(self, key: str) -> int:
        versions = [d.version for d in self._definitions.values() if d.key == key]
        return max(versions, default=0)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return sorted(self._definitions.values(), key=lambda d: (d.key, d.version))

    # ------------------------------------------------------------------
    async def create_instance(self, instance: Instance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> Instance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def update_instance(self, instance: Instance) -> None:
        instance.updated_at = utcnow()
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[Instance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if status is None or i.status == status
        ]

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> None:
        async with self._lock:
            for existing in self._tasks.values():
                if (
                    existing.instance_id == task.instance_id
                    and existing.node_id == task.node_id
                    and existing.status.is_open
                ):
                    raise DuplicateOpenTask(task.instance_id, task.node_id, existing.id)
            self._tasks[task.id] = task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def find_open_task(self, instance_id: str, node_id: str) -> Task | None:
        for task in self._tasks.values():
            if (
                task.instance_id == instance_id
                and task.node_id == node_id
                and task.status.is_open
            ):
                return task.model_copy(deep=True)
        return None

    async def latest_task(self, instance_id: str, node_id: str) -> Task | None:
        # dicts keep insertion order, so the last match is the newest task
        latest = None
        for task in self._tasks.values():
            if task.instance_id == instance_id and task.node_id == node_id:
                latest = task
        return latest.model_copy(deep=True) if latest else None

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        return [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if (instance_id is None or t.instance_id == instance_id)
            and (status is None or t.status == status)
            and (assigned_to is None or t.assigned_to == assigned_to)
        ]

    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in tuple(from_statuses):
                return None
            now = utcnow()
            update: Dict[str, Any] = {"status": to_status, "updated_at": now}
            if not to_status.is_open:
                update["completed_at"] = now
            update.update(changes or {})
            updated = task.model_copy(update=update, deep=True)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def get_context(self, instance_id: str) -> ContextVersion | None:
        versions = self._contexts.get(instance_id)
        return versions[-1].model_copy(deep=True) if versions else None

    async def insert_context_version(self, context: ContextVersion) -> None:
        async with self._lock:
            versions = self._contexts.setdefault(context.instance_id, [])
            if any(v.version == context.version for v in versions):
                raise ContextVersionConflict(context.instance_id, context.version)
            versions.append(context.model_copy(deep=True))
            versions.sort(key=lambda v: v.version)

    async def list_context_versions(self, instance_id: str) -> list[ContextVersion]:
        return [v.model_copy(deep=True) for v in self._contexts.get(instance_id, [])]

    # ------------------------------------------------------------------
    async def append_event(self, event: HistoryEvent) -> HistoryEvent:
        async with self._lock:
            self._sequence += 1
            stored = event.model_copy(update={"sequence": self._sequence}, deep=True)
            self._events.setdefault(event.instance_id, []).append(stored)
            return stored.model_copy(deep=True)

    async def list_events(
        self,
        instance_id: str,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> list[HistoryEvent]:
        wanted = set(event_types) if event_types is not None else None
        return [
            e.model_copy(deep=True)
            for e in self._events.get(instance_id, [])
            if wanted is None or e.event_type in wanted
        ]
