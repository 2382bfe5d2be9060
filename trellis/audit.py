"""Append-only audit trail of instance history events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from .persistence.models import EventType, HistoryEvent
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class AuditTrail:
    """Write-once history of everything that happened to an instance."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def record(
        self,
        instance_id: str,
        event_type: EventType,
        *,
        node_id: Optional[str] = None,
        task_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEvent:
        event = HistoryEvent(
            instance_id=instance_id,
            event_type=event_type,
            node_id=node_id,
            task_id=task_id,
            actor_id=actor_id,
            metadata=metadata or {},
        )
        stored = await self.repository.append_event(event)
        logger.debug(
            f"Recorded {event_type.value} #{stored.sequence} for instance {instance_id}"
        )
        return stored

    async def history(
        self, instance_id: str, event_types: Optional[Iterable[EventType]] = None
    ) -> list[HistoryEvent]:
        return await self.repository.list_events(instance_id, event_types)

    async def has_task_event(
        self, instance_id: str, event_type: EventType, task_id: str
    ) -> bool:
        events = await self.repository.list_events(instance_id, [event_type])
        return any(e.task_id == task_id for e in events)
