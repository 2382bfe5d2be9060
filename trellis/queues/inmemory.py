"""In-memory work queue for tests and single-process use."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from ..persistence.models import QueueItem, QueueItemKind, QueueItemStatus, utcnow
from .base import LEASE_EXPIRED, BaseWorkQueue


class InMemoryWorkQueue(BaseWorkQueue):
    """Simple in-process queue guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._items: Dict[str, QueueItem] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        kind: QueueItemKind,
        payload: Dict[str, Any],
        *,
        dedupe: bool = False,
    ) -> QueueItem:
        async with self._lock:
            if dedupe:
                for item in self._items.values():
                    if (
                        item.kind == kind
                        and item.status == QueueItemStatus.PENDING
                        and item.attempt_count == 0
                        and item.instance_id == payload.get("instance_id")
                    ):
                        return item.model_copy(deep=True)
            item = QueueItem(kind=kind, payload=dict(payload))
            self._items[item.id] = item
            return item.model_copy(deep=True)

    def _advancing(self, instance_id: Optional[str], exclude: str, cutoff: datetime) -> bool:
        return any(
            other.id != exclude
            and other.kind == QueueItemKind.ADVANCE_INSTANCE
            and other.status == QueueItemStatus.RUNNING
            and other.instance_id == instance_id
            and other.claimed_at is not None
            and other.claimed_at > cutoff
            for other in self._items.values()
        )

    async def claim(
        self, worker_id: str, *, now: datetime, lease_ttl: float
    ) -> Optional[QueueItem]:
        cutoff = now - timedelta(seconds=lease_ttl)
        async with self._lock:
            candidates = sorted(self._items.values(), key=lambda i: i.next_attempt_at)
            for item in candidates:
                expired = (
                    item.status == QueueItemStatus.RUNNING
                    and item.claimed_at is not None
                    and item.claimed_at <= cutoff
                )
                ready = (
                    item.status == QueueItemStatus.PENDING
                    and item.next_attempt_at <= now
                )
                if not (ready or expired):
                    continue
                if item.kind == QueueItemKind.ADVANCE_INSTANCE and self._advancing(
                    item.instance_id, item.id, cutoff
                ):
                    continue
                if expired:
                    item.attempt_count += 1
                    item.last_error = LEASE_EXPIRED
                item.status = QueueItemStatus.RUNNING
                item.claimed_by = worker_id
                item.claimed_at = now
                item.updated_at = now
                return item.model_copy(deep=True)
        return None

    def _owned(self, item_id: str, worker_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        if item is None or item.status != QueueItemStatus.RUNNING:
            return None
        if item.claimed_by != worker_id:
            return None
        return item

    async def mark_succeeded(self, item_id: str, worker_id: str) -> bool:
        async with self._lock:
            item = self._owned(item_id, worker_id)
            if item is None:
                return False
            item.status = QueueItemStatus.SUCCEEDED
            item.updated_at = utcnow()
            return True

    async def reschedule(
        self,
        item_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        async with self._lock:
            item = self._owned(item_id, worker_id)
            if item is None:
                return False
            item.status = QueueItemStatus.PENDING
            item.attempt_count = attempt_count
            item.next_attempt_at = next_attempt_at
            item.last_error = error
            item.claimed_by = None
            item.claimed_at = None
            item.updated_at = utcnow()
            return True

    async def mark_failed(
        self, item_id: str, worker_id: str, *, attempt_count: int, error: str
    ) -> bool:
        async with self._lock:
            item = self._owned(item_id, worker_id)
            if item is None:
                return False
            item.status = QueueItemStatus.FAILED
            item.attempt_count = attempt_count
            item.last_error = error
            item.updated_at = utcnow()
            return True

    async def get(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def list_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        return [
            i.model_copy(deep=True)
            for i in self._items.values()
            if (status is None or i.status == status)
            and (kind is None or i.kind == kind)
        ]

    async def delete(self, item_ids: Iterable[str]) -> int:
        async with self._lock:
            removed = 0
            for item_id in item_ids:
                if self._items.pop(item_id, None) is not None:
                    removed += 1
            return removed
