"""Base work queue interface."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from ..persistence.models import QueueItem, QueueItemKind, QueueItemStatus

LEASE_EXPIRED = "lease expired"


class BaseWorkQueue(metaclass=abc.ABCMeta):
    """Abstract store of :class:`QueueItem` rows with atomic claiming.

    ``claim`` hands out at most one item per call and guarantees that

    * an item is held by a single worker at a time,
    * a RUNNING item whose lease (``claimed_at + lease_ttl``) expired can be
      reclaimed, counting the abandoned attempt,
    * an ``ADVANCE_INSTANCE`` item is not handed out while another advancement
      of the same instance is running under a live lease.

    The ``mark_*`` and ``reschedule`` calls only apply while ``worker_id``
    still holds the claim and return ``False`` otherwise.
    """

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(
        self,
        kind: QueueItemKind,
        payload: Dict[str, Any],
        *,
        dedupe: bool = False,
    ) -> QueueItem:
        """Add a PENDING item.

        With ``dedupe`` an existing untried PENDING item of the same kind for
        the same instance is returned instead of creating a new one.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def claim(
        self, worker_id: str, *, now: datetime, lease_ttl: float
    ) -> Optional[QueueItem]:
        """Atomically claim the next runnable item, or return ``None``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def mark_succeeded(self, item_id: str, worker_id: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def reschedule(
        self,
        item_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        """Return a claimed item to PENDING for a later attempt."""
        raise NotImplementedError

    @abc.abstractmethod
    async def mark_failed(
        self, item_id: str, worker_id: str, *, attempt_count: int, error: str
    ) -> bool:
        """Park a claimed item as FAILED."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, item_ids: Iterable[str]) -> int:
        """Remove items permanently and return how many were deleted."""
        raise NotImplementedError
