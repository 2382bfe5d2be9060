"""Execution queue worker.

Each iteration claims one queue item and dispatches it by kind. Failures are
retried with exponential backoff until ``max_attempts`` is reached, after
which the item is parked as FAILED, the failure is written to the instance
history and the kind-specific escalation runs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from .audit import AuditTrail
from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_LEASE_TTL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
)
from .engine import InstanceStateMachine
from .errors import InstanceTerminal
from .persistence.models import (
    EventType,
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    utcnow,
)
from .queues.base import BaseWorkQueue
from .utils.retry import next_attempt_at

logger = logging.getLogger(__name__)

ADVANCE_EXHAUSTED = "advancement exhausted retries"


class QueueItemHandler(Protocol):
    async def handle(self, item: QueueItem) -> None:
        """Process ``item``; raising schedules a retry."""

    async def exhausted(self, item: QueueItem, error: Exception) -> None:
        """Escalate after the last allowed attempt failed."""


class AdvanceHandler:
    """Handles ``ADVANCE_INSTANCE`` items."""

    def __init__(self, state_machine: InstanceStateMachine) -> None:
        self.state_machine = state_machine

    async def handle(self, item: QueueItem) -> None:
        await self.state_machine.advance(item.instance_id)

    async def exhausted(self, item: QueueItem, error: Exception) -> None:
        try:
            await self.state_machine.fail(
                item.instance_id,
                ADVANCE_EXHAUSTED,
                metadata={"last_error": str(error), "queue_item_id": item.id},
            )
        except InstanceTerminal:
            logger.info(f"Instance {item.instance_id} completed before escalation")


class ExecutionWorker:
    """Pull queue items and run them until stopped."""

    def __init__(
        self,
        queue: BaseWorkQueue,
        audit: AuditTrail,
        handlers: Dict[QueueItemKind, QueueItemHandler],
        *,
        worker_id: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.queue = queue
        self.audit = audit
        self.handlers = handlers
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.lease_ttl = lease_ttl
        self.poll_interval = poll_interval
        self.clock = clock
        self._stopping = asyncio.Event()

    async def run_once(
        self, now: Optional[datetime] = None, worker_id: Optional[str] = None
    ) -> bool:
        """Claim and process a single item; return ``False`` when idle."""
        now = now or self.clock()
        worker_id = worker_id or self.worker_id
        item = await self.queue.claim(worker_id, now=now, lease_ttl=self.lease_ttl)
        if item is None:
            return False

        handler = self.handlers.get(item.kind)
        if handler is None:
            item.attempt_count += 1
            await self._give_up(
                item,
                None,
                worker_id,
                LookupError(f"No handler for queue item kind {item.kind.value}"),
            )
            return True

        logger.debug(f"{worker_id} claimed {item.kind.value} item {item.id}")
        if item.attempt_count >= self.max_attempts:
            # Reclaimed after its leases expired too often.
            await self._give_up(
                item, handler, worker_id, RuntimeError(item.last_error or "lease expired")
            )
            return True

        try:
            await handler.handle(item)
        except InstanceTerminal as e:
            logger.info(f"Queue item {item.id} has nothing to do: {e}")
        except Exception as e:
            await self._retry_or_give_up(item, handler, worker_id, e, now)
            return True
        await self.queue.mark_succeeded(item.id, worker_id)
        return True

    async def _retry_or_give_up(
        self,
        item: QueueItem,
        handler: QueueItemHandler,
        worker_id: str,
        error: Exception,
        now: datetime,
    ) -> None:
        attempt_count = item.attempt_count + 1
        if attempt_count < self.max_attempts:
            retry_at = next_attempt_at(now, attempt_count, self.backoff_base)
            logger.warning(
                f"{item.kind.value} item {item.id} failed "
                f"(attempt {attempt_count}/{self.max_attempts}), retrying at "
                f"{retry_at.isoformat()}: {error}"
            )
            await self.queue.reschedule(
                item.id,
                worker_id,
                attempt_count=attempt_count,
                next_attempt_at=retry_at,
                error=str(error),
            )
            return
        item.attempt_count = attempt_count
        await self._give_up(item, handler, worker_id, error)

    async def _give_up(
        self,
        item: QueueItem,
        handler: Optional[QueueItemHandler],
        worker_id: str,
        error: Exception,
    ) -> None:
        logger.error(
            f"{item.kind.value} item {item.id} failed after "
            f"{item.attempt_count} attempts: {error}"
        )
        updated = await self.queue.mark_failed(
            item.id, worker_id, attempt_count=item.attempt_count, error=str(error)
        )
        if not updated:
            logger.warning(f"Lost the claim on queue item {item.id}")
            return
        await self.audit.record(
            item.instance_id,
            EventType.QUEUE_ITEM_FAILED,
            task_id=item.task_id,
            actor_id=worker_id,
            metadata={
                "queue_item_id": item.id,
                "kind": item.kind.value,
                "attempt_count": item.attempt_count,
                "last_error": str(error),
            },
        )
        if handler is not None:
            await handler.exhausted(item, error)

    async def run(self, lifespan: Optional[float] = None, concurrency: int = 1) -> None:
        """Process items until ``stop`` is called or ``lifespan`` seconds pass.

        ``concurrency`` runs that many claim loops in this process, each with
        its own worker id.
        """
        self._stopping.clear()
        loop_ids = (
            [self.worker_id]
            if concurrency <= 1
            else [f"{self.worker_id}-{n}" for n in range(concurrency)]
        )
        logger.info(f"Starting {len(loop_ids)} worker loop(s): {', '.join(loop_ids)}")
        await asyncio.gather(*(self._loop(loop_id, lifespan) for loop_id in loop_ids))

    async def _loop(self, worker_id: str, lifespan: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while not self._stopping.is_set():
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                processed = await self.run_once(worker_id=worker_id)
            except Exception:
                logger.exception(f"{worker_id} failed to process the queue")
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"{worker_id} stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def prune(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> int:
        return await prune_queue(self.queue, self.audit, retention, now or self.clock())


async def prune_queue(
    queue: BaseWorkQueue,
    audit: AuditTrail,
    retention: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """Delete settled queue items older than ``retention``.

    FAILED items are only deleted once a ``QUEUE_ITEM_FAILED`` history event
    names them, so the failure stays explainable after the item is gone.
    """
    cutoff = (now or utcnow()) - retention
    doomed = [
        item.id
        for item in await queue.list_items(QueueItemStatus.SUCCEEDED)
        if item.updated_at <= cutoff
    ]

    recorded: Dict[str, set] = {}
    for item in await queue.list_items(QueueItemStatus.FAILED):
        if item.updated_at > cutoff or item.instance_id is None:
            continue
        if item.instance_id not in recorded:
            events = await audit.history(
                item.instance_id, [EventType.QUEUE_ITEM_FAILED]
            )
            recorded[item.instance_id] = {
                e.metadata.get("queue_item_id") for e in events
            }
        if item.id in recorded[item.instance_id]:
            doomed.append(item.id)
        else:
            logger.warning(f"Keeping FAILED item {item.id}: failure not in history")

    removed = await queue.delete(doomed)
    logger.info(f"Pruned {removed} queue item(s) settled before {cutoff.isoformat()}")
    return removed
