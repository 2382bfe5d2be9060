"""PostgreSQL-backed work queue using ``FOR UPDATE SKIP LOCKED``."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from ..persistence.models import (
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    new_id,
    utcnow,
)
from .base import LEASE_EXPIRED, BaseWorkQueue

SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_items (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    instance_id TEXT,
    payload JSONB NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TIMESTAMPTZ NOT NULL,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS queue_items_ready
    ON queue_items (status, next_attempt_at);
CREATE UNIQUE INDEX IF NOT EXISTS queue_items_one_running_advance
    ON queue_items (instance_id)
    WHERE kind = 'ADVANCE_INSTANCE' AND status = 'RUNNING';
"""

_CLAIM = """
WITH candidate AS (
    SELECT q.id FROM queue_items q
    WHERE ((q.status = 'PENDING' AND q.next_attempt_at <= $1)
        OR (q.status = 'RUNNING' AND q.claimed_at <= $2))
      AND NOT (q.kind = 'ADVANCE_INSTANCE' AND EXISTS (
            SELECT 1 FROM queue_items r
            WHERE r.kind = 'ADVANCE_INSTANCE' AND r.status = 'RUNNING'
              AND r.instance_id = q.instance_id AND r.id <> q.id))
    ORDER BY q.next_attempt_at
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
UPDATE queue_items q SET
    attempt_count = q.attempt_count
        + CASE WHEN q.status = 'RUNNING' THEN 1 ELSE 0 END,
    last_error = CASE WHEN q.status = 'RUNNING' THEN $4 ELSE q.last_error END,
    status = 'RUNNING',
    claimed_by = $3,
    claimed_at = $1,
    updated_at = $1
FROM candidate
WHERE q.id = candidate.id
RETURNING q.*
"""


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkQueue(BaseWorkQueue):
    """Queue items in a PostgreSQL table.

    A partial unique index allows one RUNNING advancement per instance; a
    claim that loses that race reports nothing claimed.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await conn.execute(SCHEMA)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            yield conn
        finally:
            await conn.close()

    def _row_to_item(self, row: asyncpg.Record) -> QueueItem:
        data = dict(row)
        data.pop("instance_id", None)
        data["payload"] = _loads(data["payload"])
        return QueueItem(**data)

    async def enqueue(
        self,
        kind: QueueItemKind,
        payload: Dict[str, Any],
        *,
        dedupe: bool = False,
    ) -> QueueItem:
        instance_id = payload.get("instance_id")
        async with self._connection() as conn:
            async with conn.transaction():
                if dedupe:
                    row = await conn.fetchrow(
                        "SELECT * FROM queue_items WHERE kind = $1 AND instance_id = $2 "
                        "AND status = 'PENDING' AND attempt_count = 0 LIMIT 1",
                        kind.value,
                        instance_id,
                    )
                    if row is not None:
                        return self._row_to_item(row)
                now = utcnow()
                row = await conn.fetchrow(
                    "INSERT INTO queue_items (id, kind, instance_id, payload, status, "
                    "attempt_count, next_attempt_at, created_at, updated_at) "
                    "VALUES ($1, $2, $3, $4::jsonb, 'PENDING', 0, $5, $5, $5) "
                    "RETURNING *",
                    new_id(),
                    kind.value,
                    instance_id,
                    json.dumps(payload),
                    now,
                )
        return self._row_to_item(row)

    async def claim(
        self, worker_id: str, *, now: datetime, lease_ttl: float
    ) -> Optional[QueueItem]:
        cutoff = now - timedelta(seconds=lease_ttl)
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(_CLAIM, now, cutoff, worker_id, LEASE_EXPIRED)
            except UniqueViolationError:
                return None
        return self._row_to_item(row) if row else None

    async def _update_owned(
        self, item_id: str, worker_id: str, assignments: str, *params: Any
    ) -> bool:
        n = len(params)
        query = (
            f"UPDATE queue_items SET {assignments}, updated_at = ${n + 1} "
            f"WHERE id = ${n + 2} AND claimed_by = ${n + 3} AND status = 'RUNNING'"
        )
        async with self._connection() as conn:
            result = await conn.execute(query, *params, utcnow(), item_id, worker_id)
        return result.endswith(" 1")

    async def mark_succeeded(self, item_id: str, worker_id: str) -> bool:
        return await self._update_owned(item_id, worker_id, "status = 'SUCCEEDED'")

    async def reschedule(
        self,
        item_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        return await self._update_owned(
            item_id,
            worker_id,
            "status = 'PENDING', attempt_count = $1, next_attempt_at = $2, "
            "last_error = $3, claimed_by = NULL, claimed_at = NULL",
            attempt_count,
            next_attempt_at,
            error,
        )

    async def mark_failed(
        self, item_id: str, worker_id: str, *, attempt_count: int, error: str
    ) -> bool:
        return await self._update_owned(
            item_id,
            worker_id,
            "status = 'FAILED', attempt_count = $1, last_error = $2",
            attempt_count,
            error,
        )

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM queue_items WHERE id = $1", item_id)
        return self._row_to_item(row) if row else None

    async def list_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM queue_items "
                "WHERE ($1::text IS NULL OR status = $1) "
                "AND ($2::text IS NULL OR kind = $2) "
                "ORDER BY created_at",
                status.value if status else None,
                kind.value if kind else None,
            )
        return [self._row_to_item(row) for row in rows]

    async def delete(self, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        async with self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM queue_items WHERE id = ANY($1::text[])", ids
            )
        return int(result.split()[-1])
