"""SQLite-backed work queue."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..persistence.models import (
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    new_id,
    utcnow,
)
from .base import LEASE_EXPIRED, BaseWorkQueue

_ADVANCE = QueueItemKind.ADVANCE_INSTANCE.value


def _epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteWorkQueue(BaseWorkQueue):
    """Queue items in a SQLite table.

    Claims run inside ``BEGIN IMMEDIATE`` so that several processes sharing
    the file serialize on the database write lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, timeout=30, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS queue_items (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                instance_id TEXT,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL NOT NULL,
                claimed_by TEXT,
                claimed_at REAL,
                last_error TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS queue_items_ready
                ON queue_items (status, next_attempt_at);
            """
        )

    def _row_to_item(self, row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            kind=QueueItemKind(row["kind"]),
            payload=json.loads(row["payload"]),
            status=QueueItemStatus(row["status"]),
            attempt_count=row["attempt_count"],
            next_attempt_at=_from_epoch(row["next_attempt_at"]),
            claimed_by=row["claimed_by"],
            claimed_at=_from_epoch(row["claimed_at"]),
            last_error=row["last_error"],
            created_at=_from_epoch(row["created_at"]),
            updated_at=_from_epoch(row["updated_at"]),
        )

    def _transaction(self, fn, *args):
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(*args)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return result

    # ------------------------------------------------------------------
    def _enqueue(
        self, kind: QueueItemKind, payload: Dict[str, Any], dedupe: bool
    ) -> QueueItem:
        instance_id = payload.get("instance_id")
        if dedupe:
            row = self._conn.execute(
                "SELECT * FROM queue_items WHERE kind = ? AND instance_id = ? "
                "AND status = 'PENDING' AND attempt_count = 0 LIMIT 1",
                (kind.value, instance_id),
            ).fetchone()
            if row is not None:
                return self._row_to_item(row)
        now = utcnow().timestamp()
        item_id = new_id()
        self._conn.execute(
            "INSERT INTO queue_items (id, kind, instance_id, payload, status, "
            "attempt_count, next_attempt_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'PENDING', 0, ?, ?, ?)",
            (item_id, kind.value, instance_id, json.dumps(payload), now, now, now),
        )
        row = self._conn.execute(
            "SELECT * FROM queue_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_item(row)

    async def enqueue(
        self,
        kind: QueueItemKind,
        payload: Dict[str, Any],
        *,
        dedupe: bool = False,
    ) -> QueueItem:
        return await asyncio.to_thread(
            self._transaction, self._enqueue, kind, payload, dedupe
        )

    def _claim(self, worker_id: str, now: float, cutoff: float) -> Optional[QueueItem]:
        row = self._conn.execute(
            """
            SELECT q.id FROM queue_items q
            WHERE ((q.status = 'PENDING' AND q.next_attempt_at <= :now)
                OR (q.status = 'RUNNING' AND q.claimed_at <= :cutoff))
              AND NOT (q.kind = :advance AND EXISTS (
                    SELECT 1 FROM queue_items r
                    WHERE r.kind = :advance AND r.status = 'RUNNING'
                      AND r.instance_id = q.instance_id AND r.id != q.id
                      AND r.claimed_at > :cutoff))
            ORDER BY q.next_attempt_at
            LIMIT 1
            """,
            {"now": now, "cutoff": cutoff, "advance": _ADVANCE},
        ).fetchone()
        if row is None:
            return None
        claimed = self._conn.execute(
            """
            UPDATE queue_items SET
                attempt_count = attempt_count
                    + CASE WHEN status = 'RUNNING' THEN 1 ELSE 0 END,
                last_error = CASE WHEN status = 'RUNNING' THEN :expired
                    ELSE last_error END,
                status = 'RUNNING',
                claimed_by = :worker,
                claimed_at = :now,
                updated_at = :now
            WHERE id = :id
              AND (status = 'PENDING'
                   OR (status = 'RUNNING' AND claimed_at <= :cutoff))
            RETURNING *
            """,
            {
                "expired": LEASE_EXPIRED,
                "worker": worker_id,
                "now": now,
                "cutoff": cutoff,
                "id": row["id"],
            },
        ).fetchone()
        return self._row_to_item(claimed) if claimed else None

    async def claim(
        self, worker_id: str, *, now: datetime, lease_ttl: float
    ) -> Optional[QueueItem]:
        cutoff = now - timedelta(seconds=lease_ttl)
        return await asyncio.to_thread(
            self._transaction, self._claim, worker_id, now.timestamp(), cutoff.timestamp()
        )

    def _update_owned(self, item_id: str, worker_id: str, assignments: str, *params: Any) -> bool:
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE queue_items SET {assignments}, updated_at = ? "
                "WHERE id = ? AND claimed_by = ? AND status = 'RUNNING'",
                (*params, utcnow().timestamp(), item_id, worker_id),
            )
            return cur.rowcount == 1

    async def mark_succeeded(self, item_id: str, worker_id: str) -> bool:
        return await asyncio.to_thread(
            self._update_owned, item_id, worker_id, "status = 'SUCCEEDED'"
        )

    async def reschedule(
        self,
        item_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        return await asyncio.to_thread(
            self._update_owned,
            item_id,
            worker_id,
            "status = 'PENDING', attempt_count = ?, next_attempt_at = ?, "
            "last_error = ?, claimed_by = NULL, claimed_at = NULL",
            attempt_count,
            next_attempt_at.timestamp(),
            error,
        )

    async def mark_failed(
        self, item_id: str, worker_id: str, *, attempt_count: int, error: str
    ) -> bool:
        return await asyncio.to_thread(
            self._update_owned,
            item_id,
            worker_id,
            "status = 'FAILED', attempt_count = ?, last_error = ?",
            attempt_count,
            error,
        )

    def _fetch(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    async def get(self, item_id: str) -> Optional[QueueItem]:
        rows = await asyncio.to_thread(
            self._fetch, "SELECT * FROM queue_items WHERE id = ?", item_id
        )
        return self._row_to_item(rows[0]) if rows else None

    async def list_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        query = "SELECT * FROM queue_items WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetch, query, *params)
        return [self._row_to_item(row) for row in rows]

    def _delete(self, item_ids: list[str]) -> int:
        with self._lock:
            cur = self._conn.executemany(
                "DELETE FROM queue_items WHERE id = ?", [(i,) for i in item_ids]
            )
            return cur.rowcount

    async def delete(self, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        return await asyncio.to_thread(self._delete, ids)

    async def disconnect(self) -> None:
        with self._lock:
            self._conn.close()
