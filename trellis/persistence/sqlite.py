"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..contracts import WorkflowDefinition
from ..errors import ContextVersionConflict, DuplicateOpenTask
from .models import (
    OPEN_TASK_STATUSES,
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

_TASK_COLUMNS = (
    "id, instance_id, node_id, function_code, task_type, status, assigned_to, "
    "input_data, output_data, error, created_at, updated_at, completed_at"
)
_JSON_TASK_FIELDS = {"input_data", "output_data"}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                key TEXT NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL,
                published_at TEXT,
                UNIQUE (key, version)
            );
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                frontier TEXT NOT NULL,
                status TEXT NOT NULL,
                ended_branches INTEGER NOT NULL DEFAULT 0,
                failure_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                function_code TEXT NOT NULL,
                task_type TEXT NOT NULL,
                status TEXT NOT NULL,
                assigned_to TEXT,
                input_data TEXT,
                output_data TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE UNIQUE INDEX IF NOT EXISTS tasks_one_open_per_node
                ON tasks (instance_id, node_id)
                WHERE status IN ('PENDING', 'IN_PROGRESS');
            CREATE TABLE IF NOT EXISTS context_versions (
                instance_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                context_data TEXT NOT NULL,
                task_id TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (instance_id, version)
            );
            CREATE TABLE IF NOT EXISTS history_events (
                sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                instance_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                node_id TEXT,
                task_id TEXT,
                actor_id TEXT,
                metadata TEXT,
                event_timestamp TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS history_events_instance
                ON history_events (instance_id, sequence);
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return cur.rowcount

    def _insert_returning_id(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> Instance:
        return Instance(
            id=row["id"],
            definition_id=row["definition_id"],
            frontier=json.loads(row["frontier"]),
            status=row["status"],
            ended_branches=row["ended_branches"],
            failure_reason=row["failure_reason"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            instance_id=row["instance_id"],
            node_id=row["node_id"],
            function_code=row["function_code"],
            task_type=row["task_type"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            input_data=json.loads(row["input_data"]) if row["input_data"] else {},
            output_data=json.loads(row["output_data"]) if row["output_data"] else None,
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _row_to_context(row: sqlite3.Row) -> ContextVersion:
        return ContextVersion(
            instance_id=row["instance_id"],
            version=row["version"],
            context_data=json.loads(row["context_data"]),
            task_id=row["task_id"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> HistoryEvent:
        return HistoryEvent(
            id=row["id"],
            sequence=row["sequence"],
            instance_id=row["instance_id"],
            event_type=row["event_type"],
            node_id=row["node_id"],
            task_id=row["task_id"],
            actor_id=row["actor_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            event_timestamp=_parse_ts(row["event_timestamp"]),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO definitions (id, key, version, body, published_at) VALUES (?, ?, ?, ?, ?)",
            definition.id,
            definition.key,
            definition.version,
            definition.model_dump_json(),
            _ts(definition.published_at),
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM definitions WHERE id = ?", definition_id
        )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def latest_definition_version(self, key: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COALESCE(MAX(version), 0) AS version FROM definitions WHERE key = ?",
            key,
        )
        return row["version"]

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM definitions ORDER BY key, version"
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: Instance) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO instances (id, definition_id, frontier, status, ended_branches,
                                   failure_reason, created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            instance.id,
            instance.definition_id,
            json.dumps(instance.frontier),
            instance.status.value,
            instance.ended_branches,
            instance.failure_reason,
            _ts(instance.created_at),
            _ts(instance.updated_at),
            _ts(instance.completed_at),
        )

    async def get_instance(self, instance_id: str) -> Instance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM instances WHERE id = ?", instance_id
        )
        return self._row_to_instance(row) if row else None

    async def update_instance(self, instance: Instance) -> None:
        instance.updated_at = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE instances
            SET frontier = ?, status = ?, ended_branches = ?, failure_reason = ?,
                updated_at = ?, completed_at = ?
            WHERE id = ?
            """,
            json.dumps(instance.frontier),
            instance.status.value,
            instance.ended_branches,
            instance.failure_reason,
            _ts(instance.updated_at),
            _ts(instance.completed_at),
            instance.id,
        )

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[Instance]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM instances ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM instances WHERE status = ? ORDER BY created_at",
                status.value,
            )
        return [self._row_to_instance(r) for r in rows]

    # ------------------------------------------------------------------
    # Tasks
    async def create_task(self, task: Task) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                task.id,
                task.instance_id,
                task.node_id,
                task.function_code,
                task.task_type.value,
                task.status.value,
                task.assigned_to,
                json.dumps(task.input_data),
                json.dumps(task.output_data) if task.output_data is not None else None,
                task.error,
                _ts(task.created_at),
                _ts(task.updated_at),
                _ts(task.completed_at),
            )
        except sqlite3.IntegrityError:
            existing = await self.find_open_task(task.instance_id, task.node_id)
            if existing is None:
                raise
            raise DuplicateOpenTask(task.instance_id, task.node_id, existing.id)

    async def get_task(self, task_id: str) -> Task | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", task_id
        )
        return self._row_to_task(row) if row else None

    async def find_open_task(self, instance_id: str, node_id: str) -> Task | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_TASK_COLUMNS} FROM tasks
            WHERE instance_id = ? AND node_id = ? AND status IN (?, ?)
            """,
            instance_id,
            node_id,
            *(s.value for s in OPEN_TASK_STATUSES),
        )
        return self._row_to_task(row) if row else None

    async def latest_task(self, instance_id: str, node_id: str) -> Task | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_TASK_COLUMNS} FROM tasks
            WHERE instance_id = ? AND node_id = ?
            ORDER BY rowid DESC LIMIT 1
            """,
            instance_id,
            node_id,
        )
        return self._row_to_task(row) if row else None

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        clauses, params = [], []
        if instance_id is not None:
            clauses.append("instance_id = ?")
            params.append(instance_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if assigned_to is not None:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_TASK_COLUMNS} FROM tasks {where} ORDER BY rowid",
            *params,
        )
        return [self._row_to_task(r) for r in rows]

    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Task | None:
        now = utcnow()
        sets = {"status": to_status.value, "updated_at": _ts(now)}
        if not to_status.is_open:
            sets["completed_at"] = _ts(now)
        for field, value in (changes or {}).items():
            sets[field] = json.dumps(value) if field in _JSON_TASK_FIELDS else value
        allowed = [s.value for s in from_statuses]
        assignments = ", ".join(f"{column} = ?" for column in sets)
        placeholders = ", ".join("?" for _ in allowed)
        updated = await asyncio.to_thread(
            self._execute,
            f"UPDATE tasks SET {assignments} WHERE id = ? AND status IN ({placeholders})",
            *sets.values(),
            task_id,
            *allowed,
        )
        if not updated:
            return None
        return await self.get_task(task_id)

    # ------------------------------------------------------------------
    # Context
    async def get_context(self, instance_id: str) -> ContextVersion | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM context_versions WHERE instance_id = ?
            ORDER BY version DESC LIMIT 1
            """,
            instance_id,
        )
        return self._row_to_context(row) if row else None

    async def insert_context_version(self, context: ContextVersion) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO context_versions (instance_id, version, context_data, task_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                context.instance_id,
                context.version,
                json.dumps(context.context_data),
                context.task_id,
                _ts(context.created_at),
            )
        except sqlite3.IntegrityError as exc:
            raise ContextVersionConflict(context.instance_id, context.version) from exc

    async def list_context_versions(self, instance_id: str) -> list[ContextVersion]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM context_versions WHERE instance_id = ? ORDER BY version",
            instance_id,
        )
        return [self._row_to_context(r) for r in rows]

    # ------------------------------------------------------------------
    # History
    async def append_event(self, event: HistoryEvent) -> HistoryEvent:
        sequence = await asyncio.to_thread(
            self._insert_returning_id,
            """
            INSERT INTO history_events (id, instance_id, event_type, node_id, task_id,
                                        actor_id, metadata, event_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            event.id,
            event.instance_id,
            event.event_type.value,
            event.node_id,
            event.task_id,
            event.actor_id,
            json.dumps(event.metadata, default=str),
            _ts(event.event_timestamp),
        )
        return event.model_copy(update={"sequence": sequence})

    async def list_events(
        self,
        instance_id: str,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> list[HistoryEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM history_events WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        events = [self._row_to_event(r) for r in rows]
        if event_types is not None:
            wanted = set(event_types)
            events = [e for e in events if e.event_type in wanted]
        return events
