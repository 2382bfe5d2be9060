"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import asyncpg
from asyncpg.exceptions import UniqueViolationError

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

SCHEMA = """
CREATE TABLE IF NOT EXISTS definitions (
    id TEXT PRIMARY KEY,
    key TEXT NOT NULL,
    version INTEGER NOT NULL,
    body JSONB NOT NULL,
    published_at TIMESTAMPTZ,
    UNIQUE (key, version)
);
CREATE TABLE IF NOT EXISTS instances (
    id TEXT PRIMARY KEY,
    definition_id TEXT NOT NULL REFERENCES definitions (id),
    frontier JSONB NOT NULL,
    status TEXT NOT NULL,
    ended_branches INTEGER NOT NULL DEFAULT 0,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS tasks (
    seq BIGSERIAL UNIQUE,
    id TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL REFERENCES instances (id),
    node_id TEXT NOT NULL,
    function_code TEXT NOT NULL,
    task_type TEXT NOT NULL,
    status TEXT NOT NULL,
    assigned_to TEXT,
    input_data JSONB,
    output_data JSONB,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS tasks_one_open_per_node
    ON tasks (instance_id, node_id)
    WHERE status IN ('PENDING', 'IN_PROGRESS');
CREATE TABLE IF NOT EXISTS context_versions (
    instance_id TEXT NOT NULL REFERENCES instances (id),
    version INTEGER NOT NULL,
    context_data JSONB NOT NULL,
    task_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (instance_id, version)
);
CREATE TABLE IF NOT EXISTS history_events (
    sequence BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    instance_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    node_id TEXT,
    task_id TEXT,
    actor_id TEXT,
    metadata JSONB,
    event_timestamp TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS history_events_instance
    ON history_events (instance_id, sequence);
"""

_TASK_COLUMNS = (
    "id, instance_id, node_id, function_code, task_type, status, assigned_to, "
    "input_data, output_data, error, created_at, updated_at, completed_at"
)
_JSON_TASK_FIELDS = {"input_data", "output_data"}


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist engine state using PostgreSQL."""

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

    # ------------------------------------------------------------------
    @staticmethod
    def _record_to_instance(row: asyncpg.Record) -> Instance:
        return Instance(
            id=row["id"],
            definition_id=row["definition_id"],
            frontier=_loads(row["frontier"]),
            status=row["status"],
            ended_branches=row["ended_branches"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _record_to_task(row: asyncpg.Record) -> Task:
        return Task(
            id=row["id"],
            instance_id=row["instance_id"],
            node_id=row["node_id"],
            function_code=row["function_code"],
            task_type=row["task_type"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            input_data=_loads(row["input_data"]) or {},
            output_data=_loads(row["output_data"]),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _record_to_context(row: asyncpg.Record) -> ContextVersion:
        return ContextVersion(
            instance_id=row["instance_id"],
            version=row["version"],
            context_data=_loads(row["context_data"]),
            task_id=row["task_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _record_to_event(row: asyncpg.Record) -> HistoryEvent:
        return HistoryEvent(
            id=row["id"],
            sequence=row["sequence"],
            instance_id=row["instance_id"],
            event_type=row["event_type"],
            node_id=row["node_id"],
            task_id=row["task_id"],
            actor_id=row["actor_id"],
            metadata=_loads(row["metadata"]) or {},
            event_timestamp=row["event_timestamp"],
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO definitions (id, key, version, body, published_at) VALUES ($1, $2, $3, $4, $5)",
                definition.id,
                definition.key,
                definition.version,
                definition.model_dump_json(),
                definition.published_at,
            )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        async with self._connection() as conn:
            body = await conn.fetchval(
                "SELECT body FROM definitions WHERE id = $1", definition_id
            )
        if body is None:
            return None
        return WorkflowDefinition.model_validate(_loads(body))

    async def latest_definition_version(self, key: str) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                "SELECT COALESCE(MAX(version), 0) FROM definitions WHERE key = $1", key
            )

    async def list_definitions(self) -> list[WorkflowDefinition]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT body FROM definitions ORDER BY key, version")
        return [WorkflowDefinition.model_validate(_loads(r["body"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: Instance) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO instances (id, definition_id, frontier, status, ended_branches,
                                       failure_reason, created_at, updated_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                instance.id,
                instance.definition_id,
                json.dumps(instance.frontier),
                instance.status.value,
                instance.ended_branches,
                instance.failure_reason,
                instance.created_at,
                instance.updated_at,
                instance.completed_at,
            )

    async def get_instance(self, instance_id: str) -> Instance | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)
        return self._record_to_instance(row) if row else None

    async def update_instance(self, instance: Instance) -> None:
        instance.updated_at = utcnow()
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE instances
                SET frontier = $1, status = $2, ended_branches = $3, failure_reason = $4,
                    updated_at = $5, completed_at = $6
                WHERE id = $7
                """,
                json.dumps(instance.frontier),
                instance.status.value,
                instance.ended_branches,
                instance.failure_reason,
                instance.updated_at,
                instance.completed_at,
                instance.id,
            )

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[Instance]:
        async with self._connection() as conn:
            if status is None:
                rows = await conn.fetch("SELECT * FROM instances ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM instances WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
        return [self._record_to_instance(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_task(self, task: Task) -> None:
        try:
            async with self._connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO tasks ({_TASK_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
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
                    task.created_at,
                    task.updated_at,
                    task.completed_at,
                )
        except UniqueViolationError:
            existing = await self.find_open_task(task.instance_id, task.node_id)
            if existing is None:
                raise
            raise DuplicateOpenTask(task.instance_id, task.node_id, existing.id)

    async def get_task(self, task_id: str) -> Task | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = $1", task_id
            )
        return self._record_to_task(row) if row else None

    async def find_open_task(self, instance_id: str, node_id: str) -> Task | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_TASK_COLUMNS} FROM tasks
                WHERE instance_id = $1 AND node_id = $2 AND status = ANY($3::text[])
                """,
                instance_id,
                node_id,
                [s.value for s in OPEN_TASK_STATUSES],
            )
        return self._record_to_task(row) if row else None

    async def latest_task(self, instance_id: str, node_id: str) -> Task | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_TASK_COLUMNS} FROM tasks
                WHERE instance_id = $1 AND node_id = $2
                ORDER BY seq DESC LIMIT 1
                """,
                instance_id,
                node_id,
            )
        return self._record_to_task(row) if row else None

    async def list_tasks(
        self,
        instance_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        assigned_to: Optional[str] = None,
    ) -> list[Task]:
        clauses, params = [], []
        for column, value in (
            ("instance_id", instance_id),
            ("status", status.value if status else None),
            ("assigned_to", assigned_to),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_TASK_COLUMNS} FROM tasks {where} ORDER BY seq", *params
            )
        return [self._record_to_task(r) for r in rows]

    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Task | None:
        now = utcnow()
        sets: Dict[str, Any] = {"status": to_status.value, "updated_at": now}
        if not to_status.is_open:
            sets["completed_at"] = now
        for field, value in (changes or {}).items():
            sets[field] = json.dumps(value) if field in _JSON_TASK_FIELDS else value
        assignments = ", ".join(
            f"{column} = ${position}" for position, column in enumerate(sets, start=1)
        )
        params = list(sets.values())
        id_pos, status_pos = len(params) + 1, len(params) + 2
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE tasks SET {assignments}
                WHERE id = ${id_pos} AND status = ANY(${status_pos}::text[])
                RETURNING {_TASK_COLUMNS}
                """,
                *params,
                task_id,
                [s.value for s in from_statuses],
            )
        return self._record_to_task(row) if row else None

    # ------------------------------------------------------------------
    async def get_context(self, instance_id: str) -> ContextVersion | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM context_versions WHERE instance_id = $1
                ORDER BY version DESC LIMIT 1
                """,
                instance_id,
            )
        return self._record_to_context(row) if row else None

    async def insert_context_version(self, context: ContextVersion) -> None:
        try:
            async with self._connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO context_versions (instance_id, version, context_data, task_id, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    context.instance_id,
                    context.version,
                    json.dumps(context.context_data),
                    context.task_id,
                    context.created_at,
                )
        except UniqueViolationError as exc:
            raise ContextVersionConflict(context.instance_id, context.version) from exc

    async def list_context_versions(self, instance_id: str) -> list[ContextVersion]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM context_versions WHERE instance_id = $1 ORDER BY version",
                instance_id,
            )
        return [self._record_to_context(r) for r in rows]

    # ------------------------------------------------------------------
    async def append_event(self, event: HistoryEvent) -> HistoryEvent:
        async with self._connection() as conn:
            sequence = await conn.fetchval(
                """
                INSERT INTO history_events (id, instance_id, event_type, node_id, task_id,
                                            actor_id, metadata, event_timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING sequence
                """,
                event.id,
                event.instance_id,
                event.event_type.value,
                event.node_id,
                event.task_id,
                event.actor_id,
                json.dumps(event.metadata, default=str),
                event.event_timestamp,
            )
        return event.model_copy(update={"sequence": sequence})

    async def list_events(
        self,
        instance_id: str,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> list[HistoryEvent]:
        async with self._connection() as conn:
            if event_types is None:
                rows = await conn.fetch(
                    "SELECT * FROM history_events WHERE instance_id = $1 ORDER BY sequence",
                    instance_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM history_events
                    WHERE instance_id = $1 AND event_type = ANY($2::text[])
                    ORDER BY sequence
                    """,
                    instance_id,
                    [e.value for e in event_types],
                )
        return [self._record_to_event(r) for r in rows]
