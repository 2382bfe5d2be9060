"""Work queue factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TrellisConfig, load_config
from ..persistence import resolve_database_url
from .base import BaseWorkQueue
from .inmemory import InMemoryWorkQueue


def _default_backend(config: TrellisConfig) -> str:
    if resolve_database_url(config=config):
        return "database"
    return "inmemory"


def get_work_queue(
    backend: Optional[str] = None, config: Optional[TrellisConfig] = None
) -> BaseWorkQueue:
    """Factory function to get the configured work queue.

    ``database`` places the queue in the store named by the database URL,
    so SQLite and PostgreSQL deployments need nothing else.
    """

    config = config or load_config()
    backend = (
        backend
        or os.getenv("TRELLIS_QUEUE")
        or config.queue.backend
        or _default_backend(config)
    ).lower()

    if backend == "inmemory":
        return InMemoryWorkQueue()
    elif backend == "database":
        database_url = resolve_database_url(config=config)
        if not database_url:
            raise ValueError("The database queue backend requires a database URL")
        if database_url.startswith("sqlite://"):
            from .sqlite import SQLiteWorkQueue

            return SQLiteWorkQueue(database_url.replace("sqlite://", "", 1))
        if database_url.startswith(("postgres://", "postgresql://")):
            from .postgres import PostgresWorkQueue

            return PostgresWorkQueue(database_url)
        raise ValueError(f"Unsupported database backend: {database_url}")
    elif backend == "redis":
        from .redis import RedisWorkQueue

        redis_conf = config.queue.redis
        return RedisWorkQueue(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseWorkQueue", "InMemoryWorkQueue", "get_work_queue"]
