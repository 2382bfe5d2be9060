from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_LEASE_TTL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_GATEWAY_DEPTH,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RETENTION_HOURS,
    DEFAULT_SERVICE_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis work queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "trellis"


class QueueConfig(BaseModel):
    """Work queue settings.

    ``database`` keeps queue items in the same store as the workflow tables.
    When no backend is given it is inferred from ``database_url``.
    """

    backend: Optional[Literal["inmemory", "database", "redis"]] = None
    redis: RedisConfig = RedisConfig()


class WorkerConfig(BaseModel):
    """Retry and polling policy shared by all queue workers."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    lease_ttl: float = DEFAULT_LEASE_TTL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    service_timeout: float = DEFAULT_SERVICE_TIMEOUT
    retention_hours: int = DEFAULT_RETENTION_HOURS
    max_gateway_depth: int = DEFAULT_MAX_GATEWAY_DEPTH


class TrellisConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    queue: QueueConfig = QueueConfig()
    worker: WorkerConfig = WorkerConfig()


def load_config(path: Optional[str] = None) -> TrellisConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TRELLIS_CONFIG env
            variable or 'trellis.yaml' in the current directory.
    """

    config_path = path or os.getenv("TRELLIS_CONFIG", "trellis.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TrellisConfig(**data)
    else:
        config = TrellisConfig()

    env_db_url = os.getenv("TRELLIS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_queue = os.getenv("TRELLIS_QUEUE")
    if env_queue:
        config.queue.backend = env_queue.lower()
    return config
