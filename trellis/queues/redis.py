"""Redis-backed work queue for cross-process workers."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..persistence.models import (
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    new_id,
    utcnow,
)
from .base import LEASE_EXPIRED, BaseWorkQueue

# KEYS: pending zset, running zset
# ARGV: now, cutoff, worker_id, prefix, lease-expired message
_CLAIM_SCRIPT = """
local pending, running = KEYS[1], KEYS[2]
local now, cutoff = ARGV[1], ARGV[2]
local worker, prefix, expired = ARGV[3], ARGV[4], ARGV[5]

local function advancing(instance_id, id)
  local holder = redis.call('GET', prefix .. ':advancing:' .. instance_id)
  if not holder or holder == id then return false end
  local score = redis.call('ZSCORE', running, holder)
  return score and tonumber(score) > tonumber(cutoff)
end

local function take(id, reclaim)
  local key = prefix .. ':item:' .. id
  local kind = redis.call('HGET', key, 'kind')
  if not kind then
    redis.call('ZREM', pending, id)
    redis.call('ZREM', running, id)
    return false
  end
  if kind == 'ADVANCE_INSTANCE' then
    local instance_id = redis.call('HGET', key, 'instance_id') or ''
    if advancing(instance_id, id) then return false end
    redis.call('SET', prefix .. ':advancing:' .. instance_id, id)
  end
  redis.call('ZREM', pending, id)
  redis.call('ZADD', running, now, id)
  if reclaim then
    redis.call('HINCRBY', key, 'attempt_count', 1)
    redis.call('HSET', key, 'last_error', expired)
  end
  redis.call('HSET', key, 'status', 'RUNNING', 'claimed_by', worker,
             'claimed_at', now, 'updated_at', now)
  return true
end

for _, id in ipairs(redis.call('ZRANGEBYSCORE', running, '-inf', cutoff)) do
  if take(id, true) then return id end
end
for _, id in ipairs(redis.call('ZRANGEBYSCORE', pending, '-inf', now)) do
  if take(id, false) then return id end
end
return false
"""

# KEYS: pending zset, running zset
# ARGV: id, worker_id, prefix, new status, now, [field, value, ...]
_RELEASE_SCRIPT = """
local id, worker, prefix, status, now = ARGV[1], ARGV[2], ARGV[3], ARGV[4], ARGV[5]
local key = prefix .. ':item:' .. id
if redis.call('HGET', key, 'status') ~= 'RUNNING' then return 0 end
if redis.call('HGET', key, 'claimed_by') ~= worker then return 0 end
redis.call('ZREM', KEYS[2], id)
local lock = prefix .. ':advancing:' .. (redis.call('HGET', key, 'instance_id') or '')
if redis.call('GET', lock) == id then redis.call('DEL', lock) end
redis.call('HSET', key, 'status', status, 'updated_at', now)
for i = 6, #ARGV, 2 do redis.call('HSET', key, ARGV[i], ARGV[i + 1]) end
if status == 'PENDING' then
  redis.call('HDEL', key, 'claimed_by', 'claimed_at')
  redis.call('ZADD', KEYS[1], redis.call('HGET', key, 'next_attempt_at'), id)
end
return 1
"""


def _from_epoch(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisWorkQueue(BaseWorkQueue):
    """Queue items stored as Redis hashes indexed by two sorted sets.

    ``pending`` is scored by ``next_attempt_at`` and ``running`` by
    ``claimed_at``. Claims and releases run as Lua scripts so each one is a
    single atomic step on the server.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "trellis",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisWorkQueue")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None
        self._claim_script = None
        self._release_script = None

    @property
    def _pending_key(self) -> str:
        return f"{self.prefix}:pending"

    @property
    def _running_key(self) -> str:
        return f"{self.prefix}:running"

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}:items"

    def _item_key(self, item_id: str) -> str:
        return f"{self.prefix}:item:{item_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        self._claim_script = self._redis.register_script(_CLAIM_SCRIPT)
        self._release_script = self._redis.register_script(_RELEASE_SCRIPT)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _hash_to_item(self, data: Dict[str, str]) -> QueueItem:
        return QueueItem(
            id=data["id"],
            kind=QueueItemKind(data["kind"]),
            payload=json.loads(data["payload"]),
            status=QueueItemStatus(data["status"]),
            attempt_count=int(data.get("attempt_count", 0)),
            next_attempt_at=_from_epoch(data["next_attempt_at"]),
            claimed_by=data.get("claimed_by") or None,
            claimed_at=_from_epoch(data.get("claimed_at")),
            last_error=data.get("last_error") or None,
            created_at=_from_epoch(data["created_at"]),
            updated_at=_from_epoch(data["updated_at"]),
        )

    async def enqueue(
        self,
        kind: QueueItemKind,
        payload: Dict[str, Any],
        *,
        dedupe: bool = False,
    ) -> QueueItem:
        client = await self._client()
        instance_id = payload.get("instance_id") or ""
        fresh_key = f"{self.prefix}:fresh:{kind.value}:{instance_id}"
        if dedupe:
            existing_id = await client.get(fresh_key)
            if existing_id:
                existing = await self.get(existing_id)
                if (
                    existing is not None
                    and existing.status == QueueItemStatus.PENDING
                    and existing.attempt_count == 0
                ):
                    return existing

        item_id = new_id()
        now = repr(utcnow().timestamp())
        mapping = {
            "id": item_id,
            "kind": kind.value,
            "instance_id": instance_id,
            "payload": json.dumps(payload),
            "status": QueueItemStatus.PENDING.value,
            "attempt_count": 0,
            "next_attempt_at": now,
            "created_at": now,
            "updated_at": now,
        }
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self._item_key(item_id), mapping=mapping)
            pipe.sadd(self._index_key, item_id)
            pipe.zadd(self._pending_key, {item_id: float(now)})
            if dedupe:
                pipe.set(fresh_key, item_id)
            await pipe.execute()
        return await self.get(item_id)

    async def claim(
        self, worker_id: str, *, now: datetime, lease_ttl: float
    ) -> Optional[QueueItem]:
        await self._client()
        cutoff = now - timedelta(seconds=lease_ttl)
        item_id = await self._claim_script(
            keys=[self._pending_key, self._running_key],
            args=[
                repr(now.timestamp()),
                repr(cutoff.timestamp()),
                worker_id,
                self.prefix,
                LEASE_EXPIRED,
            ],
        )
        if not item_id:
            return None
        return await self.get(item_id)

    async def _release(
        self, item_id: str, worker_id: str, status: QueueItemStatus, *fields: Any
    ) -> bool:
        await self._client()
        result = await self._release_script(
            keys=[self._pending_key, self._running_key],
            args=[
                item_id,
                worker_id,
                self.prefix,
                status.value,
                repr(utcnow().timestamp()),
                *fields,
            ],
        )
        return bool(result)

    async def mark_succeeded(self, item_id: str, worker_id: str) -> bool:
        return await self._release(item_id, worker_id, QueueItemStatus.SUCCEEDED)

    async def reschedule(
        self,
        item_id: str,
        worker_id: str,
        *,
        attempt_count: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        return await self._release(
            item_id,
            worker_id,
            QueueItemStatus.PENDING,
            "attempt_count",
            attempt_count,
            "next_attempt_at",
            repr(next_attempt_at.timestamp()),
            "last_error",
            error,
        )

    async def mark_failed(
        self, item_id: str, worker_id: str, *, attempt_count: int, error: str
    ) -> bool:
        return await self._release(
            item_id,
            worker_id,
            QueueItemStatus.FAILED,
            "attempt_count",
            attempt_count,
            "last_error",
            error,
        )

    async def get(self, item_id: str) -> Optional[QueueItem]:
        client = await self._client()
        data = await client.hgetall(self._item_key(item_id))
        return self._hash_to_item(data) if data else None

    async def list_items(
        self,
        status: Optional[QueueItemStatus] = None,
        kind: Optional[QueueItemKind] = None,
    ) -> list[QueueItem]:
        client = await self._client()
        items = []
        for item_id in await client.smembers(self._index_key):
            item = await self.get(item_id)
            if item is None:
                continue
            if status is not None and item.status != status:
                continue
            if kind is not None and item.kind != kind:
                continue
            items.append(item)
        return sorted(items, key=lambda i: i.created_at)

    async def delete(self, item_ids: Iterable[str]) -> int:
        client = await self._client()
        removed = 0
        for item_id in item_ids:
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(self._item_key(item_id))
                pipe.srem(self._index_key, item_id)
                pipe.zrem(self._pending_key, item_id)
                pipe.zrem(self._running_key, item_id)
                deleted, *_ = await pipe.execute()
            removed += deleted
        return removed
