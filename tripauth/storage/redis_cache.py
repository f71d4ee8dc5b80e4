from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from tripauth.service.clock import Clock, utc_now
from tripauth.storage.counters import CounterEntry
from tripauth.storage.models import SessionRecord
from tripauth.storage.sessions import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_SESSIONS,
    SessionStoreBase,
)

# Atomic INCR with an expiry applied only when the key is created
_INCREMENT_WITH_EXPIRY_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

_CHECK_COUNTER_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return {0, -2}
end
return {tonumber(value), redis.call('TTL', KEYS[1])}
"""

# Compare-and-swap on the session list version key
_SESSION_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[2]) or '0'
if current ~= ARGV[1] then
  return 0
end
if ARGV[2] == '' then
  redis.call('DEL', KEYS[1])
else
  redis.call('SET', KEYS[1], ARGV[2])
  if tonumber(ARGV[3]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
  end
end
redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[4])
return 1
"""


class RedisCache:
    """Thin async Redis wrapper shared by the lockout counter and session store."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()


class _SyncClientAdapter:
    """Wraps a sync Redis client with the async method signatures used here."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def mget(self, *keys: str) -> List[Optional[str]]:
        return self._sync.mget(keys)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        return self._sync.eval(script, numkeys, *keys_and_args)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable ``client`` surface as
    ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self.client.close()


AnyRedisCache = Union[RedisCache, SyncRedisCache]


class RedisKeyedCounter:
    """Cluster-wide keyed counter; every process sees the same counts and TTLs."""

    clustered = True

    def __init__(self, cache: AnyRedisCache, *, prefix: str = "counter") -> None:
        self.cache = cache
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def check(self, key: str) -> Optional[CounterEntry]:
        count, ttl = await self.cache.client.eval(
            _CHECK_COUNTER_SCRIPT, 1, self._key(key)
        )
        if int(count) <= 0 or int(ttl) == -2:
            return None
        return CounterEntry(count=int(count), ttl_seconds=max(1, int(ttl)))

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> CounterEntry:
        count, ttl = await self.cache.client.eval(
            _INCREMENT_WITH_EXPIRY_SCRIPT, 1, self._key(key), max(1, int(ttl_seconds))
        )
        return CounterEntry(count=int(count), ttl_seconds=max(1, int(ttl)))

    async def reset(self, *keys: str) -> None:
        if keys:
            await self.cache.client.delete(*(self._key(k) for k in keys))


class RedisSessionStore(SessionStoreBase):
    """Session lists stored as JSON under ``auth:sessions:{identity}``.

    A sibling ``...:v`` key holds the list version used for compare-and-swap.
    """

    # The version key outlives the data so a recreated list never reuses a version
    VERSION_TTL_SECONDS = 60 * 60 * 24 * 60

    def __init__(
        self,
        cache: AnyRedisCache,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Clock = utc_now,
        max_retries: int = DEFAULT_MAX_RETRIES,
        prefix: str = "auth:sessions",
    ) -> None:
        super().__init__(max_sessions=max_sessions, clock=clock, max_retries=max_retries)
        self.cache = cache
        self.prefix = prefix

    def _keys(self, identity_id: str) -> Tuple[str, str]:
        data_key = f"{self.prefix}:{identity_id}"
        return data_key, f"{data_key}:v"

    async def _load(self, identity_id: str) -> Tuple[int, List[SessionRecord]]:
        data_key, version_key = self._keys(identity_id)
        raw, version = await self.cache.client.mget(data_key, version_key)
        records = [SessionRecord.from_dict(item) for item in json.loads(raw)] if raw else []
        return int(version or 0), records

    def _ttl_for(self, records: List[SessionRecord]) -> int:
        expiries = [r.expires_at for r in records if r.expires_at is not None]
        if not expiries or len(expiries) != len(records):
            return 0
        latest: datetime = max(expiries)
        return max(1, int((latest - self._clock()).total_seconds()))

    async def _commit(
        self, identity_id: str, expected_version: int, records: List[SessionRecord]
    ) -> bool:
        data_key, version_key = self._keys(identity_id)
        payload = json.dumps([r.to_dict() for r in records]) if records else ""
        committed = await self.cache.client.eval(
            _SESSION_CAS_SCRIPT,
            2,
            data_key,
            version_key,
            str(expected_version),
            payload,
            self._ttl_for(records),
            self.VERSION_TTL_SECONDS,
        )
        return bool(int(committed))
