from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from tripauth.service.clock import Clock, utc_now

DEFAULT_SWEEP_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class CounterEntry:
    count: int
    ttl_seconds: int


class KeyedCounter(Protocol):
    """Shared, TTL-capable keyed counter used for lockout and rate limiting."""

    async def check(self, key: str) -> Optional[CounterEntry]: ...

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> CounterEntry: ...

    async def reset(self, *keys: str) -> None: ...


class MemoryKeyedCounter:
    """Process-local counter.

    NON-CLUSTERED: state lives in this process only, so it is correct for a
    single-instance deployment. Multi-process deployments must use
    ``RedisKeyedCounter``.

    Expired keys are reclaimed by a sweep that runs from
    ``increment_with_expiry`` at most once per ``sweep_interval`` seconds,
    so keys that are never read again do not accumulate.
    """

    clustered = False

    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[int, datetime]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = timedelta(seconds=max(0.0, sweep_interval))
        self._next_sweep = clock() + self._sweep_interval

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live(self, key: str, now: datetime) -> Optional[tuple[int, datetime]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    @staticmethod
    def _ttl(expires_at: datetime, now: datetime) -> int:
        return max(1, math.ceil((expires_at - now).total_seconds()))

    def _sweep(self, now: datetime) -> int:
        # Caller holds self._lock
        stale = [key for key, (_, exp) in self._entries.items() if exp <= now]
        for key in stale:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        return len(stale)

    async def check(self, key: str) -> Optional[CounterEntry]:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                return None
            return CounterEntry(count=entry[0], ttl_seconds=self._ttl(entry[1], now))

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> CounterEntry:
        """Increment ``key``; the expiry is set only when the key is created."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 1, now + timedelta(seconds=ttl_seconds)
            else:
                count, expires_at = entry[0] + 1, entry[1]
            self._entries[key] = (count, expires_at)
            return CounterEntry(count=count, ttl_seconds=self._ttl(expires_at, now))

    async def reset(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired key now; returns how many were removed."""
        now = self._clock()
        with self._lock:
            return self._sweep(now)
