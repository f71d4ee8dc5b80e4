"""Per-identity refresh-token session lists.

Each identity owns an ordered list of ``SessionRecord`` entries (oldest first).
Every mutation runs through ``SessionStoreBase._mutate``: load the list and its
version, compute the replacement, and commit only if the version has not moved.
A lost race is retried a bounded number of times.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now
from tripauth.storage.errors import SessionNotFound, SessionStoreConflict
from tripauth.storage.models import SessionRecord

logger = get_logger(__name__)

T = TypeVar("T")

# A change receives the current records and returns (new_records, result).
# Returning None for new_records means nothing needs to be written.
Change = Callable[[List[SessionRecord]], Tuple[Optional[List[SessionRecord]], T]]

DEFAULT_MAX_SESSIONS = 10
DEFAULT_MAX_RETRIES = 5


class SessionStoreBase:
    def __init__(
        self,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Clock = utc_now,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self.max_retries = max_retries
        self._clock = clock

    async def _load(self, identity_id: str) -> Tuple[int, List[SessionRecord]]:
        raise NotImplementedError

    async def _commit(
        self, identity_id: str, expected_version: int, records: List[SessionRecord]
    ) -> bool:
        raise NotImplementedError

    async def _mutate(self, identity_id: str, change: Change[T]) -> T:
        for attempt in range(1, self.max_retries + 1):
            version, records = await self._load(identity_id)
            updated, result = change(list(records))
            if updated is None:
                return result
            if await self._commit(identity_id, version, updated):
                return result
            logger.info(
                "session_store_conflict_retry",
                identity_id=identity_id,
                attempt=attempt,
            )
        raise SessionStoreConflict(identity_id, self.max_retries)

    def _prune(self, records: List[SessionRecord], now: datetime) -> List[SessionRecord]:
        return [r for r in records if not r.is_expired(now)]

    def _enforce_limit(
        self, identity_id: str, records: List[SessionRecord]
    ) -> List[SessionRecord]:
        overflow = len(records) - self.max_sessions
        if overflow <= 0:
            return records
        ordered = sorted(records, key=lambda r: r.issued_at)
        evicted = ordered[:overflow]
        evicted_hashes = {r.token_hash for r in evicted}
        logger.info(
            "session_evicted",
            identity_id=identity_id,
            evicted=len(evicted),
            max_sessions=self.max_sessions,
        )
        return [r for r in records if r.token_hash not in evicted_hashes]

    async def add_session(
        self,
        identity_id: str,
        token_hash: str,
        device: str,
        *,
        ip_addr: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            token_hash=token_hash,
            device=device,
            issued_at=now,
            last_used_at=now,
            ip_addr=ip_addr,
            expires_at=expires_at,
        )

        def change(records: List[SessionRecord]):
            kept = [r for r in self._prune(records, now) if r.token_hash != token_hash]
            kept.append(record)
            return self._enforce_limit(identity_id, kept), record

        return await self._mutate(identity_id, change)

    async def find_session(
        self, identity_id: str, token_hash: str
    ) -> Optional[SessionRecord]:
        now = self._clock()
        _, records = await self._load(identity_id)
        for record in records:
            if record.token_hash == token_hash and not record.is_expired(now):
                return record
        return None

    async def list_sessions(self, identity_id: str) -> List[SessionRecord]:
        now = self._clock()
        _, records = await self._load(identity_id)
        return self._prune(records, now)

    async def rotate_session(
        self,
        identity_id: str,
        old_hash: str,
        new_hash: str,
        device: str,
        *,
        ip_addr: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> SessionRecord:
        """Replace ``old_hash`` with ``new_hash`` in one atomic step.

        Raises:
            SessionNotFound: ``old_hash`` is not present (already rotated,
                logged out, or replayed).
        """
        now = self._clock()
        replacement = SessionRecord(
            token_hash=new_hash,
            device=device,
            issued_at=now,
            last_used_at=now,
            ip_addr=ip_addr,
            expires_at=expires_at,
        )

        def change(records: List[SessionRecord]):
            live = self._prune(records, now)
            if not any(r.token_hash == old_hash for r in live):
                raise SessionNotFound(identity_id, old_hash)
            kept = [r for r in live if r.token_hash not in (old_hash, new_hash)]
            kept.append(replacement)
            return self._enforce_limit(identity_id, kept), replacement

        return await self._mutate(identity_id, change)

    async def remove_session(self, identity_id: str, token_hash: str) -> bool:
        def change(records: List[SessionRecord]):
            kept = [r for r in records if r.token_hash != token_hash]
            if len(kept) == len(records):
                return None, False
            return kept, True

        return await self._mutate(identity_id, change)

    async def remove_all_sessions(self, identity_id: str) -> int:
        def change(records: List[SessionRecord]):
            if not records:
                return None, 0
            return [], len(records)

        return await self._mutate(identity_id, change)

    async def remove_other_sessions(self, identity_id: str, keep_hash: str) -> int:
        """Drop every session except ``keep_hash``; returns the number removed."""

        def change(records: List[SessionRecord]):
            kept = [r for r in records if r.token_hash == keep_hash]
            removed = len(records) - len(kept)
            if removed == 0:
                return None, 0
            return kept, removed

        return await self._mutate(identity_id, change)

    async def touch_session(self, identity_id: str, token_hash: str) -> bool:
        now = self._clock()

        def change(records: List[SessionRecord]):
            for record in records:
                if record.token_hash == token_hash:
                    record.last_used_at = now
                    return records, True
            return None, False

        return await self._mutate(identity_id, change)


class MemorySessionStore(SessionStoreBase):
    """Session lists held in process memory, guarded by a lock."""

    def __init__(
        self,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Clock = utc_now,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(max_sessions=max_sessions, clock=clock, max_retries=max_retries)
        self._sessions: Dict[str, List[SessionRecord]] = {}
        self._versions: Dict[str, int] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _copy(record: SessionRecord) -> SessionRecord:
        return SessionRecord(**vars(record))

    async def _load(self, identity_id: str) -> Tuple[int, List[SessionRecord]]:
        with self._lock:
            records = self._sessions.get(identity_id, [])
            return self._versions.get(identity_id, 0), [self._copy(r) for r in records]

    async def _commit(
        self, identity_id: str, expected_version: int, records: List[SessionRecord]
    ) -> bool:
        with self._lock:
            if self._versions.get(identity_id, 0) != expected_version:
                return False
            if records:
                self._sessions[identity_id] = [self._copy(r) for r in records]
            else:
                self._sessions.pop(identity_id, None)
            self._versions[identity_id] = expected_version + 1
            return True

    def version(self, identity_id: str) -> int:
        with self._lock:
            return self._versions.get(identity_id, 0)
