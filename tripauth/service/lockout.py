"""Failed-login lockout keyed by (client IP, login name).

The identifier only bounds guessing from one network origin. Attempts spread
across many origins are covered on the account side by the identity's
``failed_login_attempts`` / ``lock_until`` fields, which ``AuthService`` keeps.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tripauth.logging import get_logger
from tripauth.storage.counters import KeyedCounter

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_SECONDS = 15 * 60


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    retry_after_seconds: int = 0
    attempts: int = 0


class LockoutGuard:
    def __init__(
        self,
        counter: KeyedCounter,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        prefix: str = "lockout",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.counter = counter
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.prefix = prefix

    @staticmethod
    def identifier(ip: Optional[str], login_name: str) -> str:
        return f"{ip or 'unknown'}:{login_name.strip().lower()}"

    def _fail_key(self, identifier: str) -> str:
        return f"{self.prefix}:fail:{identifier}"

    def _lock_key(self, identifier: str) -> str:
        return f"{self.prefix}:lock:{identifier}"

    async def check(self, identifier: str) -> LockStatus:
        marker = await self.counter.check(self._lock_key(identifier))
        if marker is not None:
            return LockStatus(
                locked=True,
                retry_after_seconds=marker.ttl_seconds,
                attempts=self.max_attempts,
            )
        failures = await self.counter.check(self._fail_key(identifier))
        return LockStatus(locked=False, attempts=failures.count if failures else 0)

    async def record_failure(self, identifier: str) -> LockStatus:
        entry = await self.counter.increment_with_expiry(
            self._fail_key(identifier), self.window_seconds
        )
        if entry.count < self.max_attempts:
            return LockStatus(locked=False, attempts=entry.count)
        marker = await self.counter.increment_with_expiry(
            self._lock_key(identifier), self.window_seconds
        )
        logger.warning(
            "login_identifier_locked",
            identifier=identifier,
            attempts=entry.count,
            retry_after_seconds=marker.ttl_seconds,
        )
        return LockStatus(
            locked=True, retry_after_seconds=marker.ttl_seconds, attempts=entry.count
        )

    async def record_success(self, identifier: str) -> None:
        await self.counter.reset(self._fail_key(identifier), self._lock_key(identifier))

    async def attempts(self, identifier: str) -> int:
        entry = await self.counter.check(self._fail_key(identifier))
        return entry.count if entry else 0
