from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tripauth.config import Settings, get_settings, reset_settings_cache
from tripauth.logging import get_logger
from tripauth.service.auth import AuthService
from tripauth.service.clock import Clock, utc_now
from tripauth.service.gateway import AuthGateway
from tripauth.service.lockout import LockoutGuard
from tripauth.service.notifier import Notifier
from tripauth.service.rotation import build_rotation_policy
from tripauth.service.tokens import TokenIssuer, TokenVerifier
from tripauth.storage.counters import KeyedCounter, MemoryKeyedCounter
from tripauth.storage.memory import MemoryStore
from tripauth.storage.redis_cache import (
    RedisCache,
    RedisKeyedCounter,
    RedisSessionStore,
    SyncRedisCache,
)
from tripauth.storage.sessions import MemorySessionStore, SessionStoreBase

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds and holds the service graph for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self.clock: Clock = clock or utc_now
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(fs_root=self.settings.shared_fs_root, clock=self.clock)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.counter: KeyedCounter
        self.sessions: SessionStoreBase
        if self.cache is not None:
            self.counter = RedisKeyedCounter(self.cache)
            self.sessions = RedisSessionStore(
                self.cache,
                max_sessions=self.settings.max_sessions_per_identity,
                clock=self.clock,
            )
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, lockout and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
            self.counter = MemoryKeyedCounter(clock=self.clock)
            self.sessions = MemorySessionStore(
                max_sessions=self.settings.max_sessions_per_identity,
                clock=self.clock,
            )
            if not self.settings.test_mode:
                logger.warning(
                    "lockout_counter_non_clustered",
                    message=(
                        "Lockout and rate-limit counters are process-local; run a single "
                        "instance or configure REDIS_URL."
                    ),
                )

        self.issuer = TokenIssuer(self.settings, clock=self.clock)
        self.verifier = TokenVerifier(self.settings, clock=self.clock)
        self.lockout = LockoutGuard(
            self.counter,
            max_attempts=self.settings.lockout_max_attempts,
            window_seconds=self.settings.lockout_window_seconds,
        )
        self.rotation = build_rotation_policy(self.settings)
        self.gateway = AuthGateway(self.store, self.verifier, clock=self.clock)
        self.notifier = Notifier.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.issuer,
            self.verifier,
            self.lockout,
            rotation=self.rotation,
            notifier=self.notifier,
            clock=self.clock,
            login_history_limit=self.settings.login_history_limit,
        )

        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            redis_enabled=self.cache is not None,
            counter_clustered=getattr(self.counter, "clustered", False),
            rotation_policy=self.settings.rotation_policy.value,
            email_configured=self.notifier.is_configured,
        )

    async def close(self) -> None:
        await self.notifier.drain()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> Tuple[bool, int, int]:
    """Fixed-window limiter on the shared counter.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    entry = await runtime.counter.increment_with_expiry(f"ratelimit:{key}", window_seconds)
    allowed = entry.count <= limit
    return allowed, max(0, limit - entry.count), entry.ttl_seconds
