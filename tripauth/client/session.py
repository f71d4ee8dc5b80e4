"""Client-side session controller.

Keeps the access token in memory, refreshes it on a timer, expires the
session after a period without user activity, and propagates logout to
sibling tabs through a broadcast channel.

State machine::

    LOGGED_OUT --login/register--> AUTHENTICATING --ok--> AUTHENTICATED
    AUTHENTICATING --error--> LOGGED_OUT
    AUTHENTICATED --logout / peer logout / password reset--> LOGGED_OUT
    AUTHENTICATED --inactivity / refresh failure--> EXPIRED
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import httpx

from tripauth.client.api import ApiError, AuthApiClient
from tripauth.client.broadcast import BroadcastChannel
from tripauth.client.scheduler import LoopScheduler, Scheduler, TimerHandle
from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now

logger = get_logger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 14 * 60
DEFAULT_INACTIVITY_TIMEOUT_SECONDS = 30 * 60
SECURITY_EVENT_CAPACITY = 10
ACTIVITY_EVENTS = ("mousedown", "mousemove", "keypress", "scroll", "touchstart")
LOGOUT_MESSAGE = "logout"

_CLIENT_ERRORS = (ApiError, httpx.HTTPError)


class SessionState(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SecurityEvent:
    type: str
    status: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


class EventTarget:
    """Minimal DOM-style event target for user activity events."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[str], None]]] = {}

    def add_listener(self, event: str, callback: Callable[[str], None]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[[str], None]) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def dispatch(self, event: str) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(event)


StateListener = Callable[[SessionState], None]


class ClientSessionController:
    def __init__(
        self,
        api: AuthApiClient,
        *,
        scheduler: Optional[Scheduler] = None,
        activity: Optional[EventTarget] = None,
        broadcast: Optional[BroadcastChannel] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self.api = api
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self.activity = activity or EventTarget()
        self.broadcast = broadcast
        self.refresh_interval = refresh_interval
        self.inactivity_timeout = inactivity_timeout
        self._clock = clock

        self._state = SessionState.LOGGED_OUT
        self._access_token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None
        self._refresh_timer: Optional[TimerHandle] = None
        self._inactivity_timer: Optional[TimerHandle] = None
        self._listeners_attached = False
        # Bumped on every login and logout; stale async results compare against it
        self._generation = 0
        self._subscribers: List[StateListener] = []
        self._events: Deque[SecurityEvent] = deque(maxlen=SECURITY_EVENT_CAPACITY)
        self._tasks: Set[asyncio.Task] = set()

        if self.broadcast is not None:
            self.broadcast.on_message = self._on_broadcast

    # -- observable state ----------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED

    @property
    def security_events(self) -> List[SecurityEvent]:
        return list(self._events)

    def subscribe(self, callback: StateListener) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        self._state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception as exc:
                logger.error("session_subscriber_failed", error=str(exc))

    def authorization_header(self) -> Dict[str, str]:
        if self._access_token and self._state == SessionState.AUTHENTICATED:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request through the API client with the current bearer token, if any."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self.authorization_header())
        return await self.api.http.request(method, path, headers=headers, **kwargs)

    # -- background tasks ----------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every refresh, logout and mirroring task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- security events -----------------------------------------------

    def _record_event(self, event_type: str, status: str, **context: Any) -> SecurityEvent:
        event = SecurityEvent(
            type=event_type, status=status, timestamp=self._clock(), context=context
        )
        self._events.append(event)
        try:
            self._spawn(self._mirror_event(event, self._access_token))
        except RuntimeError:
            logger.debug("security_event_not_mirrored", event_type=event_type)
        return event

    async def _mirror_event(self, event: SecurityEvent, access_token: Optional[str]) -> None:
        try:
            await self.api.report_security_event(event.to_payload(), access_token=access_token)
        except _CLIENT_ERRORS as exc:
            logger.warning(
                "security_event_mirror_failed",
                event_type=event.type,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- timers and activity -------------------------------------------

    def _cancel_timers(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
            self._inactivity_timer = None

    def _schedule_refresh(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
        self._refresh_timer = self.scheduler.call_later(
            self.refresh_interval, self._on_refresh_timer
        )

    def _schedule_inactivity(self) -> None:
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
        self._inactivity_timer = self.scheduler.call_later(
            self.inactivity_timeout, self._on_inactivity
        )

    def _attach_activity_listeners(self) -> None:
        if self._listeners_attached:
            return
        for event in ACTIVITY_EVENTS:
            self.activity.add_listener(event, self._on_activity)
        self._listeners_attached = True

    def _detach_activity_listeners(self) -> None:
        if not self._listeners_attached:
            return
        for event in ACTIVITY_EVENTS:
            self.activity.remove_listener(event, self._on_activity)
        self._listeners_attached = False

    def _on_activity(self, event: str) -> None:
        if self._state == SessionState.AUTHENTICATED:
            self._schedule_inactivity()

    def _on_refresh_timer(self) -> None:
        self._refresh_timer = None
        if self._state == SessionState.AUTHENTICATED:
            self._spawn(self.refresh())

    def _on_inactivity(self) -> None:
        self._inactivity_timer = None
        if self._state != SessionState.AUTHENTICATED:
            return
        logger.info("session_inactivity_timeout", timeout_seconds=self.inactivity_timeout)
        self._record_event("SESSION_TIMEOUT", "success", reason="inactivity")
        token = self._teardown(SessionState.EXPIRED)
        self._announce_logout("inactivity")
        if token:
            self._spawn(self._server_logout(token))

    # -- lifecycle -----------------------------------------------------

    def _establish(self, data: Dict[str, Any]) -> None:
        self._access_token = data["accessToken"]
        if data.get("user") is not None:
            self.user = data["user"]
        self._cancel_timers()
        self._schedule_refresh()
        self._schedule_inactivity()
        self._attach_activity_listeners()
        self._set_state(SessionState.AUTHENTICATED)

    def _teardown(self, final_state: SessionState) -> Optional[str]:
        """Drop local session state synchronously; returns the old access token."""
        self._generation += 1
        self._cancel_timers()
        self._detach_activity_listeners()
        token = self._access_token
        self._access_token = None
        self.user = None
        self._set_state(final_state)
        return token

    def _announce_logout(self, reason: str) -> None:
        if self.broadcast is None or self.broadcast.closed:
            return
        try:
            self.broadcast.post({"type": LOGOUT_MESSAGE, "reason": reason})
        except RuntimeError as exc:
            logger.warning("logout_broadcast_failed", error=str(exc))

    def _on_broadcast(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("type") != LOGOUT_MESSAGE:
            return
        if self._state in (SessionState.LOGGED_OUT, SessionState.EXPIRED):
            return
        logger.info("session_logout_from_peer", reason=message.get("reason"))
        self._teardown(SessionState.LOGGED_OUT)
        self._record_event("LOGOUT", "success", source="broadcast")

    async def _server_logout(self, access_token: str) -> None:
        try:
            await self.api.logout(access_token)
        except _CLIENT_ERRORS as exc:
            logger.warning("server_logout_failed", error_type=type(exc).__name__, error=str(exc))

    async def _authenticate(self, event_type: str, call) -> Dict[str, Any]:
        self._cancel_timers()
        self._generation += 1
        generation = self._generation
        self._set_state(SessionState.AUTHENTICATING)
        try:
            data = await call
        except _CLIENT_ERRORS as exc:
            if generation == self._generation:
                # A failed re-login ends the session it replaced
                token = self._teardown(SessionState.LOGGED_OUT)
                if token:
                    self._spawn(self._server_logout(token))
            self._record_event(
                event_type, "failed", error=getattr(exc, "code", type(exc).__name__)
            )
            raise
        if generation != self._generation:
            logger.info("auth_result_discarded", event_type=event_type)
            return data
        self._establish(data)
        self._record_event(event_type, "success")
        return data

    async def register(self, email: str, password: str, name: str, **profile: Any) -> Dict[str, Any]:
        return await self._authenticate(
            "REGISTER", self.api.register(email, password, name, **profile)
        )

    async def login(self, email: str, password: str, *, remember_me: bool = False) -> Dict[str, Any]:
        return await self._authenticate(
            "LOGIN", self.api.login(email, password, remember_me=remember_me)
        )

    async def restore(self) -> bool:
        """Resume a session from the refresh cookie (page reload)."""
        if not self.api.has_refresh_cookie:
            return False
        try:
            data = await self._authenticate("AUTH_INITIALIZED", self.api.refresh())
        except _CLIENT_ERRORS:
            return False
        if self._state != SessionState.AUTHENTICATED:
            return False
        try:
            profile = await self.api.me(data["accessToken"])
            self.user = profile.get("user")
        except _CLIENT_ERRORS as exc:
            logger.warning("session_profile_fetch_failed", error=str(exc))
        return True

    async def refresh(self) -> bool:
        """Refresh the access token; any failure forces logout without retry."""
        if self._state != SessionState.AUTHENTICATED:
            return False
        generation = self._generation
        try:
            data = await self.api.refresh()
        except _CLIENT_ERRORS as exc:
            if generation != self._generation:
                return False
            logger.warning(
                "token_refresh_failed", error_type=type(exc).__name__, error=str(exc)
            )
            self._record_event(
                "TOKEN_REFRESH", "failed", error=getattr(exc, "code", type(exc).__name__)
            )
            await self.logout(final_state=SessionState.EXPIRED, reason="refresh_failed")
            return False
        if generation != self._generation or self._state != SessionState.AUTHENTICATED:
            logger.info("token_refresh_result_discarded")
            return False
        self._access_token = data["accessToken"]
        self._schedule_refresh()
        self._record_event("TOKEN_REFRESH", "success")
        return True

    async def logout(
        self,
        *,
        final_state: SessionState = SessionState.LOGGED_OUT,
        reason: str = "user",
    ) -> None:
        token = self._teardown(final_state)
        self._announce_logout(reason)
        if token:
            await self._server_logout(token)
        self._record_event("LOGOUT", "success", reason=reason)

    async def logout_all(self) -> None:
        # Timers and listeners go before the await so nothing fires against
        # sessions the server is about to drop
        token = self._teardown(SessionState.LOGGED_OUT)
        self._announce_logout("logout_all")
        if token:
            try:
                await self.api.logout_all(token)
            except _CLIENT_ERRORS as exc:
                logger.warning("server_logout_all_failed", error=str(exc))
        self._record_event("LOGOUT", "success", reason="logout_all")

    async def change_password(self, current_password: str, new_password: str) -> None:
        if not self._access_token:
            raise RuntimeError("not authenticated")
        try:
            data = await self.api.change_password(
                self._access_token, current_password, new_password
            )
        except _CLIENT_ERRORS as exc:
            self._record_event(
                "PASSWORD_CHANGED", "failed", error=getattr(exc, "code", type(exc).__name__)
            )
            raise
        self._access_token = data["accessToken"]
        self._record_event("PASSWORD_CHANGED", "success")

    async def verify_email(self, token: str) -> Dict[str, Any]:
        try:
            data = await self.api.verify_email(token)
        except _CLIENT_ERRORS as exc:
            self._record_event(
                "EMAIL_VERIFIED", "failed", error=getattr(exc, "code", type(exc).__name__)
            )
            raise
        verified = data.get("user") or {}
        if self.user is not None and self.user.get("id") == verified.get("id"):
            self.user = verified
        self._record_event("EMAIL_VERIFIED", "success")
        return data

    async def resend_verification(self) -> None:
        if not self._access_token:
            raise RuntimeError("not authenticated")
        await self.api.resend_verification(self._access_token)
        self._record_event("VERIFICATION_SENT", "success")

    async def request_password_reset(self, email: str) -> None:
        await self.api.forgot_password(email)
        self._record_event("PASSWORD_RESET_REQUESTED", "info")

    async def reset_password(self, token: str, password: str) -> None:
        """Reset from an emailed link; the server signs out every session."""
        try:
            await self.api.reset_password(token, password)
        except _CLIENT_ERRORS as exc:
            self._record_event(
                "PASSWORD_RESET", "failed", error=getattr(exc, "code", type(exc).__name__)
            )
            raise
        if self._state != SessionState.LOGGED_OUT:
            self._teardown(SessionState.LOGGED_OUT)
            self._announce_logout("password_reset")
        self._record_event("PASSWORD_RESET", "success")
