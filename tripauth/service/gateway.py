"""Per-request authentication state machine and authorization checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now
from tripauth.service.errors import (
    AuthenticationError,
    AuthFailure,
    AuthorizationError,
    LockedError,
    TokenExpired,
    TokenInvalid,
)
from tripauth.service.tokens import TokenVerifier, extract_bearer
from tripauth.storage.memory import MemoryStore
from tripauth.storage.models import User

logger = get_logger(__name__)

ROLES = ("user", "admin", "superadmin")
SUBSCRIPTION_TIERS = ("free", "premium", "enterprise")


class GatewayState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_EXTRACTED = "token_extracted"
    TOKEN_VERIFIED = "token_verified"
    IDENTITY_LOADED = "identity_loaded"
    AUTHORIZED = "authorized"


@dataclass(frozen=True)
class Permission:
    roles: FrozenSet[str]
    tiers: FrozenSet[str] = frozenset()


def _perm(roles: Iterable[str], tiers: Iterable[str] = ()) -> Permission:
    return Permission(roles=frozenset(roles), tiers=frozenset(tiers))


_EVERYONE = ("user", "admin", "superadmin")
_STAFF = ("admin", "superadmin")
_PAID = ("premium", "enterprise")

# ai.* permissions are granted by role or by subscription tier
PERMISSIONS: Dict[str, Permission] = {
    "admin.users.read": _perm(_STAFF),
    "admin.users.write": _perm(("superadmin",)),
    "admin.system.manage": _perm(("superadmin",)),
    "user.profile.read": _perm(_EVERYONE),
    "user.profile.update": _perm(_EVERYONE),
    "user.sessions.manage": _perm(_EVERYONE),
    "ai.itinerary.generate": _perm(_STAFF, _PAID),
    "ai.chat.use": _perm(_STAFF, _PAID),
    "ai.recommendations.view": _perm(_STAFF, _PAID),
}


RevocationHook = Callable[[str], bool]


def _never_revoked(token: str) -> bool:
    return False


@dataclass
class AuthContext:
    identity: User
    claims: Dict[str, Any] = field(default_factory=dict)
    state: GatewayState = GatewayState.AUTHORIZED

    @property
    def user_id(self) -> str:
        return self.identity.id

    @property
    def role(self) -> str:
        return self.identity.role


class AuthGateway:
    """Walks a bearer token through extraction, verification and identity checks.

    Every failure raises ``AuthenticationError`` tagged with an ``AuthFailure``
    kind, except an account lock which raises ``LockedError`` (423).
    """

    def __init__(
        self,
        store: MemoryStore,
        verifier: TokenVerifier,
        *,
        is_revoked: Optional[RevocationHook] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.is_revoked = is_revoked or _never_revoked
        self._clock = clock

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        state = GatewayState.UNAUTHENTICATED
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("authentication required", kind=AuthFailure.NO_TOKEN)
        state = GatewayState.TOKEN_EXTRACTED

        if not self.verifier.is_valid_structure(token):
            raise AuthenticationError("malformed token", kind=AuthFailure.MALFORMED)
        if self.is_revoked(token):
            logger.info("access_token_revoked")
            raise AuthenticationError("token revoked", kind=AuthFailure.REVOKED)

        try:
            claims = self.verifier.verify_access_token(token)
        except TokenExpired as exc:
            raise AuthenticationError("token expired", kind=AuthFailure.EXPIRED) from exc
        except TokenInvalid as exc:
            logger.info("access_token_invalid", error=str(exc))
            raise AuthenticationError("invalid token", kind=AuthFailure.MALFORMED) from exc
        state = GatewayState.TOKEN_VERIFIED

        identity = self.store.get_user(claims["sub"])
        if identity is None or not identity.is_active:
            raise AuthenticationError(
                "user no longer exists", kind=AuthFailure.IDENTITY_MISSING
            )
        state = GatewayState.IDENTITY_LOADED

        now = self._clock()
        if identity.is_locked(now):
            raise LockedError(
                "account temporarily locked",
                retry_after_seconds=identity.lock_remaining_seconds(now),
            )
        if identity.changed_password_after(claims.get("iat")):
            raise AuthenticationError(
                "password changed, please log in again",
                kind=AuthFailure.STALE_PASSWORD,
            )

        self.store.update_user(identity.id, last_activity_at=now)
        state = GatewayState.AUTHORIZED
        return AuthContext(identity=identity, claims=claims, state=state)

    def optional_authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Like ``authenticate`` but returns ``None`` instead of raising."""
        if not authorization:
            return None
        try:
            return self.authenticate(authorization)
        except (AuthenticationError, LockedError):
            return None

    def authorize(self, ctx: AuthContext, roles: Iterable[str]) -> AuthContext:
        allowed = set(roles)
        if ctx.role not in allowed:
            logger.warning(
                "authorization_denied",
                user_id=ctx.user_id,
                role=ctx.role,
                required=sorted(allowed),
            )
            raise AuthorizationError(
                "insufficient role", detail={"required": sorted(allowed)}
            )
        return ctx

    def check_permission(self, ctx: AuthContext, name: str) -> AuthContext:
        permission = PERMISSIONS.get(name)
        if permission is None:
            logger.warning("unknown_permission", permission=name, user_id=ctx.user_id)
            raise AuthorizationError("unknown permission", detail={"permission": name})
        if ctx.role in permission.roles:
            return ctx
        if ctx.identity.subscription_tier in permission.tiers:
            return ctx
        logger.warning(
            "permission_denied",
            permission=name,
            user_id=ctx.user_id,
            role=ctx.role,
            tier=ctx.identity.subscription_tier,
        )
        raise AuthorizationError("permission denied", detail={"permission": name})

    def check_account_status(self, ctx: AuthContext) -> AuthContext:
        now = self._clock()
        if not ctx.identity.is_active:
            raise AuthorizationError("account is deactivated")
        if ctx.identity.is_locked(now):
            raise LockedError(
                "account temporarily locked",
                retry_after_seconds=ctx.identity.lock_remaining_seconds(now),
            )
        return ctx
