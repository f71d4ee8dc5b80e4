from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now
from tripauth.service.errors import (
    AuthenticationError,
    AuthFailure,
    ConflictError,
    LockedError,
    NotFoundError,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from tripauth.service.gateway import AuthContext
from tripauth.service.lockout import LockoutGuard
from tripauth.service.notifier import Notifier
from tripauth.service.rotation import RotationContext, RotationPolicy, always_rotate
from tripauth.service.tokens import (
    OneTimeToken,
    TokenIssuer,
    TokenPair,
    TokenVerifier,
    describe_device,
    hash_refresh_token,
    hash_token,
)
from tripauth.storage.errors import ConstraintViolation, SessionNotFound
from tripauth.storage.memory import MemoryStore
from tripauth.storage.models import SessionRecord, User
from tripauth.storage.sessions import SessionStoreBase

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
PROFILE_FIELDS = ("name", "phone", "date_of_birth", "preferences", "marketing_opt_in")
DEFAULT_LOGIN_HISTORY_LIMIT = 20


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session: SessionRecord


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None

    @property
    def rotated(self) -> bool:
        return self.refresh_token is not None


class AuthService:
    """Credential checks, token issuance and refresh-session lifecycle."""

    def __init__(
        self,
        store: MemoryStore,
        sessions: SessionStoreBase,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        lockout: LockoutGuard,
        *,
        rotation: Optional[RotationPolicy] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
        login_history_limit: int = DEFAULT_LOGIN_HISTORY_LIMIT,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.issuer = issuer
        self.verifier = verifier
        self.lockout = lockout
        self.rotation = rotation or always_rotate()
        self.notifier = notifier or Notifier()
        self.login_history_limit = login_history_limit
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords -----------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- sessions ------------------------------------------------------

    async def _open_session(
        self,
        user: User,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        remember_me: bool = False,
    ) -> AuthResult:
        tokens = self.issuer.generate_token_pair(user, remember_me=remember_me)
        now = self._clock()
        session = await self.sessions.add_session(
            user.id,
            hash_refresh_token(tokens.refresh_token),
            describe_device(user_agent),
            ip_addr=ip,
            expires_at=now + timedelta(seconds=tokens.refresh_expires_in),
        )
        return AuthResult(user=user, tokens=tokens, session=session)

    # -- lockout -------------------------------------------------------

    def _account_failure(self, user: User) -> None:
        """Count a bad password against the account and lock it at the threshold."""
        now = self._clock()
        attempts = user.failed_login_attempts + 1
        if user.lock_until is not None and user.lock_until <= now:
            # Previous lock has lapsed; start a new window
            attempts = 1
        changes: dict[str, Any] = {"failed_login_attempts": attempts, "lock_until": None}
        if attempts >= self.lockout.max_attempts:
            changes["lock_until"] = now + timedelta(seconds=self.lockout.window_seconds)
            self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
            self.notifier.notify_security_alert(
                user.email,
                "account_locked",
                "Your account was locked after repeated failed sign-in attempts.",
            )
        self.store.update_user(user.id, **changes)

    def _account_success(self, user: User) -> None:
        self.store.update_user(
            user.id,
            failed_login_attempts=0,
            lock_until=None,
            last_activity_at=self._clock(),
        )

    def _record_login(
        self, user: User, *, ip: Optional[str], user_agent: Optional[str], success: bool
    ) -> None:
        if self.login_history_limit <= 0:
            return
        entry = {
            "timestamp": self._clock().isoformat(),
            "ip": ip,
            "device": describe_device(user_agent),
            "success": success,
        }
        history = [*(user.login_history or []), entry][-self.login_history_limit :]
        self.store.update_user(user.id, login_history=history)

    # -- one-time link tokens ------------------------------------------

    def _issue_email_verification(self, user: User) -> OneTimeToken:
        token = self.issuer.issue_one_time_token(self.issuer.verification_expires_in)
        self.store.update_user(
            user.id,
            email_verification_token_hash=token.token_hash,
            email_verification_expires_at=token.expires_at,
        )
        self.notifier.notify_email_verification(
            user.email,
            user.name,
            token.raw,
            expires_hours=max(1, self.issuer.verification_expires_in // 3600),
        )
        return token

    def _redeem(self, field_name: str, raw_token: Optional[str]) -> Optional[User]:
        """Identity holding the unexpired one-time token, or None."""
        if not raw_token:
            return None
        user = self.store.get_user_by_token_hash(field_name, hash_token(raw_token))
        if user is None or not user.is_active:
            return None
        expires_at = getattr(user, field_name.replace("_token_hash", "_expires_at"))
        if expires_at is None or expires_at <= self._clock():
            return None
        return user

    # -- operations ----------------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        name: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        phone: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        marketing_opt_in: bool = False,
    ) -> AuthResult:
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            self.logger.warning("register_email_exists", ip=ip)
            raise ConflictError("a user with this email already exists")
        try:
            user = self.store.create_user(
                email,
                name=name.strip(),
                phone=phone.strip() if phone else None,
                date_of_birth=date_of_birth,
                marketing_opt_in=marketing_opt_in,
                last_activity_at=self._clock(),
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        result = await self._open_session(user, ip=ip, user_agent=user_agent)
        self._record_login(user, ip=ip, user_agent=user_agent, success=True)
        self.logger.info(
            "user_registered", user_id=user.id, ip=ip, device=result.session.device
        )
        self.notifier.notify_welcome(user.email, user.name)
        self._issue_email_verification(user)
        return result

    async def login(
        self,
        *,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> AuthResult:
        """Check credentials and open a new refresh session.

        The lockout guard is consulted before the password, so a locked
        identifier gets 423 whatever the credentials.
        """
        email = email.strip().lower()
        identifier = self.lockout.identifier(ip, email)
        status = await self.lockout.check(identifier)
        if status.locked:
            self.logger.warning(
                "login_while_locked", ip=ip, retry_after_seconds=status.retry_after_seconds
            )
            raise LockedError(
                "too many failed login attempts",
                retry_after_seconds=status.retry_after_seconds,
            )

        user = self.store.get_user_by_email(email)
        if user is not None and user.is_active:
            now = self._clock()
            if user.is_locked(now):
                self.logger.warning("login_account_locked", user_id=user.id, ip=ip)
                raise LockedError(
                    "account temporarily locked",
                    retry_after_seconds=user.lock_remaining_seconds(now),
                )

        if user is None or not user.is_active or not self.verify_password(user.id, password):
            status = await self.lockout.record_failure(identifier)
            if user is not None and user.is_active:
                self._account_failure(user)
                self._record_login(user, ip=ip, user_agent=user_agent, success=False)
            self.logger.warning(
                "login_failed",
                ip=ip,
                user_exists=user is not None,
                attempts=status.attempts,
            )
            raise AuthenticationError(
                "invalid email or password", kind=AuthFailure.INVALID_CREDENTIALS
            )

        await self.lockout.record_success(identifier)
        self._account_success(user)
        self._record_login(user, ip=ip, user_agent=user_agent, success=True)
        result = await self._open_session(
            user, ip=ip, user_agent=user_agent, remember_me=remember_me
        )
        self.logger.info(
            "user_logged_in",
            user_id=user.id,
            ip=ip,
            device=result.session.device,
            remember_me=remember_me,
        )
        return result

    async def refresh(
        self,
        raw_refresh_token: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResult:
        if not raw_refresh_token:
            raise AuthenticationError("refresh token not found", kind=AuthFailure.NO_TOKEN)
        try:
            claims = self.verifier.verify_refresh_token(raw_refresh_token)
        except TokenExpired as exc:
            raise AuthenticationError(
                "refresh token expired", kind=AuthFailure.EXPIRED
            ) from exc
        except TokenInvalid as exc:
            raise AuthenticationError(
                "invalid refresh token", kind=AuthFailure.MALFORMED
            ) from exc

        user = self.store.get_user(claims["sub"])
        if user is None or not user.is_active:
            raise AuthenticationError(
                "user no longer exists", kind=AuthFailure.IDENTITY_MISSING
            )

        old_hash = hash_refresh_token(raw_refresh_token)
        session = await self.sessions.find_session(user.id, old_hash)
        if session is None:
            self.logger.warning("refresh_session_not_found", user_id=user.id, ip=ip)
            raise AuthenticationError("refresh token revoked", kind=AuthFailure.REVOKED)

        await self.sessions.touch_session(user.id, old_hash)
        access_token = self.issuer.generate_access_token(user)
        result = RefreshResult(
            access_token=access_token, expires_in=self.issuer.access_expires_in
        )

        now = self._clock()
        if not self.rotation(RotationContext(identity_id=user.id, session=session, now=now)):
            return result

        # Carry the session's original lifetime (remember-me) over to the new token
        lifetime = self.issuer.refresh_expires_in
        if session.expires_at is not None:
            lifetime = max(1, int((session.expires_at - session.issued_at).total_seconds()))
        new_refresh = self.issuer.generate_refresh_token(user, lifetime)
        try:
            await self.sessions.rotate_session(
                user.id,
                old_hash,
                hash_refresh_token(new_refresh),
                describe_device(user_agent) if user_agent else session.device,
                ip_addr=ip or session.ip_addr,
                expires_at=now + timedelta(seconds=lifetime),
            )
        except SessionNotFound as exc:
            # A concurrent refresh already consumed this token
            self.logger.warning("refresh_replay_suspected", user_id=user.id, ip=ip)
            raise AuthenticationError(
                "refresh token revoked", kind=AuthFailure.REVOKED
            ) from exc
        self.logger.info("refresh_token_rotated", user_id=user.id)
        result.refresh_token = new_refresh
        result.refresh_expires_in = lifetime
        return result

    async def logout(self, ctx: AuthContext, raw_refresh_token: Optional[str]) -> bool:
        removed = False
        if raw_refresh_token:
            removed = await self.sessions.remove_session(
                ctx.user_id, hash_refresh_token(raw_refresh_token)
            )
        self.logger.info("user_logged_out", user_id=ctx.user_id, session_removed=removed)
        return removed

    async def logout_all(self, ctx: AuthContext) -> int:
        removed = await self.sessions.remove_all_sessions(ctx.user_id)
        self.logger.info("user_logged_out_all", user_id=ctx.user_id, sessions=removed)
        return removed

    async def change_password(
        self,
        ctx: AuthContext,
        *,
        current_password: str,
        new_password: str,
        raw_refresh_token: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Tuple[str, int]:
        """Replace the password and invalidate tokens issued before the change.

        Sessions other than the caller's (identified by its refresh cookie)
        are removed. Returns a fresh ``(access_token, expires_in)``.
        """
        user = ctx.identity
        if not self.verify_password(user.id, current_password):
            self.logger.warning("change_password_wrong_current", user_id=user.id, ip=ip)
            raise AuthenticationError(
                "current password is incorrect", kind=AuthFailure.INVALID_CREDENTIALS
            )
        self.save_password(user.id, new_password)
        updated = self.store.update_user(user.id, password_changed_at=self._clock())
        if updated is None:
            raise NotFoundError("user not found")

        keep_hash = hash_refresh_token(raw_refresh_token) if raw_refresh_token else None
        if keep_hash and await self.sessions.find_session(user.id, keep_hash):
            removed = await self.sessions.remove_other_sessions(user.id, keep_hash)
        else:
            removed = await self.sessions.remove_all_sessions(user.id)
        self.logger.info(
            "password_changed", user_id=user.id, ip=ip, sessions_removed=removed
        )
        self.notifier.notify_security_alert(
            updated.email,
            "password_changed",
            "Your password was changed and other devices were signed out.",
        )
        return self.issuer.generate_access_token(updated), self.issuer.access_expires_in

    async def get_profile(self, user_id: str) -> Tuple[User, List[SessionRecord]]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user, await self.sessions.list_sessions(user_id)

    def update_profile(self, ctx: AuthContext, **changes: Any) -> User:
        """Apply profile edits; an email change is checked for conflicts."""
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
        new_email = changes.get("email")
        if new_email:
            new_email = new_email.strip().lower()
            if new_email != ctx.identity.email:
                existing = self.store.get_user_by_email(new_email)
                if existing is not None and existing.id != ctx.user_id:
                    raise ConflictError("email already in use", detail={"field": "email"})
                updates["email"] = new_email
                updates["is_email_verified"] = False
        if "name" in updates:
            updates["name"] = updates["name"].strip()
        if not updates:
            return ctx.identity
        try:
            user = self.store.update_user(ctx.user_id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if user is None:
            raise NotFoundError("user not found")
        if "email" in updates:
            self._issue_email_verification(user)
        self.logger.info(
            "profile_updated", user_id=user.id, updated_fields=sorted(updates)
        )
        return user

    def verify_email(self, raw_token: Optional[str]) -> User:
        """Mark the address verified; the link is single use."""
        user = self._redeem("email_verification_token_hash", raw_token)
        if user is None:
            self.logger.warning("email_verification_rejected")
            raise ValidationError(
                "invalid or expired verification link", detail={"reason": "invalid_token"}
            )
        updated = self.store.update_user(
            user.id,
            is_email_verified=True,
            email_verification_token_hash=None,
            email_verification_expires_at=None,
        )
        self.logger.info("email_verified", user_id=user.id)
        return updated

    def resend_verification(self, ctx: AuthContext) -> OneTimeToken:
        """Issue a fresh verification link; any earlier link stops working."""
        if ctx.identity.is_email_verified:
            raise ValidationError("email is already verified", detail={"reason": "already_verified"})
        token = self._issue_email_verification(ctx.identity)
        self.logger.info("email_verification_resent", user_id=ctx.user_id)
        return token

    def request_password_reset(self, email: str, *, ip: Optional[str] = None) -> Optional[OneTimeToken]:
        """Email a reset link when the account exists.

        Callers respond identically either way so the endpoint does not
        reveal which addresses are registered.
        """
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None or not user.is_active:
            self.logger.info("password_reset_unknown_account", ip=ip)
            return None
        token = self.issuer.issue_one_time_token(self.issuer.reset_expires_in)
        self.store.update_user(
            user.id,
            password_reset_token_hash=token.token_hash,
            password_reset_expires_at=token.expires_at,
        )
        self.notifier.notify_password_reset(
            user.email,
            user.name,
            token.raw,
            expires_minutes=max(1, self.issuer.reset_expires_in // 60),
        )
        self.logger.info("password_reset_requested", user_id=user.id, ip=ip)
        return token

    async def reset_password(
        self, raw_token: Optional[str], new_password: str, *, ip: Optional[str] = None
    ) -> int:
        """Set a new password from a reset link and sign out every session.

        Access tokens minted before the reset become stale, the account lock
        is cleared, and the address counts as verified since the link
        reached it. Returns the number of sessions removed.
        """
        user = self._redeem("password_reset_token_hash", raw_token)
        if user is None:
            self.logger.warning("password_reset_rejected", ip=ip)
            raise ValidationError(
                "invalid or expired reset link", detail={"reason": "invalid_token"}
            )
        self.save_password(user.id, new_password)
        self.store.update_user(
            user.id,
            password_changed_at=self._clock(),
            password_reset_token_hash=None,
            password_reset_expires_at=None,
            failed_login_attempts=0,
            lock_until=None,
            is_email_verified=True,
        )
        removed = await self.sessions.remove_all_sessions(user.id)
        self.logger.info("password_reset", user_id=user.id, ip=ip, sessions_removed=removed)
        self.notifier.notify_security_alert(
            user.email,
            "password_reset",
            "Your password was reset and every device was signed out.",
        )
        return removed

    def record_security_event(
        self,
        event_type: str,
        status: str,
        *,
        context: Optional[dict] = None,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        log_fn = self.logger.warning if status != "success" else self.logger.info
        log_fn(
            "client_security_event",
            event_type=event_type,
            event_status=status,
            user_id=user_id,
            ip=ip,
            context=context or {},
        )
