"""Unit tests for AuthService against in-memory backends and a manual clock."""

from datetime import timedelta

import pytest

from tripauth.config import Settings
from tripauth.service.auth import AuthService
from tripauth.service.errors import (
    AuthenticationError,
    AuthFailure,
    ConflictError,
    LockedError,
    ValidationError,
)
from tripauth.service.gateway import AuthGateway
from tripauth.service.lockout import LockoutGuard
from tripauth.service.notifier import Notifier
from tripauth.service.rotation import always_rotate, never_rotate
from tripauth.service.tokens import TokenIssuer, TokenVerifier, hash_refresh_token, hash_token
from tripauth.storage.counters import MemoryKeyedCounter
from tripauth.storage.memory import MemoryStore
from tripauth.storage.sessions import MemorySessionStore

EMAIL = "a@x.com"
PASSWORD = "Passw0rd1"
NEW_PASSWORD = "N3w-passw0rd!"


class RecordingNotifier(Notifier):
    """Keeps link emails in memory instead of sending them."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def notify_email_verification(self, to_email, name, token, *, expires_hours=24):
        self.sent.append(("verify", to_email, token))

    def notify_password_reset(self, to_email, name, token, *, expires_minutes=60):
        self.sent.append(("reset", to_email, token))

    def notify_security_alert(self, to_email, event, detail=""):
        self.sent.append(("alert", to_email, event))

    def last(self, kind):
        return next(token for k, _, token in reversed(self.sent) if k == kind)


class Harness:
    def __init__(self, clock, *, rotation=None, max_sessions=10):
        settings = Settings(jwt_access_secret="svc-access", jwt_refresh_secret="svc-refresh")
        self.clock = clock
        self.store = MemoryStore(clock=clock)
        self.sessions = MemorySessionStore(max_sessions=max_sessions, clock=clock)
        self.issuer = TokenIssuer(settings, clock=clock)
        self.verifier = TokenVerifier(settings, clock=clock)
        self.lockout = LockoutGuard(MemoryKeyedCounter(clock=clock))
        self.notifier = RecordingNotifier()
        self.gateway = AuthGateway(self.store, self.verifier, clock=clock)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.issuer,
            self.verifier,
            self.lockout,
            rotation=rotation or always_rotate(),
            notifier=self.notifier,
            clock=clock,
        )

    def context(self, access_token):
        return self.gateway.authenticate(f"Bearer {access_token}")


@pytest.fixture
def harness(clock):
    return Harness(clock)


async def register(harness, email=EMAIL, password=PASSWORD, **kwargs):
    return await harness.auth.register(
        email=email, password=password, name="Ann", ip="1.2.3.4", **kwargs
    )


class TestRegister:
    async def test_register_creates_user_and_session(self, harness):
        result = await register(harness, user_agent="Mozilla/5.0 (iPhone) Mobile")

        assert result.user.email == EMAIL
        assert result.user.role == "user"
        assert result.session.device == "mobile"
        assert result.session.token_hash == hash_refresh_token(result.tokens.refresh_token)
        assert harness.store.get_password_record(result.user.id)[1] == "argon2id"

    async def test_email_is_normalized(self, harness):
        result = await register(harness, email="  A@X.COM ")
        assert result.user.email == EMAIL

    async def test_duplicate_email_conflicts(self, harness):
        await register(harness)
        with pytest.raises(ConflictError) as excinfo:
            await register(harness, email="A@x.com")
        assert excinfo.value.status_code == 409

    async def test_password_is_not_stored_in_plaintext(self, harness):
        result = await register(harness)
        stored_hash, _ = harness.store.get_password_record(result.user.id)
        assert PASSWORD not in stored_hash


class TestLogin:
    async def test_login_opens_new_session(self, harness):
        await register(harness)
        result = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")

        sessions = await harness.sessions.list_sessions(result.user.id)
        assert len(sessions) == 2
        assert result.tokens.refresh_expires_in == 7 * 24 * 3600

    async def test_remember_me_extends_session(self, harness, clock):
        await register(harness)
        result = await harness.auth.login(
            email=EMAIL, password=PASSWORD, ip="1.2.3.4", remember_me=True
        )
        assert result.session.expires_at == clock() + timedelta(days=30)

    async def test_wrong_password(self, harness):
        await register(harness)
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.login(email=EMAIL, password="nope", ip="1.2.3.4")
        assert excinfo.value.kind == AuthFailure.INVALID_CREDENTIALS

    async def test_unknown_email_looks_like_wrong_password(self, harness):
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.login(email="ghost@x.com", password=PASSWORD, ip="1.2.3.4")
        assert excinfo.value.kind == AuthFailure.INVALID_CREDENTIALS
        assert excinfo.value.message == "invalid email or password"

    async def test_sixth_attempt_locked_even_with_right_password(self, harness, clock):
        """Five failures lock the identifier; the correct password gets 423."""
        await register(harness)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await harness.auth.login(email=EMAIL, password="wrong", ip="1.2.3.4")

        with pytest.raises(LockedError) as excinfo:
            await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        assert excinfo.value.retry_after_seconds > 0

        clock.advance(minutes=16)
        result = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        assert result.user.failed_login_attempts == 0
        assert result.user.lock_until is None

    async def test_account_lock_spans_origins(self, harness):
        """Failures from many IPs still lock the account itself."""
        await register(harness)
        for i in range(5):
            with pytest.raises(AuthenticationError):
                await harness.auth.login(email=EMAIL, password="wrong", ip=f"10.0.0.{i}")

        with pytest.raises(LockedError):
            await harness.auth.login(email=EMAIL, password=PASSWORD, ip="10.0.0.99")

    async def test_success_resets_failure_count(self, harness):
        await register(harness)
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                await harness.auth.login(email=EMAIL, password="wrong", ip="1.2.3.4")

        result = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        assert result.user.failed_login_attempts == 0
        assert await harness.lockout.attempts("1.2.3.4:a@x.com") == 0


class TestRefresh:
    async def test_rotation_retires_old_token(self, harness):
        registered = await register(harness)
        old = registered.tokens.refresh_token

        refreshed = await harness.auth.refresh(old, ip="1.2.3.4")

        assert refreshed.rotated
        assert refreshed.refresh_token != old
        assert refreshed.expires_in == 900
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.refresh(old, ip="1.2.3.4")
        assert excinfo.value.kind == AuthFailure.REVOKED

    async def test_rotation_keeps_remember_me_lifetime(self, harness):
        await register(harness)
        login = await harness.auth.login(
            email=EMAIL, password=PASSWORD, ip="1.2.3.4", remember_me=True
        )

        refreshed = await harness.auth.refresh(login.tokens.refresh_token)
        assert refreshed.refresh_expires_in == 30 * 24 * 3600

    async def test_never_rotate_keeps_token_usable(self, clock):
        harness = Harness(clock, rotation=never_rotate())
        registered = await register(harness)
        token = registered.tokens.refresh_token

        first = await harness.auth.refresh(token)
        second = await harness.auth.refresh(token)

        assert not first.rotated and not second.rotated
        assert harness.verifier.verify_access_token(second.access_token)["sub"] == registered.user.id

    async def test_missing_token(self, harness):
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.refresh(None)
        assert excinfo.value.kind == AuthFailure.NO_TOKEN

    async def test_expired_refresh_token(self, harness, clock):
        registered = await register(harness)
        clock.advance(days=8)
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.refresh(registered.tokens.refresh_token)
        assert excinfo.value.kind == AuthFailure.EXPIRED

    async def test_access_token_cannot_refresh(self, harness):
        registered = await register(harness)
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.refresh(registered.tokens.access_token)
        assert excinfo.value.kind == AuthFailure.MALFORMED


class TestLogoutAndPasswordChange:
    async def test_logout_removes_only_current_session(self, harness):
        registered = await register(harness)
        other = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        ctx = harness.context(registered.tokens.access_token)

        assert await harness.auth.logout(ctx, registered.tokens.refresh_token) is True

        remaining = await harness.sessions.list_sessions(ctx.user_id)
        assert [s.token_hash for s in remaining] == [
            hash_refresh_token(other.tokens.refresh_token)
        ]

    async def test_logout_all(self, harness):
        registered = await register(harness)
        await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        ctx = harness.context(registered.tokens.access_token)

        assert await harness.auth.logout_all(ctx) == 2
        with pytest.raises(AuthenticationError):
            await harness.auth.refresh(registered.tokens.refresh_token)

    async def test_change_password_keeps_current_session(self, harness, clock):
        registered = await register(harness)
        other = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        ctx = harness.context(registered.tokens.access_token)
        clock.advance(seconds=1)

        token, expires_in = await harness.auth.change_password(
            ctx,
            current_password=PASSWORD,
            new_password="N3w-passw0rd!",
            raw_refresh_token=registered.tokens.refresh_token,
        )

        assert expires_in == 900
        assert harness.context(token).user_id == ctx.user_id
        with pytest.raises(AuthenticationError) as excinfo:
            harness.context(other.tokens.access_token)
        assert excinfo.value.kind == AuthFailure.STALE_PASSWORD
        with pytest.raises(AuthenticationError):
            await harness.auth.refresh(other.tokens.refresh_token)
        assert (await harness.auth.refresh(registered.tokens.refresh_token)).rotated
        await harness.auth.login(email=EMAIL, password="N3w-passw0rd!", ip="1.2.3.4")

    async def test_change_password_within_the_same_second(self, harness, clock):
        clock.advance(seconds=0.1)
        registered = await register(harness)
        ctx = harness.context(registered.tokens.access_token)
        clock.advance(seconds=0.8)

        token, _ = await harness.auth.change_password(
            ctx,
            current_password=PASSWORD,
            new_password="N3w-passw0rd!",
            raw_refresh_token=registered.tokens.refresh_token,
        )

        with pytest.raises(AuthenticationError) as excinfo:
            harness.context(registered.tokens.access_token)
        assert excinfo.value.kind == AuthFailure.STALE_PASSWORD
        assert harness.context(token).user_id == ctx.user_id

    async def test_change_password_wrong_current(self, harness):
        registered = await register(harness)
        ctx = harness.context(registered.tokens.access_token)

        with pytest.raises(AuthenticationError):
            await harness.auth.change_password(
                ctx, current_password="bad", new_password="N3w-passw0rd!"
            )


class TestProfile:
    async def test_update_profile_fields(self, harness):
        registered = await register(harness)
        ctx = harness.context(registered.tokens.access_token)

        user = harness.auth.update_profile(ctx, name="  Annie ", phone="555-0100", role="admin")

        assert user.name == "Annie"
        assert user.phone == "555-0100"
        assert user.role == "user"

    async def test_email_change_conflict(self, harness):
        await register(harness, email="b@x.com")
        registered = await register(harness)
        ctx = harness.context(registered.tokens.access_token)

        with pytest.raises(ConflictError):
            harness.auth.update_profile(ctx, email="B@x.com")

    async def test_email_change_resets_verification(self, harness):
        registered = await register(harness)
        harness.store.update_user(registered.user.id, is_email_verified=True)
        ctx = harness.context(registered.tokens.access_token)

        user = harness.auth.update_profile(ctx, email="new@x.com")

        assert user.email == "new@x.com"
        assert user.is_email_verified is False

    async def test_get_profile_lists_sessions(self, harness):
        registered = await register(harness)
        user, sessions = await harness.auth.get_profile(registered.user.id)
        assert user.id == registered.user.id
        assert len(sessions) == 1

    async def test_email_change_sends_new_verification_link(self, harness):
        registered = await register(harness)
        first_link = harness.notifier.last("verify")
        ctx = harness.context(registered.tokens.access_token)

        harness.auth.update_profile(ctx, email="new@x.com")

        assert harness.notifier.sent[-1][:2] == ("verify", "new@x.com")
        with pytest.raises(ValidationError):
            harness.auth.verify_email(first_link)
        assert harness.auth.verify_email(harness.notifier.last("verify")).email == "new@x.com"


class TestEmailVerification:
    async def test_register_sends_verification_link(self, harness, clock):
        registered = await register(harness)

        token = harness.notifier.last("verify")
        user = harness.store.get_user(registered.user.id)
        assert user.email_verification_token_hash == hash_token(token)
        assert user.email_verification_expires_at == clock() + timedelta(hours=24)
        assert user.is_email_verified is False

    async def test_verify_marks_address_verified(self, harness):
        registered = await register(harness)

        user = harness.auth.verify_email(harness.notifier.last("verify"))

        assert user.id == registered.user.id
        assert user.is_email_verified is True
        assert user.email_verification_token_hash is None
        login = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        assert harness.verifier.verify_access_token(login.tokens.access_token)["email_verified"] is True

    async def test_link_is_single_use(self, harness):
        await register(harness)
        token = harness.notifier.last("verify")
        harness.auth.verify_email(token)

        with pytest.raises(ValidationError) as excinfo:
            harness.auth.verify_email(token)
        assert excinfo.value.status_code == 400
        assert excinfo.value.detail == {"reason": "invalid_token"}

    async def test_expired_link_rejected(self, harness, clock):
        await register(harness)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(ValidationError):
            harness.auth.verify_email(harness.notifier.last("verify"))

    async def test_unknown_or_missing_token_rejected(self, harness):
        await register(harness)
        with pytest.raises(ValidationError):
            harness.auth.verify_email("0" * 64)
        with pytest.raises(ValidationError):
            harness.auth.verify_email(None)

    async def test_resend_replaces_previous_link(self, harness):
        registered = await register(harness)
        first = harness.notifier.last("verify")
        ctx = harness.context(registered.tokens.access_token)

        resent = harness.auth.resend_verification(ctx)

        assert resent.raw == harness.notifier.last("verify") != first
        with pytest.raises(ValidationError):
            harness.auth.verify_email(first)
        assert harness.auth.verify_email(resent.raw).is_email_verified

    async def test_resend_after_verification_rejected(self, harness):
        registered = await register(harness)
        harness.auth.verify_email(harness.notifier.last("verify"))
        ctx = harness.context(registered.tokens.access_token)

        with pytest.raises(ValidationError) as excinfo:
            harness.auth.resend_verification(ctx)
        assert excinfo.value.detail == {"reason": "already_verified"}


class TestPasswordReset:
    async def test_unknown_email_sends_nothing(self, harness):
        assert harness.auth.request_password_reset("ghost@x.com", ip="1.2.3.4") is None
        assert not [k for k, _, _ in harness.notifier.sent if k == "reset"]

    async def test_request_stores_only_the_hash(self, harness, clock):
        registered = await register(harness)

        issued = harness.auth.request_password_reset("  A@X.com ", ip="1.2.3.4")

        assert issued.raw == harness.notifier.last("reset")
        user = harness.store.get_user(registered.user.id)
        assert user.password_reset_token_hash == hash_token(issued.raw)
        assert user.password_reset_expires_at == clock() + timedelta(hours=1)

    async def test_reset_signs_out_everywhere(self, harness, clock):
        registered = await register(harness)
        other = await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        harness.auth.request_password_reset(EMAIL)
        clock.advance(seconds=0.5)

        removed = await harness.auth.reset_password(harness.notifier.last("reset"), NEW_PASSWORD)

        assert removed == 2
        assert await harness.sessions.list_sessions(registered.user.id) == []
        with pytest.raises(AuthenticationError) as excinfo:
            harness.context(other.tokens.access_token)
        assert excinfo.value.kind == AuthFailure.STALE_PASSWORD
        with pytest.raises(AuthenticationError) as excinfo:
            await harness.auth.refresh(registered.tokens.refresh_token)
        assert excinfo.value.kind == AuthFailure.REVOKED
        with pytest.raises(AuthenticationError):
            await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")
        await harness.auth.login(email=EMAIL, password=NEW_PASSWORD, ip="1.2.3.4")
        assert ("alert", EMAIL, "password_reset") in harness.notifier.sent

    async def test_reset_link_is_single_use(self, harness):
        await register(harness)
        harness.auth.request_password_reset(EMAIL)
        token = harness.notifier.last("reset")
        await harness.auth.reset_password(token, NEW_PASSWORD)

        with pytest.raises(ValidationError):
            await harness.auth.reset_password(token, "An0ther-pass!")
        await harness.auth.login(email=EMAIL, password=NEW_PASSWORD, ip="1.2.3.4")

    async def test_expired_reset_link_rejected(self, harness, clock):
        await register(harness)
        harness.auth.request_password_reset(EMAIL)
        clock.advance(minutes=61)

        with pytest.raises(ValidationError):
            await harness.auth.reset_password(harness.notifier.last("reset"), NEW_PASSWORD)
        await harness.auth.login(email=EMAIL, password=PASSWORD, ip="1.2.3.4")

    async def test_newer_request_supersedes_older_link(self, harness):
        await register(harness)
        harness.auth.request_password_reset(EMAIL)
        first = harness.notifier.last("reset")
        harness.auth.request_password_reset(EMAIL)

        with pytest.raises(ValidationError):
            await harness.auth.reset_password(first, NEW_PASSWORD)

    async def test_reset_clears_account_lock(self, harness):
        await register(harness)
        for i in range(5):
            with pytest.raises(AuthenticationError):
                await harness.auth.login(email=EMAIL, password="wrong", ip=f"10.0.0.{i}")
        with pytest.raises(LockedError):
            await harness.auth.login(email=EMAIL, password=PASSWORD, ip="10.0.0.99")

        harness.auth.request_password_reset(EMAIL)
        await harness.auth.reset_password(harness.notifier.last("reset"), NEW_PASSWORD)

        result = await harness.auth.login(email=EMAIL, password=NEW_PASSWORD, ip="10.0.0.99")
        assert result.user.lock_until is None
        assert result.user.failed_login_attempts == 0

    async def test_reset_marks_email_verified(self, harness):
        registered = await register(harness)
        harness.auth.request_password_reset(EMAIL)
        await harness.auth.reset_password(harness.notifier.last("reset"), NEW_PASSWORD)

        assert harness.store.get_user(registered.user.id).is_email_verified is True


class TestLoginHistory:
    async def test_attempts_are_recorded(self, harness, clock):
        await register(harness)
        clock.advance(minutes=1)
        with pytest.raises(AuthenticationError):
            await harness.auth.login(email=EMAIL, password="wrong", ip="5.6.7.8")
        await harness.auth.login(
            email=EMAIL,
            password=PASSWORD,
            ip="9.9.9.9",
            user_agent="Mozilla/5.0 (iPhone) Mobile",
        )

        history = harness.store.get_user_by_email(EMAIL).login_history
        assert [entry["success"] for entry in history] == [True, False, True]
        assert [entry["ip"] for entry in history] == ["1.2.3.4", "5.6.7.8", "9.9.9.9"]
        assert history[-1]["device"] == "mobile"
        assert history[1]["timestamp"] == clock().isoformat()

    async def test_unknown_email_records_nothing(self, harness):
        await register(harness)
        with pytest.raises(AuthenticationError):
            await harness.auth.login(email="ghost@x.com", password=PASSWORD, ip="1.2.3.4")
        assert len(harness.store.get_user_by_email(EMAIL).login_history) == 1

    async def test_history_is_capped(self, harness):
        harness.auth.login_history_limit = 3
        await register(harness)
        for i in range(5):
            await harness.auth.login(email=EMAIL, password=PASSWORD, ip=f"10.0.0.{i}")

        history = harness.store.get_user_by_email(EMAIL).login_history
        assert [entry["ip"] for entry in history] == ["10.0.0.2", "10.0.0.3", "10.0.0.4"]
