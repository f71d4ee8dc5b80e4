from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tripauth.api.error_handling import _error_response
from tripauth.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginHistoryEntry,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    SecurityEventRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from tripauth.config import Settings
from tripauth.logging import get_logger
from tripauth.service.errors import AuthenticationError, RateLimitError
from tripauth.service.gateway import AuthContext
from tripauth.service.runtime import Runtime, check_rate_limit, get_runtime
from tripauth.service.tokens import hash_refresh_token
from tripauth.storage.models import SessionRecord, User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")

REFRESH_COOKIE = "refresh_token"


def _ok(model: BaseModel) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(mode="json", by_alias=True))


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise ``RateLimitError`` (429) once ``key`` exceeds ``limit`` in the window."""
    allowed, _, reset_seconds = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit, window_seconds=window_seconds)
        raise RateLimitError(retry_after_seconds=reset_seconds)


def _cookie_flags(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "strict" if settings.is_production else "lax",
        "path": "/",
    }


def _set_refresh_cookie(
    response: Response, settings: Settings, token: str, *, max_age: int
) -> None:
    response.set_cookie(REFRESH_COOKIE, token, max_age=max_age, **_cookie_flags(settings))


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(REFRESH_COOKIE, **_cookie_flags(settings))


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        subscription_tier=user.subscription_tier,
        is_email_verified=user.is_email_verified,
        is_active=user.is_active,
        created_at=user.created_at,
        last_activity_at=user.last_activity_at,
        phone=user.phone,
        date_of_birth=user.date_of_birth,
        preferences=user.preferences,
        marketing_opt_in=user.marketing_opt_in,
    )


def _session_to_response(record: SessionRecord, current_hash: Optional[str]) -> SessionResponse:
    return SessionResponse(
        device=record.device,
        ip_addr=record.ip_addr,
        issued_at=record.issued_at,
        last_used_at=record.last_used_at,
        expires_at=record.expires_at,
        current=record.token_hash == current_hash,
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.gateway.authenticate(authorization)


async def get_optional_auth_context(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return runtime.gateway.optional_authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a new account.

    Returns the user and an access token, and sets the refresh cookie.
    Rate limited per client IP.

    Raises:
        400: Invalid email, name or weak password
        409: Email already registered
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"auth:{ip}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        name=body.name,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        phone=body.phone,
        date_of_birth=body.date_of_birth,
        marketing_opt_in=body.marketing_opt_in,
    )
    _set_refresh_cookie(
        response,
        runtime.settings,
        result.tokens.refresh_token,
        max_age=result.tokens.refresh_expires_in,
    )
    return _ok(
        AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.tokens.access_token,
            expires_in=result.tokens.access_expires_in,
        )
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    ``rememberMe`` extends the refresh token and cookie lifetime.

    Raises:
        401: Invalid credentials
        423: Too many failed attempts; ``retryAfterSeconds`` in details
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"auth:{ip}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        remember_me=body.remember_me,
    )
    _set_refresh_cookie(
        response,
        runtime.settings,
        result.tokens.refresh_token,
        max_age=result.tokens.refresh_expires_in,
    )
    return _ok(
        AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.tokens.access_token,
            expires_in=result.tokens.access_expires_in,
        )
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange the refresh cookie for a new access token.

    The cookie is replaced when the rotation policy rotates, and cleared on
    any failure.
    """
    runtime = get_runtime()
    try:
        result = await runtime.auth.refresh(
            refresh_token,
            ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except AuthenticationError as exc:
        logger.info("refresh_rejected", reason=exc.kind.value)
        failure = _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
        _clear_refresh_cookie(failure, runtime.settings)
        return failure
    if result.refresh_token:
        _set_refresh_cookie(
            response,
            runtime.settings,
            result.refresh_token,
            max_age=result.refresh_expires_in or runtime.issuer.refresh_expires_in,
        )
    return _ok(TokenResponse(access_token=result.access_token, expires_in=result.expires_in))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: AuthContext = Depends(get_auth_context),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal, refresh_token)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok(MessageResponse(message="logged out"))


@router.post("/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_auth_context),
):
    """Revoke every refresh session of the caller (all devices)."""
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(principal)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok(MessageResponse(message="logged out from all devices", sessions_removed=removed))


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_auth_context),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Change the caller's password.

    Access tokens issued before the change stop working and every other
    session is revoked. A fresh access token is returned.

    Raises:
        400: New password too weak
        401: Current password incorrect
        429: Too many password changes
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change-password:{principal.user_id}",
        runtime.settings.strict_rate_limit,
        runtime.settings.strict_rate_window_seconds,
    )
    access_token, expires_in = await runtime.auth.change_password(
        principal,
        current_password=body.current_password,
        new_password=body.new_password,
        raw_refresh_token=refresh_token,
        ip=_client_ip(request),
    )
    return _ok(TokenResponse(access_token=access_token, expires_in=expires_in))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    principal: AuthContext = Depends(get_auth_context),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    runtime.gateway.check_permission(principal, "user.profile.read")
    user, sessions = await runtime.auth.get_profile(principal.user_id)
    current_hash = hash_refresh_token(refresh_token) if refresh_token else None
    return _ok(
        MeResponse(
            user=_user_to_response(user),
            sessions=[_session_to_response(s, current_hash) for s in sessions],
            login_history=[LoginHistoryEntry(**entry) for entry in user.login_history],
        )
    )


@router.get("/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request,
    token: str = Path(..., min_length=16, max_length=128, pattern="^[0-9a-f]+$"),
):
    """Confirm the account's email address from the emailed link.

    Raises:
        400: Link invalid, expired or already used
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-email:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    user = runtime.auth.verify_email(token)
    return _ok(ProfileResponse(user=_user_to_response(user)))


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    runtime.gateway.check_account_status(principal)
    await _enforce_rate_limit(
        runtime,
        f"resend-verification:{principal.user_id}",
        runtime.settings.strict_rate_limit,
        runtime.settings.strict_rate_window_seconds,
    )
    runtime.auth.resend_verification(principal)
    return _ok(MessageResponse(message="verification email sent"))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Send a password reset link.

    The response is the same whether or not the address is registered.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"forgot-password:{ip}",
        runtime.settings.strict_rate_limit,
        runtime.settings.strict_rate_window_seconds,
    )
    runtime.auth.request_password_reset(body.email, ip=ip)
    return _ok(
        MessageResponse(message="if that account exists, a reset link has been sent")
    )


@router.post("/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetRequest,
    request: Request,
    response: Response,
    token: str = Path(..., min_length=16, max_length=128, pattern="^[0-9a-f]+$"),
):
    """Set a new password from a reset link.

    Every session is revoked and the refresh cookie cleared; the user signs
    in again with the new password.

    Raises:
        400: Link invalid or expired, or new password too weak
        429: Rate limit exceeded
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"reset-password:{ip}",
        runtime.settings.strict_rate_limit,
        runtime.settings.strict_rate_window_seconds,
    )
    removed = await runtime.auth.reset_password(token, body.password, ip=ip)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok(MessageResponse(message="password has been reset", sessions_removed=removed))


@router.put("/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    """Update profile fields; an email change must not collide (409)."""
    runtime = get_runtime()
    runtime.gateway.check_account_status(principal)
    runtime.gateway.check_permission(principal, "user.profile.update")
    user = runtime.auth.update_profile(
        principal, **body.model_dump(exclude_unset=True)
    )
    return _ok(ProfileResponse(user=_user_to_response(user)))


@router.post("/security-events", status_code=202, tags=["auth"])
async def report_security_event(
    body: SecurityEventRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(get_optional_auth_context),
):
    """Best-effort audit sink for security events recorded by clients."""
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(runtime, f"security-events:{ip}", 60, 60)
    runtime.auth.record_security_event(
        body.type,
        body.status,
        context=body.context,
        user_id=principal.user_id if principal else None,
        ip=ip,
    )
    return JSONResponse(status_code=202, content=Envelope(status="ok").model_dump())
