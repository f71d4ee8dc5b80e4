from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "locked",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case is accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if len(cleaned) < 1:
        raise ValueError("name is required")
    if len(cleaned) > 50:
        raise ValueError("name must be at most 50 characters")
    return cleaned


_SPECIAL_CHARS = "@$!%*?&"


def _validate_password_strength(value: str, *, min_length: int = 6, require_special: bool = False) -> str:
    """Require upper, lower and digit (and a special character when asked)."""
    if len(value) < min_length:
        raise ValueError(f"password must be at least {min_length} characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a digit")
    if require_special and not any(c in _SPECIAL_CHARS for c in value):
        raise ValueError(f"password must contain one of {_SPECIAL_CHARS}")
    return value


class RegisterRequest(CamelModel):
    email: str
    password: str
    name: str
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    marketing_opt_in: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordChangeRequest(CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value, min_length=8, require_special=True)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(CamelModel):
    """New password submitted with a reset link; same rules as a password change."""

    password: str

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_password_strength(value, min_length=8, require_special=True)


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    preferences: Optional[Dict[str, Any]] = None
    marketing_opt_in: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class SecurityEventRequest(CamelModel):
    type: str = Field(..., min_length=1, max_length=64)
    status: Literal["success", "failed", "info"] = "info"
    timestamp: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class UserResponse(CamelModel):
    id: str
    email: str
    name: str
    role: str
    subscription_tier: str
    is_email_verified: bool
    is_active: bool = True
    created_at: datetime
    last_activity_at: Optional[datetime] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    preferences: Optional[dict] = None
    marketing_opt_in: bool = False


class SessionResponse(CamelModel):
    device: str
    ip_addr: Optional[str] = None
    issued_at: datetime
    last_used_at: datetime
    expires_at: Optional[datetime] = None
    current: bool = False


class AuthResponse(CamelModel):
    user: UserResponse
    access_token: str
    expires_in: int


class TokenResponse(CamelModel):
    access_token: str
    expires_in: int


class LoginHistoryEntry(CamelModel):
    timestamp: datetime
    ip: Optional[str] = None
    device: str = "unknown"
    success: bool


class MeResponse(CamelModel):
    user: UserResponse
    sessions: List[SessionResponse]
    login_history: List[LoginHistoryEntry] = Field(default_factory=list)


class ProfileResponse(CamelModel):
    user: UserResponse


class MessageResponse(CamelModel):
    message: str
    sessions_removed: Optional[int] = None
