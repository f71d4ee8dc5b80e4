from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from tripauth.config import Settings
from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now
from tripauth.service.errors import ConfigurationError, TokenExpired, TokenInvalid
from tripauth.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
DEFAULT_EXPIRY_SECONDS = 900

_EXPIRY_PATTERN = re.compile(r"^(\d+)([smhd])$")
_EXPIRY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expiry(value: str | int | None, default: int = DEFAULT_EXPIRY_SECONDS) -> int:
    """Convert ``"15m"``-style durations (or plain seconds) to seconds."""
    if isinstance(value, int):
        return value if value > 0 else default
    if not value:
        return default
    text = value.strip().lower()
    if text.isdigit():
        return int(text) or default
    match = _EXPIRY_PATTERN.match(text)
    if not match:
        return default
    return int(match.group(1)) * _EXPIRY_UNITS[match.group(2)]


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest; only digests of refresh and link tokens are stored."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def hash_refresh_token(raw_token: str) -> str:
    return hash_token(raw_token)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def describe_device(user_agent: Optional[str]) -> str:
    """Coarse device label from a User-Agent string (mobile, tablet or desktop)."""
    ua = (user_agent or "").lower()
    if not ua:
        return "unknown"
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


@dataclass(frozen=True)
class OneTimeToken:
    """Opaque single-use token for email verification and password reset links."""

    raw: str
    token_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


class TokenIssuer:
    """Mints HS256 access and refresh tokens with separate signing secrets."""

    def __init__(self, settings: Settings, *, clock: Clock = utc_now) -> None:
        if not settings.jwt_access_secret or not settings.jwt_refresh_secret:
            raise ConfigurationError(
                "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set"
            )
        if settings.jwt_access_secret == settings.jwt_refresh_secret:
            raise ConfigurationError("access and refresh tokens need distinct secrets")
        self._access_secret = settings.jwt_access_secret
        self._refresh_secret = settings.jwt_refresh_secret
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_expires_in = parse_expiry(settings.access_token_expiry)
        self.refresh_expires_in = parse_expiry(settings.refresh_token_expiry)
        self.remember_me_expires_in = int(
            timedelta(days=settings.remember_me_days).total_seconds()
        )
        self.verification_expires_in = parse_expiry(settings.email_verification_expiry, 24 * 3600)
        self.reset_expires_in = parse_expiry(settings.password_reset_expiry, 3600)
        self._clock = clock

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def _base_claims(self, token_type: str, subject: str, expires_in: int) -> dict[str, Any]:
        # Sub-second NumericDate so a password change in the same second still
        # invalidates tokens minted before it
        issued_at = self._clock().timestamp()
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": token_type,
            "iat": issued_at,
            "exp": issued_at + expires_in,
        }

    def generate_access_token(self, identity: User) -> str:
        payload = self._base_claims(ACCESS_TOKEN_TYPE, identity.id, self.access_expires_in)
        payload.update(
            {
                "email": identity.email,
                "role": identity.role,
                "email_verified": identity.is_email_verified,
            }
        )
        return self._encode(payload, self._access_secret)

    def generate_refresh_token(self, identity: User, expires_in: Optional[int] = None) -> str:
        payload = self._base_claims(
            REFRESH_TOKEN_TYPE, identity.id, expires_in or self.refresh_expires_in
        )
        payload["jti"] = secrets.token_hex(16)
        return self._encode(payload, self._refresh_secret)

    def refresh_lifetime(self, *, remember_me: bool = False) -> int:
        return self.remember_me_expires_in if remember_me else self.refresh_expires_in

    def generate_token_pair(self, identity: User, *, remember_me: bool = False) -> TokenPair:
        refresh_expires_in = self.refresh_lifetime(remember_me=remember_me)
        return TokenPair(
            access_token=self.generate_access_token(identity),
            refresh_token=self.generate_refresh_token(identity, refresh_expires_in),
            access_expires_in=self.access_expires_in,
            refresh_expires_in=refresh_expires_in,
        )

    def issue_one_time_token(self, expires_in: int) -> OneTimeToken:
        raw = secrets.token_hex(32)
        return OneTimeToken(
            raw=raw,
            token_hash=hash_token(raw),
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )


class TokenVerifier:
    """Validates tokens minted by ``TokenIssuer`` and returns their claims."""

    def __init__(self, settings: Settings, *, clock: Clock = utc_now) -> None:
        if not settings.jwt_access_secret or not settings.jwt_refresh_secret:
            raise ConfigurationError(
                "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set"
            )
        self._secrets = {
            ACCESS_TOKEN_TYPE: settings.jwt_access_secret,
            REFRESH_TOKEN_TYPE: settings.jwt_refresh_secret,
        }
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self._leeway = max(0, settings.clock_skew_seconds)
        self._clock = clock

    @staticmethod
    def is_valid_structure(token: Optional[str]) -> bool:
        if not token or not isinstance(token, str):
            return False
        parts = token.split(".")
        return len(parts) == 3 and all(parts)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._verify(token, ACCESS_TOKEN_TYPE)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        payload = self._verify(token, REFRESH_TOKEN_TYPE)
        if not payload.get("jti"):
            raise TokenInvalid("refresh token missing jti")
        return payload

    def _verify(self, token: str, token_type: str) -> dict[str, Any]:
        if not self.is_valid_structure(token):
            raise TokenInvalid("token is not a three-part JWT")
        header_b64, payload_b64, sig_b64 = token.split(".")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenInvalid("token header is not valid JSON") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=getattr(header, "get", lambda _: None)("alg"))
            raise TokenInvalid("unsupported token algorithm")

        expected_sig = _sign(self._secrets[token_type], f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenInvalid("token payload must be an object")

        if payload.get("iss") != self.issuer:
            raise TokenInvalid("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("unexpected token audience")
        if payload.get("token_type") != token_type:
            raise TokenInvalid(f"expected a {token_type} token")
        if not payload.get("sub"):
            raise TokenInvalid("token has no subject")

        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("token has malformed timestamps") from exc
        if exp_ts <= self._clock().timestamp() - self._leeway:
            raise TokenExpired("token expired")
        return payload
