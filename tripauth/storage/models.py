from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from tripauth.service.clock import utc_now


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    role: str = "user"
    subscription_tier: str = "free"
    created_at: datetime = field(default_factory=utc_now)
    is_active: bool = True
    is_email_verified: bool = False
    password_changed_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    preferences: Dict | None = None
    marketing_opt_in: bool = False
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    # Most recent last; each entry holds timestamp (ISO), ip, device, success
    login_history: List[Dict] = field(default_factory=list)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def lock_remaining_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return max(1, int((self.lock_until - now).total_seconds()))

    def changed_password_after(self, issued_at: float | int | None) -> bool:
        """True when the password changed after a token with ``issued_at`` was minted.

        ``iat`` carries sub-second precision, so a token minted earlier in the
        same second as the change is stale too. A token minted at the change
        instant (the one handed back by the change itself) stays valid.
        """
        if self.password_changed_at is None:
            return False
        if issued_at is None:
            return True
        try:
            minted = float(issued_at)
        except (TypeError, ValueError):
            return True
        return minted < self.password_changed_at.timestamp()


@dataclass
class SessionRecord:
    token_hash: str
    device: str
    issued_at: datetime
    last_used_at: datetime
    ip_addr: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "token_hash": self.token_hash,
            "device": self.device,
            "issued_at": self.issued_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "ip_addr": self.ip_addr,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        expires_raw = data.get("expires_at")
        return cls(
            token_hash=data["token_hash"],
            device=data.get("device") or "unknown",
            issued_at=datetime.fromisoformat(data["issued_at"]),
            last_used_at=datetime.fromisoformat(data["last_used_at"]),
            ip_addr=data.get("ip_addr"),
            expires_at=datetime.fromisoformat(expires_raw) if expires_raw else None,
        )
