from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from tripauth.logging import get_logger
from tripauth.service.clock import Clock, utc_now
from tripauth.storage.errors import ConstraintViolation
from tripauth.storage.models import User

_DATETIME_FIELDS = (
    "created_at",
    "password_changed_at",
    "lock_until",
    "last_activity_at",
    "email_verification_expires_at",
    "password_reset_expires_at",
)

# One-time link tokens a user can be looked up by
_TOKEN_HASH_FIELDS = frozenset({"email_verification_token_hash", "password_reset_token_hash"})

# Fields a caller may change through update_user
_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "name",
        "role",
        "subscription_tier",
        "is_active",
        "is_email_verified",
        "password_changed_at",
        "failed_login_attempts",
        "lock_until",
        "last_activity_at",
        "phone",
        "date_of_birth",
        "preferences",
        "marketing_opt_in",
        "email_verification_token_hash",
        "email_verification_expires_at",
        "password_reset_token_hash",
        "password_reset_expires_at",
        "login_history",
    }
)


class MemoryStore:
    """In-memory identity store, optionally persisted to a JSON state file."""

    def __init__(self, fs_root: str | None = None, *, clock: Clock = utc_now) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self._clock = clock
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def create_user(
        self,
        email: str,
        *,
        name: str = "",
        role: str = "user",
        subscription_tier: str = "free",
        is_active: bool = True,
        **profile: Any,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            unknown = set(profile) - _MUTABLE_FIELDS
            if unknown:
                raise ValueError(f"unsupported identity fields: {sorted(unknown)}")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                subscription_tier=subscription_tier,
                is_active=is_active,
                created_at=self._clock(),
                **profile,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_token_hash(self, field_name: str, token_hash: str) -> Optional[User]:
        if field_name not in _TOKEN_HASH_FIELDS:
            raise ValueError(f"not a token field: {field_name}")
        if not token_hash:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if getattr(u, field_name) == token_hash),
                None,
            )

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported identity fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = changes.get("email")
            if new_email and new_email != user.email:
                if any(
                    u.email == new_email for u in self.users.values() if u.id != user_id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    @staticmethod
    def _serialize_user(user: User) -> dict:
        data = asdict(user)
        for key in _DATETIME_FIELDS:
            if data.get(key) is not None:
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        payload = dict(data)
        for key in _DATETIME_FIELDS:
            if payload.get(key):
                payload[key] = datetime.fromisoformat(payload[key])
        return User(**payload)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("identity_state_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info("identity_state_loaded", users=len(self.users))
        return True
