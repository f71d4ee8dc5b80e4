from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SessionNotFound(Exception):
    """Rotation target is not in the identity's session list (possible replay)."""

    def __init__(self, identity_id: str, token_hash: str):
        super().__init__(f"session not found for identity {identity_id}")
        self.identity_id = identity_id
        self.token_hash = token_hash


class SessionStoreConflict(Exception):
    """Optimistic update kept losing to concurrent writers."""

    def __init__(self, identity_id: str, attempts: int):
        super().__init__(
            f"session list for identity {identity_id} changed concurrently {attempts} times"
        )
        self.identity_id = identity_id
        self.attempts = attempts


__all__ = ["ConstraintViolation", "SessionNotFound", "SessionStoreConflict"]
