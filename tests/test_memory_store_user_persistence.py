from datetime import datetime, timedelta, timezone

import pytest

from tripauth.storage.errors import ConstraintViolation
from tripauth.storage.memory import MemoryStore


def test_memory_store_persists_identity_and_credentials(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "persist@example.com",
        name="Persist",
        role="admin",
        subscription_tier="premium",
    )
    locked_until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    store.update_user(user.id, failed_login_attempts=5, lock_until=locked_until)
    store.save_password(user.id, "hash", "argon2id")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.role == "admin"
    assert reloaded_user.subscription_tier == "premium"
    assert reloaded_user.failed_login_attempts == 5
    assert reloaded_user.lock_until == locked_until
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_user_by_email("persist@example.com").id == user.id


def test_duplicate_email_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_update_user_rejects_email_taken_by_another(tmp_path):
    store = MemoryStore()
    store.create_user("a@example.com")
    other = store.create_user("b@example.com")

    with pytest.raises(ConstraintViolation):
        store.update_user(other.id, email="a@example.com")
    assert store.get_user(other.id).email == "b@example.com"


def test_update_user_rejects_unknown_fields():
    store = MemoryStore()
    user = store.create_user("a@example.com")
    with pytest.raises(ValueError):
        store.update_user(user.id, id="other")
    assert store.update_user("missing", name="x") is None


def test_lock_helpers():
    store = MemoryStore()
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    user = store.create_user("a@example.com", lock_until=now + timedelta(minutes=10))

    assert user.is_locked(now)
    assert user.lock_remaining_seconds(now) == 600
    assert not user.is_locked(now + timedelta(minutes=10))
    assert user.lock_remaining_seconds(now + timedelta(minutes=11)) == 0


def test_password_for_unknown_user_rejected():
    with pytest.raises(ConstraintViolation):
        MemoryStore().save_password("missing", "hash", "argon2id")


def test_lookup_by_link_token_hash():
    store = MemoryStore()
    store.create_user("a@example.com")
    user = store.create_user("b@example.com")
    store.update_user(user.id, password_reset_token_hash="f" * 64)

    assert store.get_user_by_token_hash("password_reset_token_hash", "f" * 64).id == user.id
    assert store.get_user_by_token_hash("email_verification_token_hash", "f" * 64) is None
    assert store.get_user_by_token_hash("password_reset_token_hash", "") is None
    with pytest.raises(ValueError):
        store.get_user_by_token_hash("email", "b@example.com")


def test_link_tokens_and_login_history_persist(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    history = [
        {"timestamp": "2026-03-01T12:00:00+00:00", "ip": "1.2.3.4", "device": "mobile", "success": True}
    ]
    store.update_user(
        user.id,
        email_verification_token_hash="a" * 64,
        email_verification_expires_at=expires,
        login_history=history,
    )

    reloaded = MemoryStore(fs_root=str(tmp_path)).get_user(user.id)

    assert reloaded.email_verification_token_hash == "a" * 64
    assert reloaded.email_verification_expires_at == expires
    assert reloaded.login_history == history
