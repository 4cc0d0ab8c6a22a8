"""
tests/test_stores.py -- Unit tests for ExpiringStore, LoginAttemptTracker,
TokenBlacklist and UserStore.

Each test gets its own file-backed database under tmp_path, so nothing here
depends on the shared in-memory stores the API tests use.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from auth.attempts import LoginAttemptTracker
from auth.blacklist import TokenBlacklist
from auth.models import MfaConfig, MfaMethod, Role, User
from auth.store import UserStore
from cache.store import ExpiringStore


@pytest.fixture
def kv(tmp_path):
    store = ExpiringStore(tmp_path / "kv.db")
    yield store
    store.close()


@pytest.fixture
def users(tmp_path):
    store = UserStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# ExpiringStore
# ---------------------------------------------------------------------------


class TestExpiringStore:
    def test_set_get(self, kv: ExpiringStore) -> None:
        kv.set("k", "v", ttl=60)
        assert kv.get("k") == "v"
        assert kv.exists("k")
        assert 0 < kv.ttl("k") <= 60

    def test_expired_entry_is_absent(self, kv: ExpiringStore) -> None:
        kv.set("old", "v", ttl=-1)
        assert kv.get("old") is None
        assert not kv.exists("old")
        assert kv.ttl("missing") == 0.0

    def test_add_only_once(self, kv: ExpiringStore) -> None:
        assert kv.add("once", "1", ttl=60) is True
        assert kv.add("once", "2", ttl=60) is False
        assert kv.get("once") == "1"

    def test_add_replaces_expired(self, kv: ExpiringStore) -> None:
        kv.set("stale", "old", ttl=-1)
        assert kv.add("stale", "new", ttl=60) is True
        assert kv.get("stale") == "new"

    def test_delete_reports_live_entries_only(self, kv: ExpiringStore) -> None:
        kv.set("live", "v", ttl=60)
        kv.set("dead", "v", ttl=-1)
        assert kv.delete("live") is True
        assert kv.delete("live") is False
        assert kv.delete("dead") is False

    def test_incr_counts_from_one(self, kv: ExpiringStore) -> None:
        assert kv.incr("counter", ttl=60) == 1
        assert kv.incr("counter", ttl=60) == 2
        assert kv.incr("counter", ttl=60) == 3

    def test_incr_restarts_after_expiry(self, kv: ExpiringStore) -> None:
        kv.set("counter", "9", ttl=-1)
        assert kv.incr("counter", ttl=60) == 1

    def test_purge_expired(self, kv: ExpiringStore) -> None:
        kv.set("a", "1", ttl=-1)
        kv.set("b", "1", ttl=-1)
        kv.set("c", "1", ttl=60)
        assert kv.purge_expired() == 2
        assert kv.exists("c")


# ---------------------------------------------------------------------------
# LoginAttemptTracker
# ---------------------------------------------------------------------------


class TestLoginAttemptTracker:
    def test_locks_at_threshold(self, kv: ExpiringStore) -> None:
        tracker = LoginAttemptTracker(kv, max_attempts=3, window_minutes=15, lockout_base_minutes=5)
        tracker.record_failure("a@example.com")
        tracker.record_failure("a@example.com")
        assert not tracker.is_locked("a@example.com")
        assert tracker.remaining_attempts("a@example.com") == 1

        tracker.record_failure("a@example.com")
        assert tracker.is_locked("A@Example.com ")
        assert tracker.remaining_attempts("a@example.com") == 0
        assert tracker.remaining_lockout_minutes("a@example.com") == 5

    def test_lockout_grows_and_caps(self, kv: ExpiringStore) -> None:
        tracker = LoginAttemptTracker(kv, max_attempts=2, window_minutes=60, lockout_base_minutes=1)
        for _ in range(3):
            tracker.record_failure("b@example.com")
        assert tracker.remaining_lockout_minutes("b@example.com") == 2

        for _ in range(10):
            tracker.record_failure("b@example.com")
        assert tracker.remaining_lockout_minutes("b@example.com") == 6

    def test_clear(self, kv: ExpiringStore) -> None:
        tracker = LoginAttemptTracker(kv, max_attempts=1)
        tracker.record_failure("c@example.com")
        assert tracker.is_locked("c@example.com")
        tracker.clear("c@example.com")
        assert not tracker.is_locked("c@example.com")
        assert tracker.remaining_attempts("c@example.com") == 1


# ---------------------------------------------------------------------------
# TokenBlacklist
# ---------------------------------------------------------------------------


class TestTokenBlacklist:
    def test_revoke_and_check(self, kv: ExpiringStore) -> None:
        blacklist = TokenBlacklist(kv)
        assert not blacklist.is_revoked("jti-1")
        assert blacklist.revoke("jti-1", 60) is True
        assert blacklist.is_revoked("jti-1")

    def test_revoke_ignores_expired_tokens(self, kv: ExpiringStore) -> None:
        blacklist = TokenBlacklist(kv)
        assert blacklist.revoke("jti-2", 0) is False
        assert blacklist.revoke(None, 60) is False
        assert not blacklist.is_revoked("jti-2")
        assert not blacklist.is_revoked(None)

    def test_consume_first_caller_wins(self, kv: ExpiringStore) -> None:
        blacklist = TokenBlacklist(kv)
        assert blacklist.consume("jti-3", 60) is True
        assert blacklist.consume("jti-3", 60) is False
        assert blacklist.is_revoked("jti-3")


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


def _user(users: UserStore, email: str, role: Role = Role.VIEWER) -> int:
    return users.create_user(User(email=email, name="U", role=role, hashed_password="x"))


class TestUserStore:
    def test_email_is_stored_lowercase(self, users: UserStore) -> None:
        uid = _user(users, "Case@Example.com")
        assert users.get_by_email("case@example.com").id == uid
        assert users.email_exists(" CASE@example.COM ")

    def test_duplicate_email_raises(self, users: UserStore) -> None:
        _user(users, "dup@example.com")
        with pytest.raises(IntegrityError):
            _user(users, "DUP@example.com")

    def test_claim_refresh_token_once(self, users: UserStore) -> None:
        uid = _user(users, "claim@example.com")
        users.create_refresh_token(uid, "hash-1", datetime.now(timezone.utc) + timedelta(hours=1))
        assert users.get_refresh_token("hash-1").revoked_at is None
        assert users.claim_refresh_token("hash-1") is True
        assert users.claim_refresh_token("hash-1") is False
        record = users.get_refresh_token("hash-1")
        assert record.revoked
        assert datetime.fromisoformat(record.revoked_at) <= datetime.now(timezone.utc)

    def test_expired_refresh_token_cannot_be_claimed(self, users: UserStore) -> None:
        uid = _user(users, "expired@example.com")
        users.create_refresh_token(uid, "hash-2", datetime.now(timezone.utc) - timedelta(seconds=1))
        assert users.claim_refresh_token("hash-2") is False
        assert users.purge_expired_refresh_tokens() == 1
        assert users.get_refresh_token("hash-2") is None

    def test_new_refresh_token_supersedes_earlier_ones(self, users: UserStore) -> None:
        uid = _user(users, "all@example.com")
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        for n in range(3):
            users.create_refresh_token(uid, f"all-{n}", later)
        assert users.get_refresh_token("all-0").revoked
        assert users.get_refresh_token("all-1").revoked_at is not None
        assert not users.get_refresh_token("all-2").revoked

    def test_revoke_all_refresh_tokens(self, users: UserStore) -> None:
        uid = _user(users, "revoke-all@example.com")
        users.create_refresh_token(uid, "live", datetime.now(timezone.utc) + timedelta(hours=1))
        assert users.revoke_refresh_token("missing") is False
        assert users.revoke_all_refresh_tokens(uid) == 1
        assert users.revoke_all_refresh_tokens(uid) == 0
        assert users.get_refresh_token("live").revoked

    def test_count_active_admins(self, users: UserStore) -> None:
        first = _user(users, "admin1@example.com", Role.ADMIN)
        _user(users, "admin2@example.com", Role.ADMIN)
        _user(users, "viewer@example.com")
        assert users.count_active_admins() == 2
        users.update_user(first, is_active=False)
        assert users.count_active_admins() == 1

    def test_mfa_config_replace(self, users: UserStore) -> None:
        uid = _user(users, "mfa@example.com")
        users.save_mfa_config(MfaConfig(user_id=uid, method=MfaMethod.TOTP, secret_encrypted="a"))
        users.save_mfa_config(MfaConfig(user_id=uid, method=MfaMethod.TOTP, secret_encrypted="b"))
        configs = users.list_mfa_configs(uid)
        assert len(configs) == 1
        assert configs[0].secret_encrypted == "b"
        assert not configs[0].verified

        users.mark_mfa_verified(configs[0].id)
        assert users.get_mfa_config(uid, MfaMethod.TOTP).verified
        assert users.delete_mfa_configs(uid) == 1

    def test_pending_totp_secret_promotion(self, users: UserStore) -> None:
        uid = _user(users, "pending@example.com")
        config_id = users.save_mfa_config(
            MfaConfig(user_id=uid, method=MfaMethod.TOTP, secret_encrypted="old", verified=True)
        )
        assert users.promote_pending_totp_secret(config_id) is False

        users.set_pending_totp_secret(config_id, "new")
        staged = users.get_mfa_config(uid, MfaMethod.TOTP)
        assert staged.secret_encrypted == "old"
        assert staged.pending_secret_encrypted == "new"
        assert staged.verified

        assert users.promote_pending_totp_secret(config_id) is True
        promoted = users.get_mfa_config(uid, MfaMethod.TOTP)
        assert promoted.secret_encrypted == "new"
        assert promoted.pending_secret_encrypted is None
        assert promoted.verified

    def test_reset_token_claim(self, users: UserStore) -> None:
        uid = _user(users, "reset@example.com")
        token_id = users.create_reset_token(uid, "reset-hash", datetime.now(timezone.utc) + timedelta(hours=1))
        assert users.get_valid_reset_token("reset-hash").id == token_id
        assert users.claim_reset_token(token_id) is True
        assert users.claim_reset_token(token_id) is False
        assert users.get_valid_reset_token("reset-hash") is None


def test_existing_database_gains_added_columns(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'legacy.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE refresh_tokens (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, "
                "token_hash VARCHAR(64) NOT NULL UNIQUE, expires_at VARCHAR(40) NOT NULL, "
                "revoked INTEGER NOT NULL DEFAULT 0, created_at VARCHAR(40) NOT NULL)"
            )
        )
    engine.dispose()

    users = UserStore(url)
    try:
        uid = _user(users, "legacy@example.com")
        users.create_refresh_token(uid, "legacy-hash", datetime.now(timezone.utc) + timedelta(hours=1))
        assert users.claim_refresh_token("legacy-hash") is True
        assert users.get_refresh_token("legacy-hash").revoked_at is not None
    finally:
        users.close()
