"""Tests for auth/store.py -- user, role, and API key persistence."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AccountStatus, ApiKey, Permission, Role, User
from auth.seed import seed_defaults
from auth.store import ApiKeyStore, UserStore

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(db_url):
    s = UserStore(db_url)
    yield s
    s.close()


@pytest.fixture
def key_store(db_url):
    s = ApiKeyStore(db_url)
    yield s
    s.close()


def _user(user_id="USR-1", username="alice", email="alice@example.com") -> User:
    return User(id=user_id, username=username, email=email, password_hash="00:11", created_at=NOW)


class TestUsers:
    def test_create_and_lookup(self, store):
        assert not store.has_users()
        store.create_user(_user())
        assert store.has_users()
        assert store.get_by_id("USR-1").username == "alice"
        assert store.get_by_username("alice").id == "USR-1"
        assert store.get_by_username("ALICE") is None
        assert store.get_by_email("Alice@Example.com").id == "USR-1"
        assert store.get_by_id("USR-404") is None

    def test_duplicate_username_raises(self, store):
        store.create_user(_user())
        with pytest.raises(IntegrityError):
            store.create_user(_user(user_id="USR-2", email="other@example.com"))

    def test_save_updates_and_inserts(self, store):
        user = _user()
        store.save(user)
        assert store.get_by_id("USR-1") is not None

        user.mfa_enabled = True
        store.save(user)
        stored = store.get_by_id("USR-1")
        assert stored.mfa_enabled is True
        assert stored.created_at == NOW

    def test_save_leaves_lockout_state_alone(self, store):
        store.create_user(_user())
        stale = store.get_by_id("USR-1")
        for _ in range(3):
            store.record_failed_login("USR-1", 3, NOW + timedelta(minutes=15))

        stale.email = "alice@new.example.com"
        store.save(stale)
        stored = store.get_by_id("USR-1")
        assert stored.email == "alice@new.example.com"
        assert stored.status == AccountStatus.LOCKED
        assert stored.failed_login_attempts == 3
        assert stored.locked_until == NOW + timedelta(minutes=15)

    def test_token_hash_lookups(self, store):
        user = _user()
        user.refresh_token_hash = "r" * 64
        user.password_reset_token_hash = "p" * 64
        store.create_user(user)
        assert store.get_by_refresh_token_hash("r" * 64).id == "USR-1"
        assert store.get_by_reset_token_hash("p" * 64).id == "USR-1"

    def test_list_users_sorted(self, store):
        store.create_user(_user("USR-2", "zed", "zed@example.com"))
        store.create_user(_user())
        assert [u.username for u in store.list_users()] == ["alice", "zed"]


class TestRecordFailedLogin:
    def test_locks_on_max(self, store):
        store.create_user(_user())
        until = NOW + timedelta(minutes=15)
        for expected in (1, 2):
            updated = store.record_failed_login("USR-1", 3, until)
            assert updated.failed_login_attempts == expected
            assert updated.status == AccountStatus.ACTIVE
            assert updated.locked_until is None

        locked = store.record_failed_login("USR-1", 3, until)
        assert locked.status == AccountStatus.LOCKED
        assert locked.locked_until == until
        assert locked.failed_login_attempts == 3

    def test_no_change_when_not_active(self, store):
        store.create_user(_user())
        for _ in range(3):
            store.record_failed_login("USR-1", 3, NOW)
        assert store.record_failed_login("USR-1", 3, NOW).failed_login_attempts == 3

    def test_unknown_user(self, store):
        assert store.record_failed_login("USR-404", 3, NOW) is None

    def test_concurrent_failures_stop_at_max(self, store):
        store.create_user(_user())
        until = NOW + timedelta(minutes=15)
        errors = []

        def worker():
            try:
                for _ in range(5):
                    store.record_failed_login("USR-1", 5, until)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = store.get_by_id("USR-1")
        assert stored.failed_login_attempts == 5
        assert stored.status == AccountStatus.LOCKED
        assert stored.locked_until == until


class TestTransitions:
    def _locked(self, store, until=NOW + timedelta(minutes=15)):
        store.create_user(_user())
        for _ in range(3):
            store.record_failed_login("USR-1", 3, until)

    def test_unlock_only_after_lock_expires(self, store):
        self._locked(store)
        assert not store.unlock_if_expired("USR-1", NOW + timedelta(minutes=14))
        assert store.get_by_id("USR-1").status == AccountStatus.LOCKED

        assert store.unlock_if_expired("USR-1", NOW + timedelta(minutes=15))
        stored = store.get_by_id("USR-1")
        assert stored.status == AccountStatus.ACTIVE
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None
        assert not store.unlock_if_expired("USR-1", NOW + timedelta(minutes=15))

    def test_login_success_refused_once_locked(self, store):
        self._locked(store)
        assert not store.record_login_success("USR-1", NOW, "10.0.0.7", "ua", "r" * 64, NOW + timedelta(days=7))
        stored = store.get_by_id("USR-1")
        assert stored.status == AccountStatus.LOCKED
        assert stored.refresh_token_hash is None

    def test_login_success_clears_counter(self, store):
        store.create_user(_user())
        store.record_failed_login("USR-1", 3, NOW)
        assert store.record_login_success("USR-1", NOW, "10.0.0.7", "ua", "r" * 64, NOW + timedelta(days=7))
        stored = store.get_by_id("USR-1")
        assert stored.failed_login_attempts == 0
        assert stored.last_login_ip == "10.0.0.7"
        assert store.get_by_refresh_token_hash("r" * 64).id == "USR-1"

    def test_reset_consumes_token_once(self, store):
        self._locked(store)
        store.set_reset_token("USR-1", "p" * 64, NOW + timedelta(hours=1))
        assert store.complete_password_reset("p" * 64, "aa:bb")
        assert not store.complete_password_reset("p" * 64, "cc:dd")
        stored = store.get_by_id("USR-1")
        assert stored.password_hash == "aa:bb"
        assert stored.status == AccountStatus.ACTIVE
        assert stored.failed_login_attempts == 0
        assert stored.password_reset_token_hash is None

    def test_reset_keeps_disabled(self, store):
        store.create_user(_user())
        store.set_status("USR-1", AccountStatus.DISABLED)
        store.set_reset_token("USR-1", "p" * 64, NOW + timedelta(hours=1))
        assert store.complete_password_reset("p" * 64, "aa:bb")
        assert store.get_by_id("USR-1").status == AccountStatus.DISABLED

    def test_mfa_step_claimed_once(self, store):
        store.create_user(_user())
        store.set_mfa("USR-1", True, "JBSWY3DPEHPK3PXP")
        assert store.claim_mfa_step("USR-1", 100)
        assert not store.claim_mfa_step("USR-1", 100)
        assert not store.claim_mfa_step("USR-1", 99)
        assert store.claim_mfa_step("USR-1", 101)

        store.set_mfa("USR-1", True, "KRSXG5CTMVRXEZLU")
        assert store.get_by_id("USR-1").mfa_last_step is None

    def test_refresh_token_replaced_only_from_current(self, store):
        store.create_user(_user())
        store.set_refresh_token("USR-1", "a" * 64, NOW + timedelta(days=7))
        assert store.replace_refresh_token("a" * 64, "b" * 64, NOW + timedelta(days=7))
        assert not store.replace_refresh_token("a" * 64, "c" * 64, NOW + timedelta(days=7))
        assert store.get_by_refresh_token_hash("b" * 64).id == "USR-1"

    def test_admin_status(self, store):
        self._locked(store)
        assert store.set_status("USR-1", AccountStatus.ACTIVE)
        stored = store.get_by_id("USR-1")
        assert stored.status == AccountStatus.ACTIVE
        assert stored.failed_login_attempts == 0
        assert not store.set_status("USR-404", AccountStatus.DISABLED)


class TestRoles:
    def test_role_with_permissions(self, store):
        store.create_role(
            Role(id="ROLE-X", name="X", permissions=[Permission("case", "read"), Permission("case", "close")])
        )
        role = store.get_role("ROLE-X")
        assert [str(p) for p in role.permissions] == ["case:close", "case:read"]
        assert store.get_role("ROLE-NONE") is None

    def test_permissions_reused_and_attach_idempotent(self, store):
        first = store.create_permission(Permission("case", "read"))
        assert store.create_permission(Permission("case", "read", id="perm-other")) == first
        store.create_role(Role(id="ROLE-X", name="X"))
        store.attach_permission("ROLE-X", Permission("case", "read"))
        store.attach_permission("ROLE-X", Permission("case", "read"))
        assert len(store.get_role("ROLE-X").permissions) == 1

    def test_wildcard_permission_id(self, store):
        assert store.create_permission(Permission("*", "*")) == "perm-all-all"

    def test_set_parent_role(self, store):
        store.create_role(Role(id="ROLE-P", name="P"))
        store.create_role(Role(id="ROLE-C", name="C"))
        assert store.set_parent_role("ROLE-C", "ROLE-P")
        assert store.get_role("ROLE-C").parent_role_id == "ROLE-P"
        assert not store.set_parent_role("ROLE-NONE", "ROLE-P")

    def test_role_writes_notify_listeners(self, store):
        calls = []
        store.on_roles_changed(lambda: calls.append(1))
        store.create_role(Role(id="ROLE-X", name="X"))
        store.create_role(Role(id="ROLE-P", name="P"))
        assert len(calls) == 2

        store.attach_permission("ROLE-X", Permission("case", "read"))
        store.attach_permission("ROLE-X", Permission("case", "read"))
        assert len(calls) == 3

        store.set_parent_role("ROLE-X", "ROLE-P")
        store.set_parent_role("ROLE-NONE", "ROLE-P")
        assert len(calls) == 4

        assert store.detach_permission("ROLE-X", Permission("case", "read"))
        assert not store.detach_permission("ROLE-X", Permission("case", "read"))
        assert len(calls) == 5
        assert store.get_role("ROLE-X").permissions == []

    def test_seed_is_idempotent(self, store):
        created = seed_defaults(store)
        assert created == len(store.list_roles())
        assert seed_defaults(store) == 0
        assert store.get_organization("ORG-DEFAULT").path == "/ORG-DEFAULT"
        superadmin = store.get_role("ROLE-SUPERADMIN")
        assert [str(p) for p in superadmin.permissions] == ["*:*"]


class TestApiKeys:
    def _key(self, **overrides) -> ApiKey:
        values = dict(
            id="KEY-1",
            user_id="USR-1",
            organization_id="ORG-DEFAULT",
            name="ci",
            key_hash="h" * 64,
            key_prefix="sk_live_abcdefgh",
            scopes=["case:read", "threat:*"],
            ip_allowlist=["10.0.0.0/8"],
            created_at=NOW,
        )
        values.update(overrides)
        return ApiKey(**values)

    def test_round_trip_lists(self, key_store):
        key_store.create(self._key())
        stored = key_store.get_by_hash("h" * 64)
        assert stored.scopes == ["case:read", "threat:*"]
        assert stored.ip_allowlist == ["10.0.0.0/8"]
        assert key_store.get_by_id("KEY-1").name == "ci"

    def test_revoke_once(self, key_store):
        key_store.create(self._key())
        assert key_store.mark_revoked("h" * 64, "USR-1", NOW)
        assert not key_store.mark_revoked("h" * 64, "USR-1", NOW)
        assert key_store.get_by_id("KEY-1").revoked_at == NOW

    def test_record_usage_increments(self, key_store):
        key_store.create(self._key())
        key_store.record_usage("h" * 64, NOW)
        key_store.record_usage("h" * 64, NOW + timedelta(seconds=5))
        stored = key_store.get_by_id("KEY-1")
        assert stored.usage_count == 2
        assert stored.last_used_at == NOW + timedelta(seconds=5)

    def test_list_for_user(self, key_store):
        key_store.create(self._key())
        key_store.create(self._key(id="KEY-2", key_hash="i" * 64, created_at=NOW + timedelta(minutes=1)))
        assert [k.id for k in key_store.list_for_user("USR-1")] == ["KEY-2", "KEY-1"]
        assert key_store.list_for_user("USR-2") == []
