"""Tests for auth/guard.py -- the account security state machine.

Covers:
- Registration defaults, duplicate and weak-password refusal
- Lockout after the maximum number of wrong passwords, with minutes remaining
- Lockout expiry rollover resets the counter in the same call
- Concurrent wrong passwords and interleaved requests cannot undo a lock
- DISABLED accounts always refused
- Refresh rotation and expiry, logout revocation
- Password reset: generic reply, single use, expiry, unlock
- MFA enrollment, verification, and single use of each code
- Audit events for each transition
"""

from __future__ import annotations

import threading

import pytest
from conftest import OTHER_STRONG_PASSWORD, STRONG_PASSWORD

from auth import totp
from auth.errors import AccountError, AuthFailure, DuplicateAccountError, PasswordPolicyError, Rejection
from auth.guard import RESET_MESSAGE, LoginSuccess
from auth.models import AccountStatus
from auth.tokens import TokenPair


def _kinds(services, actor):
    return [e.kind for e in services.audit.list_events(actor=actor)]


class TestRegister:
    def test_defaults(self, services):
        user = services.guard.register("bob", "bob@example.com", STRONG_PASSWORD)
        assert user.id.startswith("USR-") and len(user.id) == 20
        assert user.role_id == "ROLE-VIEWER"
        assert user.organization_id == "ORG-DEFAULT"
        assert user.status == AccountStatus.ACTIVE
        assert "USER_REGISTERED" in _kinds(services, user.id)

    def test_weak_password_lists_errors(self, services):
        with pytest.raises(PasswordPolicyError) as excinfo:
            services.guard.register("bob", "bob@example.com", "short")
        assert len(excinfo.value.errors) >= 3

    def test_duplicate_username_and_email(self, services, alice):
        with pytest.raises(DuplicateAccountError):
            services.guard.register("alice", "other@example.com", STRONG_PASSWORD)
        with pytest.raises(DuplicateAccountError):
            services.guard.register("alice2", "ALICE@example.com", STRONG_PASSWORD)


class TestLogin:
    def test_success_returns_distinct_tokens_and_permissions(self, services, alice):
        result = services.guard.login("alice", STRONG_PASSWORD, source_ip="10.0.0.7", user_agent="pytest")
        assert isinstance(result, LoginSuccess)
        assert result.access_token != result.refresh_token
        assert result.expires_in == 3600
        assert "case:read" in result.permissions
        check = services.mint.verify_access_token(result.access_token)
        assert check.claims["userId"] == alice.id

        stored = services.users.get_by_id(alice.id)
        assert stored.last_login_ip == "10.0.0.7"
        assert stored.refresh_token_hash is not None
        assert stored.refresh_token_hash != result.refresh_token
        assert "LOGIN_SUCCESS" in _kinds(services, alice.id)

    def test_unknown_user_is_invalid_credentials(self, services):
        result = services.guard.login("nobody", STRONG_PASSWORD)
        assert isinstance(result, Rejection)
        assert result.reason == AuthFailure.INVALID_CREDENTIALS

    def test_wrong_password_counts(self, services, alice):
        result = services.guard.login("alice", "wrong")
        assert result.reason == AuthFailure.INVALID_CREDENTIALS
        assert services.users.get_by_id(alice.id).failed_login_attempts == 1

    def test_fifth_failure_locks_and_sixth_correct_attempt_refused(self, services, alice):
        reasons = [services.guard.login("alice", "wrong").reason for _ in range(5)]
        assert reasons == [AuthFailure.INVALID_CREDENTIALS] * 4 + [AuthFailure.ACCOUNT_LOCKED]

        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.LOCKED
        assert stored.failed_login_attempts == 5

        sixth = services.guard.login("alice", STRONG_PASSWORD)
        assert sixth.reason == AuthFailure.ACCOUNT_LOCKED
        assert sixth.minutes_remaining == 15
        assert "ACCOUNT_LOCKED" in _kinds(services, alice.id)
        assert "LOGIN_BLOCKED" in _kinds(services, alice.id)

    def test_counter_frozen_while_locked(self, services, alice):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        services.guard.login("alice", "wrong")
        assert services.users.get_by_id(alice.id).failed_login_attempts == 5

    def test_minutes_remaining_rounds_up(self, services, alice, clock):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        clock.advance(minutes=10, seconds=30)
        assert services.guard.login("alice", STRONG_PASSWORD).minutes_remaining == 5

    def test_lockout_expiry_rolls_over_and_login_succeeds(self, services, alice, clock):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        clock.advance(minutes=15)

        result = services.guard.login("alice", STRONG_PASSWORD)
        assert isinstance(result, LoginSuccess)
        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.ACTIVE
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None
        assert "ACCOUNT_UNLOCKED" in _kinds(services, alice.id)

    def test_wrong_password_after_rollover_starts_from_zero(self, services, alice, clock):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        clock.advance(minutes=16)
        assert services.guard.login("alice", "wrong").reason == AuthFailure.INVALID_CREDENTIALS
        assert services.users.get_by_id(alice.id).failed_login_attempts == 1

    def test_success_resets_counter(self, services, alice):
        services.guard.login("alice", "wrong")
        services.guard.login("alice", "wrong")
        services.guard.login("alice", STRONG_PASSWORD)
        assert services.users.get_by_id(alice.id).failed_login_attempts == 0

    def test_disabled_refused_even_with_correct_password(self, services, alice):
        services.guard.set_status(alice.id, AccountStatus.DISABLED, actor="admin")
        assert services.guard.login("alice", STRONG_PASSWORD).reason == AuthFailure.ACCOUNT_DISABLED
        assert services.guard.login("alice", "wrong").reason == AuthFailure.ACCOUNT_DISABLED

    def test_concurrent_wrong_passwords_stop_at_max(self, services, alice):
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(3):
                result = services.guard.login("alice", "wrong")
                with lock:
                    results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 12
        assert all(isinstance(r, Rejection) for r in results)
        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.LOCKED
        assert stored.failed_login_attempts == 5
        assert services.guard.login("alice", STRONG_PASSWORD).reason == AuthFailure.ACCOUNT_LOCKED

    def test_lock_taken_after_password_check_stands(self, services, alice, monkeypatch):
        read_user = services.users.get_by_username
        fired = []

        def read_then_lock(username):
            user = read_user(username)
            if not fired:
                fired.append(True)
                for _ in range(5):
                    services.guard.login("alice", "wrong")
            return user

        monkeypatch.setattr(services.users, "get_by_username", read_then_lock)
        result = services.guard.login("alice", STRONG_PASSWORD)

        assert result.reason == AuthFailure.ACCOUNT_LOCKED
        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.LOCKED
        assert stored.failed_login_attempts == 5
        assert stored.refresh_token_hash is None


class TestRefreshAndLogout:
    def test_refresh_rotates(self, services, alice):
        login = services.guard.login("alice", STRONG_PASSWORD)
        pair = services.guard.refresh(login.refresh_token)
        assert isinstance(pair, TokenPair)
        assert pair.refresh_token != login.refresh_token
        # the old refresh token is retired
        assert services.guard.refresh(login.refresh_token).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED
        assert isinstance(services.guard.refresh(pair.refresh_token), TokenPair)

    def test_expired_refresh_token_refused_and_cleared(self, services, alice, clock):
        login = services.guard.login("alice", STRONG_PASSWORD)
        clock.advance(days=7)
        assert services.guard.refresh(login.refresh_token).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED
        assert services.users.get_by_id(alice.id).refresh_token_hash is None

    def test_disabled_owner_cannot_refresh(self, services, alice):
        login = services.guard.login("alice", STRONG_PASSWORD)
        services.guard.set_status(alice.id, AccountStatus.DISABLED, actor="admin")
        assert services.guard.refresh(login.refresh_token).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED

    def test_unknown_refresh_token(self, services):
        assert services.guard.refresh("f" * 128).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED
        assert services.guard.refresh("").reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED
        assert services.guard.refresh("\ud800").reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED

    def test_logout_revokes_refresh_token(self, services, alice):
        login = services.guard.login("alice", STRONG_PASSWORD)
        services.guard.logout(alice.id)
        assert services.guard.refresh(login.refresh_token).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED
        assert "LOGOUT" in _kinds(services, alice.id)

    def test_validate_session(self, services, alice):
        login = services.guard.login("alice", STRONG_PASSWORD)
        assert services.guard.validate_session(alice.id, login.access_token)
        assert not services.guard.validate_session("USR-OTHER", login.access_token)
        services.guard.set_status(alice.id, AccountStatus.DISABLED, actor="admin")
        assert not services.guard.validate_session(alice.id, login.access_token)


class TestPasswordReset:
    def test_unknown_email_gets_generic_message_and_no_token(self, services, notifier):
        ticket = services.guard.initiate_reset("ghost@example.com")
        assert ticket.message == RESET_MESSAGE
        assert ticket.token is None
        assert notifier.delivered == []

    def test_known_email_same_message_token_delivered(self, services, alice, notifier):
        ticket = services.guard.initiate_reset("alice@example.com")
        assert ticket.message == RESET_MESSAGE
        assert ticket.token == notifier.last_token
        stored = services.users.get_by_id(alice.id)
        assert stored.password_reset_token_hash not in (None, ticket.token)

    def test_complete_reset_unlocks_and_changes_password(self, services, alice):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        token = services.guard.initiate_reset("alice@example.com").token

        assert services.guard.complete_reset(token, OTHER_STRONG_PASSWORD) is None
        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.ACTIVE
        assert stored.failed_login_attempts == 0
        assert stored.password_reset_token_hash is None

        assert services.guard.login("alice", STRONG_PASSWORD).reason == AuthFailure.INVALID_CREDENTIALS
        assert isinstance(services.guard.login("alice", OTHER_STRONG_PASSWORD), LoginSuccess)
        assert "PASSWORD_RESET_SUCCESS" in _kinds(services, alice.id)

    def test_reset_token_single_use(self, services, alice):
        token = services.guard.initiate_reset("alice@example.com").token
        assert services.guard.complete_reset(token, OTHER_STRONG_PASSWORD) is None
        again = services.guard.complete_reset(token, "Another-Pass-55z")
        assert again.reason == AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED

    def test_reset_token_expires_after_an_hour(self, services, alice, clock):
        token = services.guard.initiate_reset("alice@example.com").token
        clock.advance(hours=1)
        result = services.guard.complete_reset(token, OTHER_STRONG_PASSWORD)
        assert result.reason == AuthFailure.RESET_TOKEN_INVALID_OR_EXPIRED

    def test_reset_revokes_existing_refresh_token(self, services, alice):
        login = services.guard.login("alice", STRONG_PASSWORD)
        token = services.guard.initiate_reset("alice@example.com").token
        services.guard.complete_reset(token, OTHER_STRONG_PASSWORD)
        assert services.guard.refresh(login.refresh_token).reason == AuthFailure.REFRESH_TOKEN_INVALID_OR_EXPIRED

    def test_reset_does_not_reenable_disabled_account(self, services, alice):
        services.guard.set_status(alice.id, AccountStatus.DISABLED, actor="admin")
        token = services.guard.initiate_reset("alice@example.com").token
        services.guard.complete_reset(token, OTHER_STRONG_PASSWORD)
        assert services.users.get_by_id(alice.id).status == AccountStatus.DISABLED

    def test_reset_request_does_not_undo_a_concurrent_lock(self, services, alice, monkeypatch):
        read_user = services.users.get_by_email

        def read_then_lock(email):
            user = read_user(email)
            for _ in range(5):
                services.guard.login("alice", "wrong")
            return user

        monkeypatch.setattr(services.users, "get_by_email", read_then_lock)
        assert services.guard.initiate_reset("alice@example.com").token is not None

        stored = services.users.get_by_id(alice.id)
        assert stored.status == AccountStatus.LOCKED
        assert stored.failed_login_attempts == 5
        assert stored.locked_until is not None
        assert stored.password_reset_token_hash is not None
        assert services.guard.login("alice", STRONG_PASSWORD).reason == AuthFailure.ACCOUNT_LOCKED

    def test_weak_new_password_raises(self, services, alice):
        token = services.guard.initiate_reset("alice@example.com").token
        with pytest.raises(PasswordPolicyError):
            services.guard.complete_reset(token, "weak")


class TestMfa:
    def test_login_requires_code_once_enabled(self, services, alice, clock):
        enrollment = services.guard.enable_mfa(alice.id)
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")

        assert services.guard.login("alice", STRONG_PASSWORD).reason == AuthFailure.MFA_REQUIRED
        code = totp.code_at(enrollment.secret, clock.now.timestamp())
        assert isinstance(services.guard.login("alice", STRONG_PASSWORD, mfa_code=code), LoginSuccess)

    def test_wrong_code_counts_as_failure(self, services, alice, clock):
        enrollment = services.guard.enable_mfa(alice.id)
        good = totp.code_at(enrollment.secret, clock.now.timestamp())
        bad = "000000" if good != "000000" else "111111"
        assert services.guard.login("alice", STRONG_PASSWORD, mfa_code=bad).reason == AuthFailure.INVALID_CREDENTIALS
        assert services.users.get_by_id(alice.id).failed_login_attempts == 1

    def test_code_accepted_once(self, services, alice, clock):
        enrollment = services.guard.enable_mfa(alice.id)
        code = totp.code_at(enrollment.secret, clock.now.timestamp())
        assert isinstance(services.guard.login("alice", STRONG_PASSWORD, mfa_code=code), LoginSuccess)

        replay = services.guard.login("alice", STRONG_PASSWORD, mfa_code=code)
        assert replay.reason == AuthFailure.INVALID_CREDENTIALS
        assert services.users.get_by_id(alice.id).failed_login_attempts == 1

        clock.advance(seconds=30)
        assert services.guard.login("alice", STRONG_PASSWORD, mfa_code=code).reason == AuthFailure.INVALID_CREDENTIALS
        fresh = totp.code_at(enrollment.secret, clock.now.timestamp())
        assert isinstance(services.guard.login("alice", STRONG_PASSWORD, mfa_code=fresh), LoginSuccess)

    def test_disable_requires_password(self, services, alice):
        services.guard.enable_mfa(alice.id)
        assert services.guard.disable_mfa(alice.id, "wrong").reason == AuthFailure.INVALID_CREDENTIALS
        assert services.guard.disable_mfa(alice.id, STRONG_PASSWORD) is None
        assert isinstance(services.guard.login("alice", STRONG_PASSWORD), LoginSuccess)
        assert "MFA_DISABLED" in _kinds(services, alice.id)


class TestProfileAndStatus:
    def test_password_change_requires_current_password(self, services, alice):
        result = services.guard.update_profile(alice.id, current_password="wrong", new_password=OTHER_STRONG_PASSWORD)
        assert result.reason == AuthFailure.INVALID_CREDENTIALS
        services.guard.update_profile(alice.id, current_password=STRONG_PASSWORD, new_password=OTHER_STRONG_PASSWORD)
        assert isinstance(services.guard.login("alice", OTHER_STRONG_PASSWORD), LoginSuccess)

    def test_email_change_unique(self, services, alice):
        services.guard.register("bob", "bob@example.com", STRONG_PASSWORD)
        with pytest.raises(DuplicateAccountError):
            services.guard.update_profile(alice.id, email="bob@example.com")
        updated = services.guard.update_profile(alice.id, email="alice@new.example.com")
        assert updated.email == "alice@new.example.com"

    def test_admin_unlock(self, services, alice):
        for _ in range(5):
            services.guard.login("alice", "wrong")
        user = services.guard.set_status(alice.id, AccountStatus.ACTIVE, actor="admin")
        assert user.status == AccountStatus.ACTIVE
        assert user.failed_login_attempts == 0
        assert isinstance(services.guard.login("alice", STRONG_PASSWORD), LoginSuccess)

    def test_cannot_set_locked_directly(self, services, alice):
        with pytest.raises(AccountError):
            services.guard.set_status(alice.id, AccountStatus.LOCKED, actor="admin")
