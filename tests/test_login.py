"""Tests for auth/login.py -- tiered password login, second-factor completion, logout.

Covers:
- each tier authenticates, highest verifying tier wins, resource mailboxes never log in
- malformed usernames are rejected before the repository or the throttle
- failed logins drive the throttle and the fail-ban feed
- users with an active factor are parked as pending until verify_tfa_login()
- skip_next_login() lets one login through and the factors come back
- repository failures reject without authenticating or throttling
"""

import pyotp
import pytest

from auth.context import SESSION_LOGIN_DELAY, SESSION_PENDING, SESSION_TFA_ID, RequestContext
from auth.login import CredentialVerifier
from auth.models import LoginState, Mechanism, ResultType, Role, TfaFactor
from auth.passwords import hash_password
from auth.tfa import TotpCode, YubiOtpCode


def _enroll_totp(store, username: str) -> tuple[str, int]:
    secret = pyotp.random_base32()
    factor_id = store.insert_tfa_factor(TfaFactor(username=username, mechanism=Mechanism.TOTP, secret=secret))
    return secret, factor_id


class TestTiers:
    @pytest.mark.parametrize(
        "username, role",
        [("admin", Role.SUPERADMIN), ("domadm", Role.DOMAINADMIN), ("alice@corp.com", Role.USER)],
    )
    def test_each_tier_authenticates(self, verifier, ctx, passwords, username, role) -> None:
        outcome = verifier.check_login(ctx, username, passwords[username])
        assert outcome.state == LoginState.AUTHENTICATED
        assert outcome.role == role
        assert ctx.username == username
        assert ctx.role == role
        assert outcome.result.type == ResultType.SUCCESS
        assert outcome.result.code == "logged_in_as"
        assert outcome.result.args == [username]

    def test_highest_verifying_tier_wins(self, verifier, ctx, store) -> None:
        store.create_admin("shared", hash_password("super-pw"), superadmin=True)
        store.create_admin("shared", hash_password("domain-pw"))
        assert verifier.check_login(ctx, "shared", "super-pw").role == Role.SUPERADMIN
        verifier.logout(ctx)
        assert verifier.check_login(ctx, "shared", "domain-pw").role == Role.DOMAINADMIN

    def test_any_row_within_a_tier_may_verify(self, verifier, ctx, store) -> None:
        store.create_admin("twice", hash_password("first"))
        store.create_admin("twice", hash_password("second"))
        assert verifier.check_login(ctx, "twice", "second").authenticated

    def test_username_is_normalized(self, verifier, ctx, passwords) -> None:
        outcome = verifier.check_login(ctx, "  Alice@Corp.com ", passwords["alice@corp.com"])
        assert outcome.authenticated
        assert ctx.username == "alice@corp.com"

    def test_mailbox_on_special_use_domain(self, verifier, ctx, store) -> None:
        store.create_domain("corp.local")
        store.create_mailbox("carol@corp.local", hash_password("carol-pass"))
        outcome = verifier.check_login(ctx, "carol@corp.local", "carol-pass")
        assert outcome.authenticated
        assert (outcome.username, outcome.role) == ("carol@corp.local", Role.USER)

    def test_resource_mailbox_cannot_log_in(self, verifier, ctx, passwords) -> None:
        outcome = verifier.check_login(ctx, "room@corp.com", passwords["room@corp.com"])
        assert outcome.state == LoginState.REJECTED
        assert outcome.result.code == "login_failed"

    def test_inactive_admin_cannot_log_in(self, verifier, ctx, store) -> None:
        store.create_admin("retired", hash_password("pw-retired"), active=False)
        assert not verifier.check_login(ctx, "retired", "pw-retired").authenticated


class TestRejection:
    def test_malformed_username(self, verifier, ctx, notifier) -> None:
        outcome = verifier.check_login(ctx, "bad user!", "whatever")
        assert outcome.state == LoginState.REJECTED
        assert outcome.result.code == "malformed_username"
        assert outcome.result.type == ResultType.DANGER
        assert SESSION_LOGIN_DELAY not in ctx.session
        assert notifier.calls == []

    def test_malformed_username_never_touches_the_store(self, verifier, broken_store) -> None:
        ctx = RequestContext(store=broken_store)
        assert verifier.check_login(ctx, "", "pw").result.code == "malformed_username"

    def test_wrong_password_throttles_and_notifies(self, verifier, ctx, notifier, sleeps) -> None:
        first = verifier.check_login(ctx, "admin", "nope")
        second = verifier.check_login(ctx, "admin", "nope")
        assert first.result.code == second.result.code == "login_failed"
        assert ctx.session[SESSION_LOGIN_DELAY] == 0.5
        assert sleeps == [0.5]
        assert notifier.calls == [("admin", ctx.remote_addr), ("admin", ctx.remote_addr)]
        assert not ctx.authenticated

    def test_unknown_user_fails_like_wrong_password(self, verifier, ctx) -> None:
        outcome = verifier.check_login(ctx, "ghost", "pw")
        assert outcome.result.code == "login_failed"
        assert ctx.session[SESSION_LOGIN_DELAY] == 0.0

    def test_success_clears_throttle(self, verifier, ctx, passwords) -> None:
        verifier.check_login(ctx, "admin", "nope")
        verifier.check_login(ctx, "admin", "nope")
        verifier.check_login(ctx, "admin", passwords["admin"])
        assert SESSION_LOGIN_DELAY not in ctx.session

    def test_storage_failure_rejects_without_throttle(self, verifier, broken_store, notifier) -> None:
        ctx = RequestContext(store=broken_store, notifier=notifier)
        outcome = verifier.check_login(ctx, "admin", "admin-pass")
        assert outcome.state == LoginState.REJECTED
        assert outcome.result.code == "storage_error"
        assert not ctx.authenticated
        assert SESSION_LOGIN_DELAY not in ctx.session
        assert notifier.calls == []


class TestSecondFactor:
    def test_active_factor_parks_pending(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "admin")
        outcome = verifier.check_login(ctx, "admin", passwords["admin"])
        assert outcome.state == LoginState.PENDING_TFA
        assert outcome.result.type == ResultType.INFO
        assert outcome.result.code == "awaiting_tfa_confirmation"
        assert not ctx.authenticated
        assert ctx.pending.username == "admin"
        assert ctx.pending.role == Role.SUPERADMIN
        assert ctx.pending.mechanism == Mechanism.TOTP

    def test_mailbox_users_are_asked_for_their_factor_too(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "alice@corp.com")
        outcome = verifier.check_login(ctx, "alice@corp.com", passwords["alice@corp.com"])
        assert outcome.state == LoginState.PENDING_TFA

    def test_correct_code_completes_login(self, verifier, ctx, store, passwords) -> None:
        secret, factor_id = _enroll_totp(store, "domadm")
        verifier.check_login(ctx, "domadm", passwords["domadm"])
        outcome = verifier.verify_tfa_login(ctx, TotpCode(pyotp.TOTP(secret).now()))
        assert outcome.state == LoginState.AUTHENTICATED
        assert outcome.result.code == "logged_in_as"
        assert ctx.username == "domadm"
        assert ctx.role == Role.DOMAINADMIN
        assert ctx.session[SESSION_TFA_ID] == factor_id
        assert SESSION_PENDING not in ctx.session
        assert [r.code for r in ctx.results][-2:] == ["verified_totp_login", "logged_in_as"]

    def test_wrong_code_keeps_pending(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "admin")
        verifier.check_login(ctx, "admin", passwords["admin"])
        outcome = verifier.verify_tfa_login(ctx, TotpCode("000000"))
        assert outcome.state == LoginState.PENDING_TFA
        assert outcome.result.code == "totp_verification_failed"
        assert ctx.pending is not None
        assert not ctx.authenticated

    def test_wrong_response_type_fails(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "admin")
        verifier.check_login(ctx, "admin", passwords["admin"])
        outcome = verifier.verify_tfa_login(ctx, YubiOtpCode("x" * 44))
        assert outcome.result.code == "totp_verification_failed"

    def test_verify_without_pending_is_denied(self, verifier, ctx) -> None:
        outcome = verifier.verify_tfa_login(ctx, TotpCode("123456"))
        assert outcome.state == LoginState.REJECTED
        assert outcome.result.code == "access_denied"

    def test_skip_next_login_and_reactivation(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "domadm")
        ctx.sign_in("admin", Role.SUPERADMIN)
        assert verifier.tfa.skip_next_login(ctx, "domadm")
        assert store.count_active_factors("domadm") == 0

        user_ctx = RequestContext(store=store)
        outcome = verifier.check_login(user_ctx, "domadm", passwords["domadm"])
        assert outcome.state == LoginState.AUTHENTICATED
        assert store.count_active_factors("domadm") == 1

        again = verifier.check_login(RequestContext(store=store), "domadm", passwords["domadm"])
        assert again.state == LoginState.PENDING_TFA


class TestLogout:
    def test_logout_clears_identity_and_pending(self, verifier, ctx, store, passwords) -> None:
        verifier.check_login(ctx, "admin", passwords["admin"])
        ctx.session["u2f_sign_requests"] = [{"challenge": "x"}]
        verifier.logout(ctx)
        assert not ctx.authenticated
        assert ctx.role is None
        assert "u2f_sign_requests" not in ctx.session

    def test_logout_drops_pending(self, verifier, ctx, store, passwords) -> None:
        _enroll_totp(store, "admin")
        verifier.check_login(ctx, "admin", passwords["admin"])
        verifier.logout(ctx)
        assert ctx.pending is None


class TestDefaults:
    def test_builds_its_own_collaborators(self) -> None:
        verifier = CredentialVerifier()
        assert verifier.tfa is not None
        assert verifier.throttle.step == 0.5
