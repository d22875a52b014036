"""
auth/login.py -- Password login across privilege tiers, second-factor completion, logout.

check_login() outcomes:

    malformed username         -> rejected   (no throttle, no repository access)
    password verified, no TFA  -> authenticated, identity signed in
    password verified, TFA     -> pending_tfa, PendingAuth parked in the session
    no tier verified           -> rejected   (throttle advanced, stall)
    repository failure         -> rejected   (storage_error, no throttle)

Tiers are consulted superadmin -> domainadmin -> user and the first tier with a
verifying row wins, so a username present in several tiers always resolves to
the highest one whose password matches.

Skipped second factors: skip_next_login() deactivates a user's factors so the
next password login sees mechanism "none". Every successful password match
reactivates them again, after the mechanism has been looked up.
"""

from __future__ import annotations

import logging

from auth.context import SESSION_TFA_ID, RequestContext
from auth.models import TIER_ORDER, LoginOutcome, LoginState, Mechanism, PendingAuth, ResultType, Role
from auth.passwords import verify_hash
from auth.repository import StorageError
from auth.tfa import TfaRegistry, TfaResponse
from auth.throttle import LoginThrottle
from auth.validation import is_valid_username, normalize_username

logger = logging.getLogger("mailadmin.auth.login")


class CredentialVerifier:
    def __init__(self, tfa: TfaRegistry | None = None, throttle: LoginThrottle | None = None) -> None:
        self.tfa = tfa or TfaRegistry()
        self.throttle = throttle or LoginThrottle()

    def check_login(self, ctx: RequestContext, username: str, password: str) -> LoginOutcome:
        if isinstance(username, str):
            username = username.strip()
        call = ["check_login", username, "*"]
        if not is_valid_username(username):
            record = ctx.emit(ResultType.DANGER, "malformed_username", call=call)
            return LoginOutcome(LoginState.REJECTED, record)

        username = normalize_username(username)
        call[1] = username
        try:
            role = self._match_tier(ctx, username, password)
            if role is not None:
                return self._accept(ctx, username, role, call)
        except StorageError as exc:
            logger.error("Storage failure during login of %s: %s", username, exc)
            record = ctx.emit(ResultType.DANGER, "storage_error", call=call)
            return LoginOutcome(LoginState.REJECTED, record)

        self.throttle.record_failure(ctx, username)
        record = ctx.emit(ResultType.DANGER, "login_failed", call=call)
        self.throttle.stall(ctx)
        return LoginOutcome(LoginState.REJECTED, record)

    @staticmethod
    def _match_tier(ctx: RequestContext, username: str, password: str) -> Role | None:
        for tier in TIER_ORDER:
            for account in ctx.store.find_accounts_by_tier_and_username(tier, username):
                if verify_hash(account.password_hash, password):
                    return tier
        return None

    def _accept(self, ctx: RequestContext, username: str, role: Role, call: list) -> LoginOutcome:
        self.throttle.clear(ctx)
        mechanism = self.tfa.active_mechanism(ctx.store, username)
        self.tfa.reactivate(ctx.store, username)
        if mechanism != Mechanism.NONE:
            ctx.park(PendingAuth(username=username, role=role, mechanism=mechanism))
            record = ctx.emit(ResultType.INFO, "awaiting_tfa_confirmation", call=call)
            return LoginOutcome(LoginState.PENDING_TFA, record, username=username, role=role)

        ctx.clear_pending()
        ctx.sign_in(username, role)
        record = ctx.emit(ResultType.SUCCESS, "logged_in_as", username, call=call)
        return LoginOutcome(LoginState.AUTHENTICATED, record, username=username, role=role)

    def verify_tfa_login(self, ctx: RequestContext, response: TfaResponse) -> LoginOutcome:
        """Complete a pending login with a second-factor response.

        A failed response leaves the pending state in place so the user can
        try again.
        """
        pending = ctx.pending
        if pending is None:
            record = ctx.emit(ResultType.DANGER, "access_denied", call=["verify_tfa_login"])
            return LoginOutcome(LoginState.REJECTED, record)

        factor_id = self.tfa.verify(ctx, pending.username, response)
        if factor_id is None:
            return LoginOutcome(LoginState.PENDING_TFA, ctx.results[-1], username=pending.username, role=pending.role)

        ctx.clear_pending()
        ctx.sign_in(pending.username, pending.role)
        ctx.session[SESSION_TFA_ID] = factor_id
        record = ctx.emit(
            ResultType.SUCCESS, "logged_in_as", pending.username, call=["verify_tfa_login", pending.username]
        )
        return LoginOutcome(LoginState.AUTHENTICATED, record, username=pending.username, role=pending.role)

    @staticmethod
    def logout(ctx: RequestContext) -> None:
        logger.info("Logout of %s from %s", ctx.username or "unauthenticated", ctx.remote_addr)
        ctx.sign_out()
