"""
auth/context.py -- Request-scoped context passed into every core operation.

A RequestContext is created per request and discarded with the response. It
bundles:
  - the repository (AccountRepository) and the fail-ban notifier,
  - the caller's session: a mutable mapping that survives across requests
    (Starlette's request.session in the HTTP app, a plain dict in tests),
  - the caller's network address,
  - the result records emitted while handling this request.

Everything that must outlive the request lives in the session under the
SESSION_* keys below: the signed-in identity, the pending-TFA principal, the
throttle delay, the factor id used at login and outstanding U2F challenges.
Values are plain JSON types because the session may be a signed cookie.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from auth.models import PendingAuth, ResultRecord, ResultType, Role
from auth.repository import AccountRepository, StorageError

if TYPE_CHECKING:
    from auth.notify import FailBanNotifier

logger = logging.getLogger("mailadmin.auth")

SESSION_USERNAME = "mailadmin_username"
SESSION_ROLE = "mailadmin_role"
SESSION_DUAL_LOGIN = "dual_login"
SESSION_PENDING = "pending_auth"
SESSION_LOGIN_DELAY = "login_delay"
SESSION_TFA_ID = "tfa_id"
SESSION_U2F_REGISTER = "u2f_register_request"
SESSION_U2F_SIGN = "u2f_sign_requests"


@dataclass
class RequestContext:
    store: AccountRepository
    session: MutableMapping[str, Any] = field(default_factory=dict)
    remote_addr: str = "unknown"
    notifier: FailBanNotifier | None = None
    results: list[ResultRecord] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def username(self) -> str | None:
        return self.session.get(SESSION_USERNAME)

    @property
    def role(self) -> Role | None:
        value = self.session.get(SESSION_ROLE)
        return Role(value) if value else None

    @property
    def authenticated(self) -> bool:
        return self.username is not None

    def sign_in(self, username: str, role: Role) -> None:
        self.session[SESSION_USERNAME] = username
        self.session[SESSION_ROLE] = role.value

    def sign_out(self) -> None:
        for key in (
            SESSION_USERNAME,
            SESSION_ROLE,
            SESSION_DUAL_LOGIN,
            SESSION_PENDING,
            SESSION_TFA_ID,
            SESSION_U2F_REGISTER,
            SESSION_U2F_SIGN,
        ):
            self.session.pop(key, None)

    @property
    def dual_login(self) -> dict[str, str] | None:
        """The original identity while an admin acts as another account."""
        return self.session.get(SESSION_DUAL_LOGIN)

    def begin_dual_login(self, username: str, role: Role) -> None:
        """Keep the current identity aside and act as username until end_dual_login()."""
        if not self.authenticated:
            raise RuntimeError("dual login requires a signed-in identity")
        self.session[SESSION_DUAL_LOGIN] = {"username": self.username, "role": self.role.value}
        self.sign_in(username, role)

    def end_dual_login(self) -> None:
        original = self.session.pop(SESSION_DUAL_LOGIN, None)
        if original:
            self.sign_in(original["username"], Role(original["role"]))

    # ------------------------------------------------------------------
    # Pending second factor
    # ------------------------------------------------------------------

    @property
    def pending(self) -> PendingAuth | None:
        data = self.session.get(SESSION_PENDING)
        return PendingAuth.from_session(data) if data else None

    def park(self, pending: PendingAuth) -> None:
        self.session[SESSION_PENDING] = pending.to_session()

    def clear_pending(self) -> None:
        self.session.pop(SESSION_PENDING, None)

    # ------------------------------------------------------------------
    # Result records
    # ------------------------------------------------------------------

    def emit(self, type: ResultType, code: str, *args: Any, call: list[Any] | None = None) -> ResultRecord:
        """Record the outcome of an operation and log it."""
        record = ResultRecord(type=type, code=code, args=list(args), call=list(call or []))
        self.results.append(record)
        level = logging.WARNING if type == ResultType.DANGER else logging.INFO
        logger.log(level, "%s %s %s call=%s remote=%s", type.value, code, record.args, record.call, self.remote_addr)
        return record

    def flush_results(self) -> int:
        """Persist this request's result records to the log table.

        All records of one request share a six-character task id. A store that
        cannot take log entries must not break the request, so write failures
        are logged and dropped. Returns the number of records written.
        """
        if not self.results:
            return 0
        task = secrets.token_hex(3).upper()
        user, role = self._log_identity()
        written = 0
        for record in self.results:
            try:
                self.store.insert_log(record, task=task, user=user, role=role, remote=self.remote_addr)
                written += 1
            except StorageError as exc:
                logger.warning("Could not persist result record %s: %s", record.code, exc)
        self.results.clear()
        return written

    def _log_identity(self) -> tuple[str, str]:
        dual = self.dual_login
        if dual and self.username:
            return f"{dual['username']} => {self.username}", f"{dual['role']} => {self.role.value}"
        if self.username:
            return self.username, self.role.value
        return "unauthenticated", "unauthenticated"
