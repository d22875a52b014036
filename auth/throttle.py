"""
auth/throttle.py -- Per-session backoff for failed logins.

State lives in the session under SESSION_LOGIN_DELAY:

    absent --fail--> 0 --fail--> 0.5 --fail--> 1.0 ...   (step = LOGIN_DELAY_STEP)
       ^                                             |
       +------------------ success ------------------+

A failure while an identity is already signed in to the session (an admin
trying a second login on top of their own session) does not raise the delay.
This keeps the dual-login flow usable; it is a policy choice worth reviewing,
not an accident.

After recording a failure the caller stalls for the current delay before
answering. The stall is deliberate anti-automation, not a retry.

Counters are per session, so two sessions hammering the same username each
accrue their own delay.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from auth.context import SESSION_LOGIN_DELAY, RequestContext
from core.config import get_settings

logger = logging.getLogger("mailadmin.auth.throttle")


class LoginThrottle:
    def __init__(self, step: float | None = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.step = step if step is not None else get_settings().login_delay_step
        self._sleep = sleep

    @staticmethod
    def delay(ctx: RequestContext) -> float | None:
        value = ctx.session.get(SESSION_LOGIN_DELAY)
        return float(value) if value is not None else None

    def record_failure(self, ctx: RequestContext, username: str) -> float:
        """Advance the throttle for a failed login and return the delay to stall for."""
        current = self.delay(ctx)
        if current is None:
            new_delay = 0.0
        elif not ctx.authenticated:
            new_delay = current + self.step
        else:
            return current

        ctx.session[SESSION_LOGIN_DELAY] = new_delay
        if ctx.notifier is not None:
            try:
                ctx.notifier.failed_login(username, ctx.remote_addr)
            except Exception:  # noqa: BLE001 -- the feed must not decide a login
                logger.exception("Fail-ban notifier raised for %s", username)
        return new_delay

    def stall(self, ctx: RequestContext) -> None:
        delay = self.delay(ctx)
        if delay:
            self._sleep(delay)

    @staticmethod
    def clear(ctx: RequestContext) -> None:
        ctx.session.pop(SESSION_LOGIN_DELAY, None)
