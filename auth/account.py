"""
auth/account.py -- Mailbox self-service: change your own password.

Only a signed-in mailbox user may use this. The old password is checked
against the user tier, the new one must be typed twice and satisfy
PASSWORD_POLICY_REGEX, and the stored hash is always the default {SSHA256}
scheme regardless of what the old hash used.
"""

from __future__ import annotations

import logging

from auth.context import RequestContext
from auth.models import ResultType, Role
from auth.passwords import hash_password, verify_hash
from auth.repository import StorageError
from auth.validation import is_valid_username, meets_password_policy

logger = logging.getLogger("mailadmin.auth.account")


def edit_user_account(ctx: RequestContext, old_password: str, new_password: str, new_password2: str) -> bool:
    username = ctx.username
    call = ["edit_user_account", username, "*", "*", "*"]
    if ctx.role != Role.USER or not is_valid_username(username):
        ctx.emit(ResultType.DANGER, "access_denied", call=call)
        return False
    try:
        rows = ctx.store.find_accounts_by_tier_and_username(Role.USER, username)
        if not any(verify_hash(row.password_hash, old_password) for row in rows):
            ctx.emit(ResultType.DANGER, "access_denied", call=call)
            return False
        if new_password != new_password2:
            ctx.emit(ResultType.DANGER, "password_mismatch", call=call)
            return False
        if not meets_password_policy(new_password):
            ctx.emit(ResultType.DANGER, "password_complexity", call=call)
            return False
        ctx.store.update_mailbox_password(username, hash_password(new_password))
    except StorageError as exc:
        logger.error("Storage failure changing password of %s: %s", username, exc)
        ctx.emit(ResultType.DANGER, "storage_error", call=call)
        return False
    ctx.emit(ResultType.SUCCESS, "mailbox_modified", username, call=call)
    return True
