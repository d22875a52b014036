"""Tests for auth/store.py and the result log on auth/context.py.

Covers:
- tier queries, factor purge modes, the user-scoped single delete
- SQLAlchemy failures surface as StorageError
- flush_results() writes one log row per record under one task id, with
  "unauthenticated" and "a => b" dual-login identities
- last_login() returns the newest successful login only
"""

import json

import pyotp
import pytest
from sqlalchemy import text

from auth.context import RequestContext
from auth.models import Mechanism, ResultRecord, ResultType, Role, TfaFactor
from auth.repository import FactorPurge, StorageError
from auth.tfa import TotpCode


def _log_rows(store):
    with store.engine.connect() as conn:
        return conn.execute(text('SELECT type, task, msg, call, user, role, remote FROM logs ORDER BY id')).fetchall()


class TestAccounts:
    def test_tiers_are_separate(self, store) -> None:
        assert [a.username for a in store.find_accounts_by_tier_and_username(Role.SUPERADMIN, "admin")] == ["admin"]
        assert store.find_accounts_by_tier_and_username(Role.DOMAINADMIN, "admin") == []
        assert store.find_accounts_by_tier_and_username(Role.USER, "room@corp.com") == []

    def test_update_mailbox_password(self, store) -> None:
        assert store.update_mailbox_password("alice@corp.com", "{PLAIN-MD5}x")
        assert not store.update_mailbox_password("ghost@corp.com", "{PLAIN-MD5}x")


class TestFactors:
    def _seed(self, store):
        store.insert_tfa_factor(TfaFactor(username="admin", mechanism=Mechanism.TOTP, secret="T"))
        store.insert_tfa_factor(TfaFactor(username="admin", mechanism=Mechanism.U2F, key_handle="u1"))
        store.insert_tfa_factor(TfaFactor(username="domadm", mechanism=Mechanism.U2F, key_handle="u2"))

    def test_replace_other_mechanisms_keeps_same_mechanism(self, store) -> None:
        self._seed(store)
        new_id = store.replace_tfa_factors(
            TfaFactor(username="admin", mechanism=Mechanism.U2F, key_handle="u3"), FactorPurge.OTHER_MECHANISMS
        )
        factors = store.list_tfa_factors("admin")
        assert [f.key_handle for f in factors] == ["u1", "u3"]
        assert factors[-1].id == new_id
        assert len(store.list_tfa_factors("domadm")) == 1

    def test_replace_all(self, store) -> None:
        self._seed(store)
        store.replace_tfa_factors(TfaFactor(username="admin", mechanism=Mechanism.TOTP, secret="N"), FactorPurge.ALL)
        assert [f.secret for f in store.list_tfa_factors("admin")] == ["N"]

    def test_first_active_factor_decides_mechanism(self, store) -> None:
        self._seed(store)
        assert store.find_tfa_factor("admin").mechanism == Mechanism.TOTP
        assert store.find_tfa_factor("alice@corp.com") is None

    def test_deactivate_and_reactivate(self, store) -> None:
        self._seed(store)
        store.set_tfa_factors_active("admin", False)
        assert store.find_tfa_factor("admin") is None
        assert store.count_active_factors("admin") == 0
        assert len(store.list_tfa_factors("admin", active_only=True)) == 0
        store.set_tfa_factors_active("admin", True)
        assert store.count_active_factors("admin") == 2

    def test_delete_is_scoped_to_owner(self, store) -> None:
        self._seed(store)
        foreign = store.list_tfa_factors("domadm")[0].id
        assert not store.delete_tfa_factor("admin", foreign)
        assert store.delete_tfa_factor("domadm", foreign)

    def test_u2f_counter(self, store) -> None:
        factor_id = store.insert_tfa_factor(TfaFactor(username="admin", mechanism=Mechanism.U2F, key_handle="k"))
        assert store.list_tfa_factors("admin")[0].counter == -1
        store.update_u2f_counter(factor_id, 12)
        assert store.list_tfa_factors("admin")[0].counter == 12


class TestDomains:
    def test_lookups(self, store) -> None:
        assert store.domain_exists("corp.com")
        assert not store.domain_exists("corp-alias.com")
        assert store.alias_domain_target("corp-alias.com") == "corp.com"
        assert store.alias_domain_target("corp.com") is None
        assert store.alias_domains_for_target("corp.com") == ["corp-alias.com"]
        assert store.mailbox_owner_domain("bob@other.com") == "other.com"
        assert store.alias_owner_domain("sales@corp.com") == "corp.com"
        assert store.alias_owner_domain("nobody@corp.com") is None


class TestStorageErrors:
    def test_sqlalchemy_errors_are_translated(self, store) -> None:
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE tfa"))
        with pytest.raises(StorageError):
            store.find_tfa_factor("admin")
        with pytest.raises(StorageError):
            store.replace_tfa_factors(TfaFactor(username="admin", mechanism=Mechanism.TOTP), FactorPurge.ALL)


class TestResultLog:
    def test_flush_writes_one_row_per_record(self, ctx, store) -> None:
        ctx.emit(ResultType.DANGER, "login_failed", call=["check_login", "admin", "*"])
        ctx.emit(ResultType.INFO, "awaiting_tfa_confirmation", call=["check_login", "admin", "*"])
        assert ctx.flush_results() == 2
        assert ctx.results == []
        rows = _log_rows(store)
        assert [r.type for r in rows] == ["danger", "info"]
        assert rows[0].task == rows[1].task
        assert len(rows[0].task) == 6
        assert json.loads(rows[0].call) == ["check_login", "admin", "*"]
        assert (rows[0].user, rows[0].role, rows[0].remote) == ("unauthenticated", "unauthenticated", ctx.remote_addr)

    def test_message_carries_args(self, ctx, store) -> None:
        ctx.sign_in("admin", Role.SUPERADMIN)
        ctx.emit(ResultType.SUCCESS, "logged_in_as", "admin")
        ctx.flush_results()
        (row,) = _log_rows(store)
        assert json.loads(row.msg) == ["logged_in_as", "admin"]
        assert (row.user, row.role) == ("admin", "superadmin")

    def test_dual_login_identity(self, ctx, store) -> None:
        ctx.sign_in("admin", Role.SUPERADMIN)
        ctx.begin_dual_login("alice@corp.com", Role.USER)
        ctx.emit(ResultType.SUCCESS, "mailbox_modified", "alice@corp.com")
        ctx.flush_results()
        (row,) = _log_rows(store)
        assert row.user == "admin => alice@corp.com"
        assert row.role == "superadmin => user"
        ctx.end_dual_login()
        assert (ctx.username, ctx.role) == ("admin", Role.SUPERADMIN)

    def test_dual_login_requires_identity(self, ctx) -> None:
        with pytest.raises(RuntimeError):
            ctx.begin_dual_login("alice@corp.com", Role.USER)

    def test_flush_survives_storage_failure(self, broken_store) -> None:
        ctx = RequestContext(store=broken_store)
        ctx.emit(ResultType.DANGER, "login_failed")
        assert ctx.flush_results() == 0
        assert ctx.results == []

    def test_flush_nothing(self, ctx) -> None:
        assert ctx.flush_results() == 0

    def test_record_as_dict(self) -> None:
        record = ResultRecord(ResultType.SUCCESS, "logged_in_as", ["admin"], ["check_login", "admin", "*"])
        assert record.as_dict() == {"type": "success", "code": "logged_in_as", "args": ["admin"]}


class TestLastLogin:
    def test_newest_successful_login(self, verifier, store, passwords) -> None:
        first = RequestContext(store=store, remote_addr="198.51.100.1")
        verifier.check_login(first, "domadm", passwords["domadm"])
        first.flush_results()
        second = RequestContext(store=store, remote_addr="198.51.100.2")
        verifier.check_login(second, "domadm", passwords["domadm"])
        second.flush_results()
        failed = RequestContext(store=store, remote_addr="198.51.100.3")
        verifier.check_login(failed, "domadm", "wrong")
        failed.flush_results()

        entry = store.last_login("domadm")
        assert entry.remote == "198.51.100.2"
        assert entry.time > 0

    def test_second_factor_login_counts(self, verifier, store, passwords) -> None:
        secret = pyotp.random_base32()
        store.insert_tfa_factor(TfaFactor(username="admin", mechanism=Mechanism.TOTP, secret=secret))
        ctx = RequestContext(store=store, remote_addr="198.51.100.9")
        verifier.check_login(ctx, "admin", passwords["admin"])
        ctx.flush_results()
        assert store.last_login("admin") is None
        verifier.verify_tfa_login(ctx, TotpCode(pyotp.TOTP(secret).now()))
        ctx.flush_results()
        assert store.last_login("admin").remote == "198.51.100.9"

    def test_never_logged_in(self, store) -> None:
        assert store.last_login("alice@corp.com") is None
