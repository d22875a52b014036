"""
auth/repository.py -- The storage interface the auth core consumes.

The core never opens connections or runs SQL. It talks to an
AccountRepository; auth/store.py ships the SQLAlchemy implementation and
tests may substitute anything with the same methods.

Every implementation must raise StorageError (and only StorageError) for a
failure of the underlying store. The core catches it at each public operation
and turns it into a "storage_error" result record.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from auth.models import Account, LastLogin, Mechanism, ResultRecord, Role, TfaFactor


class StorageError(Exception):
    """The repository could not complete a read or write."""


class FactorPurge(str, Enum):
    """Which of a user's existing factors an enrollment removes."""

    ALL = "all"
    OTHER_MECHANISMS = "other_mechanisms"


class AccountRepository(Protocol):
    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_accounts_by_tier_and_username(self, tier: Role, username: str) -> list[Account]:
        """Active password rows of one tier for username (possibly several)."""
        ...

    def update_mailbox_password(self, username: str, password_hash: str) -> bool: ...

    # ------------------------------------------------------------------
    # Second factors
    # ------------------------------------------------------------------

    def find_tfa_factor(self, username: str) -> TfaFactor | None:
        """The first active factor of username, which decides the login mechanism."""
        ...

    def list_tfa_factors(
        self, username: str, mechanism: Mechanism | None = None, active_only: bool = False
    ) -> list[TfaFactor]: ...

    def insert_tfa_factor(self, factor: TfaFactor) -> int: ...

    def delete_tfa_factors(self, username: str, purge: FactorPurge, keep: Mechanism | None = None) -> int: ...

    def replace_tfa_factors(self, factor: TfaFactor, purge: FactorPurge) -> int:
        """Purge and insert in one transaction. Returns the new factor id."""
        ...

    def delete_tfa_factor(self, username: str, factor_id: int) -> bool: ...

    def count_active_factors(self, username: str) -> int: ...

    def set_tfa_factors_active(self, username: str, active: bool) -> None: ...

    def update_u2f_counter(self, factor_id: int, counter: int) -> None: ...

    # ------------------------------------------------------------------
    # Domain ownership
    # ------------------------------------------------------------------

    def domain_exists(self, name: str) -> bool: ...

    def alias_domain_target(self, name: str) -> str | None: ...

    def alias_domains_for_target(self, target: str) -> list[str]: ...

    def domain_admin_grant_exists(self, username: str, domain: str) -> bool: ...

    def mailbox_owner_domain(self, address: str) -> str | None: ...

    def alias_owner_domain(self, address: str) -> str | None: ...

    # ------------------------------------------------------------------
    # Result log
    # ------------------------------------------------------------------

    def insert_log(self, record: ResultRecord, task: str, user: str, role: str, remote: str) -> None: ...

    def last_login(self, username: str) -> LastLogin | None: ...
