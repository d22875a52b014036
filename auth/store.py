"""
auth/store.py -- SQLAlchemy Core persistence layer for the auth core.

Pattern: Repository + Data Mapper. MailAuthStore implements the
AccountRepository protocol from auth/repository.py; _row_to_account /
_row_to_factor are the mappers. The verifier, TFA registry and access checks
never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Errors:
  Every SQLAlchemyError is re-raised as repository.StorageError by _connect().
  The core only knows StorageError, never SQLAlchemy.

Transactions:
  Factor replacement on enrollment (purge + insert) runs inside one
  engine.begin() block, so a failure between the two statements cannot leave
  a user with zero factors.

Tables mirror the mail server's schema: admin (superadmin flag splits the
superadmin and domainadmin tiers), domain_admins (grants), mailbox, domain,
alias_domain, alias, tfa and logs.
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Account, LastLogin, Mechanism, ResultRecord, Role, TfaFactor
from auth.repository import FactorPurge, StorageError
from core.config import get_settings

# Mailbox kinds that are resources, not people. They can never log in.
_NON_LOGIN_KINDS = ("location", "thing", "group")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_admin = Table(
    "admin",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("password", Text, nullable=False),
    Column("superadmin", Integer, nullable=False, server_default="0"),
    Column("active", Integer, nullable=False, server_default="1"),
)

_domain_admins = Table(
    "domain_admins",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("domain", String(255), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
)

_mailbox = Table(
    "mailbox",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("password", Text, nullable=False),
    Column("domain", String(255), nullable=False),
    Column("kind", String(100), nullable=False, server_default=""),
    Column("active", Integer, nullable=False, server_default="1"),
)

_domain = Table(
    "domain",
    _metadata,
    Column("domain", String(255), primary_key=True),
    Column("active", Integer, nullable=False, server_default="1"),
)

_alias_domain = Table(
    "alias_domain",
    _metadata,
    Column("alias_domain", String(255), primary_key=True),
    Column("target_domain", String(255), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
)

_alias = Table(
    "alias",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("address", String(255), nullable=False, unique=True),
    Column("goto", Text, nullable=False, server_default=""),
    Column("domain", String(255), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
)

_tfa = Table(
    "tfa",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key_id", String(255), nullable=False, server_default="unidentified"),
    Column("username", String(255), nullable=False),
    Column("authmech", String(20), nullable=False),
    Column("secret", Text),  # totp secret / "client_id:api_key:modhex"
    Column("key_handle", Text),  # u2f only
    Column("public_key", Text),  # u2f only
    Column("certificate", Text),  # u2f only
    Column("counter", Integer, nullable=False, server_default="-1"),
    Column("active", Integer, nullable=False, server_default="1"),
)

_logs = Table(
    "logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(32), nullable=False),
    Column("task", String(6), nullable=False),
    Column("msg", Text, nullable=False),
    Column("call", Text, nullable=False),  # JSON list: [operation, username, ...]
    Column("user", String(255), nullable=False),
    Column("role", String(64), nullable=False),
    Column("remote", String(64), nullable=False),
    Column("time", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class MailAuthStore:
    """SQLAlchemy implementation of AccountRepository.

    Usage:
        store = MailAuthStore()
        store.create_admin("admin", hash_password("secret"), superadmin=True)
        rows = store.find_accounts_by_tier_and_username(Role.SUPERADMIN, "admin")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"could not initialise schema: {exc}") from exc

    @contextmanager
    def _connect(self, *, transaction: bool = False) -> Iterator[Connection]:
        """Yield a connection; translate driver failures into StorageError."""
        try:
            if transaction:
                with self.engine.begin() as conn:
                    yield conn
            else:
                with self.engine.connect() as conn:
                    yield conn
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Seeding (account management lives outside the core; these exist for
    # the CLI and for tests)
    # ------------------------------------------------------------------

    def create_admin(self, username: str, password_hash: str, superadmin: bool = False, active: bool = True) -> int:
        with self._connect(transaction=True) as conn:
            result = conn.execute(
                _admin.insert().values(
                    username=username,
                    password=password_hash,
                    superadmin=1 if superadmin else 0,
                    active=1 if active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def create_mailbox(
        self, username: str, password_hash: str, kind: str = "", active: bool = True, domain: str | None = None
    ) -> int:
        domain = domain or username.rsplit("@", 1)[-1]
        with self._connect(transaction=True) as conn:
            result = conn.execute(
                _mailbox.insert().values(
                    username=username, password=password_hash, domain=domain, kind=kind, active=1 if active else 0
                )
            )
            return result.inserted_primary_key[0]

    def create_domain(self, domain: str) -> None:
        with self._connect(transaction=True) as conn:
            conn.execute(_domain.insert().values(domain=domain))

    def create_alias_domain(self, alias_domain: str, target_domain: str) -> None:
        with self._connect(transaction=True) as conn:
            conn.execute(_alias_domain.insert().values(alias_domain=alias_domain, target_domain=target_domain))

    def create_alias(self, address: str, goto: str = "", domain: str | None = None) -> int:
        domain = domain or address.rsplit("@", 1)[-1]
        with self._connect(transaction=True) as conn:
            result = conn.execute(_alias.insert().values(address=address, goto=goto, domain=domain))
            return result.inserted_primary_key[0]

    def grant_domain_admin(self, username: str, domain: str, active: bool = True) -> None:
        with self._connect(transaction=True) as conn:
            conn.execute(_domain_admins.insert().values(username=username, domain=domain, active=1 if active else 0))

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_accounts_by_tier_and_username(self, tier: Role, username: str) -> list[Account]:
        """Return the active password rows for username in one privilege tier."""
        if tier == Role.USER:
            query = select(_mailbox.c.username, _mailbox.c.password, _mailbox.c.active).where(
                (_mailbox.c.username == username)
                & (_mailbox.c.active == 1)
                & (_mailbox.c.kind.notin_(_NON_LOGIN_KINDS))
            ).order_by(_mailbox.c.id)
        else:
            flag = 1 if tier == Role.SUPERADMIN else 0
            query = select(_admin.c.username, _admin.c.password, _admin.c.active).where(
                (_admin.c.username == username) & (_admin.c.superadmin == flag) & (_admin.c.active == 1)
            ).order_by(_admin.c.id)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(row, tier) for row in rows]

    def update_mailbox_password(self, username: str, password_hash: str) -> bool:
        with self._connect(transaction=True) as conn:
            result = conn.execute(
                _mailbox.update().where(_mailbox.c.username == username).values(password=password_hash)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Second factors
    # ------------------------------------------------------------------

    def find_tfa_factor(self, username: str) -> TfaFactor | None:
        """Return the first active factor; its mechanism is the user's login mechanism."""
        with self._connect() as conn:
            row = conn.execute(
                _tfa.select().where((_tfa.c.username == username) & (_tfa.c.active == 1)).order_by(_tfa.c.id)
            ).first()
        return _row_to_factor(row) if row is not None else None

    def list_tfa_factors(
        self, username: str, mechanism: Mechanism | None = None, active_only: bool = False
    ) -> list[TfaFactor]:
        query = _tfa.select().where(_tfa.c.username == username)
        if mechanism is not None:
            query = query.where(_tfa.c.authmech == mechanism.value)
        if active_only:
            query = query.where(_tfa.c.active == 1)
        with self._connect() as conn:
            rows = conn.execute(query.order_by(_tfa.c.id)).fetchall()
        return [_row_to_factor(r) for r in rows]

    def insert_tfa_factor(self, factor: TfaFactor) -> int:
        with self._connect(transaction=True) as conn:
            return _insert_factor(conn, factor)

    def delete_tfa_factors(self, username: str, purge: FactorPurge, keep: Mechanism | None = None) -> int:
        with self._connect(transaction=True) as conn:
            return _purge_factors(conn, username, purge, keep)

    def replace_tfa_factors(self, factor: TfaFactor, purge: FactorPurge) -> int:
        """Purge the owner's factors and insert factor atomically. Returns the new id."""
        with self._connect(transaction=True) as conn:
            _purge_factors(conn, factor.username, purge, factor.mechanism)
            return _insert_factor(conn, factor)

    def delete_tfa_factor(self, username: str, factor_id: int) -> bool:
        """Delete one factor. The username condition keeps users to their own keys."""
        with self._connect(transaction=True) as conn:
            result = conn.execute(_tfa.delete().where((_tfa.c.username == username) & (_tfa.c.id == factor_id)))
        return result.rowcount > 0

    def count_active_factors(self, username: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_tfa).where((_tfa.c.username == username) & (_tfa.c.active == 1))
            ).scalar()
        return result or 0

    def set_tfa_factors_active(self, username: str, active: bool) -> None:
        with self._connect(transaction=True) as conn:
            conn.execute(_tfa.update().where(_tfa.c.username == username).values(active=1 if active else 0))

    def update_u2f_counter(self, factor_id: int, counter: int) -> None:
        with self._connect(transaction=True) as conn:
            conn.execute(_tfa.update().where(_tfa.c.id == factor_id).values(counter=counter))

    # ------------------------------------------------------------------
    # Domain ownership
    # ------------------------------------------------------------------

    def domain_exists(self, name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(select(_domain.c.domain).where(_domain.c.domain == name)).first()
        return row is not None

    def alias_domain_target(self, name: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                select(_alias_domain.c.target_domain).where(_alias_domain.c.alias_domain == name)
            ).first()
        return row.target_domain if row is not None else None

    def alias_domains_for_target(self, target: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                select(_alias_domain.c.alias_domain)
                .where(_alias_domain.c.target_domain == target)
                .order_by(_alias_domain.c.alias_domain)
            ).fetchall()
        return [r.alias_domain for r in rows]

    def domain_admin_grant_exists(self, username: str, domain: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                select(_domain_admins.c.id).where(
                    (_domain_admins.c.username == username)
                    & (_domain_admins.c.domain == domain)
                    & (_domain_admins.c.active == 1)
                )
            ).first()
        return row is not None

    def mailbox_owner_domain(self, address: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(select(_mailbox.c.domain).where(_mailbox.c.username == address)).first()
        return row.domain if row is not None else None

    def alias_owner_domain(self, address: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(select(_alias.c.domain).where(_alias.c.address == address)).first()
        return row.domain if row is not None else None

    # ------------------------------------------------------------------
    # Result log
    # ------------------------------------------------------------------

    def insert_log(self, record: ResultRecord, task: str, user: str, role: str, remote: str) -> None:
        msg = record.code if not record.args else [record.code, *record.args]
        with self._connect(transaction=True) as conn:
            conn.execute(
                _logs.insert().values(
                    type=record.type.value,
                    task=task,
                    msg=json.dumps(msg, ensure_ascii=False, default=str),
                    call=json.dumps(record.call, ensure_ascii=False, default=str),
                    user=user,
                    role=role,
                    remote=remote,
                    time=int(time.time()),
                )
            )

    def last_login(self, username: str) -> LastLogin | None:
        """Remote address and time of the newest successful login (password or second factor)."""
        with self._connect() as conn:
            row = conn.execute(
                select(_logs.c.remote, _logs.c.time)
                .where(
                    func.json_extract(_logs.c.call, "$[0]").in_(("check_login", "verify_tfa_login"))
                    & (func.json_extract(_logs.c.call, "$[1]") == username)
                    & (_logs.c.type == "success")
                )
                .order_by(_logs.c.time.desc(), _logs.c.id.desc())
                .limit(1)
            ).first()
        return LastLogin(remote=row.remote, time=row.time) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement helpers shared by single-statement and transactional methods
# ---------------------------------------------------------------------------


def _insert_factor(conn: Connection, factor: TfaFactor) -> int:
    result = conn.execute(
        _tfa.insert().values(
            key_id=factor.key_label,
            username=factor.username,
            authmech=factor.mechanism.value,
            secret=factor.secret,
            key_handle=factor.key_handle,
            public_key=factor.public_key,
            certificate=factor.certificate,
            counter=factor.counter,
            active=1 if factor.active else 0,
        )
    )
    return result.inserted_primary_key[0]


def _purge_factors(conn: Connection, username: str, purge: FactorPurge, keep: Mechanism | None) -> int:
    condition = _tfa.c.username == username
    if purge == FactorPurge.OTHER_MECHANISMS:
        if keep is None:
            raise ValueError("OTHER_MECHANISMS purge needs the mechanism to keep")
        condition = condition & (_tfa.c.authmech != keep.value)
    result = conn.execute(_tfa.delete().where(condition))
    return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, tier: Role) -> Account:
    return Account(username=row.username, password_hash=row.password, role=tier, active=bool(row.active))


def _row_to_factor(row) -> TfaFactor:
    return TfaFactor(
        id=row.id,
        username=row.username,
        mechanism=Mechanism(row.authmech),
        key_label=row.key_id,
        active=bool(row.active),
        secret=row.secret,
        key_handle=row.key_handle,
        public_key=row.public_key,
        certificate=row.certificate,
        counter=row.counter,
    )
