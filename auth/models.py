"""
auth/models.py -- Domain dataclasses and enums for the auth core.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, the verifier and the TFA registry do the work.

Enums subclass str so values compare equal to the raw strings stored in the
database and in the session ("superadmin" == Role.SUPERADMIN). When formatting
an enum into a string use .value -- str() on a str-mixin Enum is not the value
on current interpreters.

Layer rule: no imports from core/ or any other auth/ module.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    SUPERADMIN = "superadmin"
    DOMAINADMIN = "domainadmin"
    USER = "user"


# Privilege tiers in the order a login consults them. The first tier with a
# verifying password row wins; lower tiers are never consulted after a match.
TIER_ORDER: tuple[Role, ...] = (Role.SUPERADMIN, Role.DOMAINADMIN, Role.USER)

ADMIN_ROLES: tuple[Role, ...] = (Role.SUPERADMIN, Role.DOMAINADMIN)


class Mechanism(str, Enum):
    NONE = "none"
    TOTP = "totp"
    U2F = "u2f"
    YUBI_OTP = "yubi_otp"
    HOTP = "hotp"  # recognised, but has no working verify path


class ResultType(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    DANGER = "danger"


class LoginState(str, Enum):
    AUTHENTICATED = "authenticated"
    PENDING_TFA = "pending_tfa"
    REJECTED = "rejected"


@dataclass
class Account:
    """One password row of one privilege tier.

    The same username may appear in several tiers (and, for migration reasons,
    several times within a tier). role records which tier the row came from.
    """

    username: str
    password_hash: str
    role: Role
    active: bool = True


@dataclass
class TfaFactor:
    """One enrolled second-factor credential.

    Which material fields are populated depends on the mechanism:
      totp     -- secret (base32 shared secret)
      u2f      -- key_handle, public_key, certificate, counter
      yubi_otp -- secret ("client_id:api_key:modhex_prefix")

    counter starts at -1 so the first authentication (counter 0) of a freshly
    registered U2F key is accepted.
    """

    username: str
    mechanism: Mechanism
    key_label: str = "unidentified"
    id: int | None = None
    active: bool = True
    secret: str | None = None
    key_handle: str | None = None  # websafe base64
    public_key: str | None = None  # websafe base64, 65-byte uncompressed P-256 point
    certificate: str | None = None  # websafe base64 DER attestation certificate
    counter: int = -1

    @property
    def modhex(self) -> str | None:
        """Yubico device id: the last 12 characters of the stored secret."""
        if self.mechanism != Mechanism.YUBI_OTP or not self.secret:
            return None
        return self.secret[-12:]


@dataclass
class PendingAuth:
    """A principal whose password verified but whose second factor is outstanding.

    Lives in the session between check_login() and verify_tfa_login(). The
    session may be a signed cookie, so it is stored as a plain dict.
    """

    username: str
    role: Role
    mechanism: Mechanism

    def to_session(self) -> dict[str, str]:
        return {"username": self.username, "role": self.role.value, "mechanism": self.mechanism.value}

    @classmethod
    def from_session(cls, data: dict[str, Any]) -> PendingAuth:
        return cls(username=data["username"], role=Role(data["role"]), mechanism=Mechanism(data["mechanism"]))


@dataclass
class ResultRecord:
    """The observable outcome of one core operation.

    type/code/args is the whole public contract: presentation and localisation
    of code is the caller's job. call is the log trail (operation name,
    username, masked arguments) and only reaches the log sink.
    """

    type: ResultType
    code: str
    args: list[Any] = field(default_factory=list)
    call: list[Any] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "code": self.code, "args": list(self.args)}


@dataclass
class LoginOutcome:
    state: LoginState
    result: ResultRecord
    username: str | None = None
    role: Role | None = None

    @property
    def authenticated(self) -> bool:
        return self.state == LoginState.AUTHENTICATED


@dataclass
class TfaDescription:
    """What get_tfa() reports about a user's active second factor."""

    name: Mechanism
    pretty: str
    factors: list[TfaFactor] = field(default_factory=list)


@dataclass
class LastLogin:
    remote: str
    time: int  # unix timestamp
