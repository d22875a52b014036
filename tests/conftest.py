"""
tests/conftest.py -- Shared fixtures for the mail-admin auth core tests.

This module provides:
  - store / shared_store: in-memory MailAuthStore seeded with every privilege tier, domains,
    an alias domain, aliases and domain-admin grants
  - notifier: records fail-ban lines instead of publishing to Redis
  - sleeps / throttle: a LoginThrottle whose stall is recorded, never slept
  - yubico_client: fake yubico-client factory (no HTTPS round trip)
  - tfa / verifier: TfaRegistry and CredentialVerifier wired to the fakes
  - broken_store / recording_store: repositories that fail on, or record, every lookup
  - ctx: a fresh RequestContext with a plain-dict session
  - SoftU2fKey: a software U2F authenticator built on real P-256 keys

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.

Seeded accounts (password in parentheses):
  admin            superadmin   (admin-pass)
  domadm           domainadmin  (domadm-pass), grant on corp.com
  aliasadm         domainadmin  (aliasadm-pass), grant on corp-alias.com only
  alice@corp.com   mailbox user (alice-pass)
  bob@other.com    mailbox user (bob-pass)
  room@corp.com    mailbox of kind "location" (room-pass), cannot log in
"""

from __future__ import annotations

import datetime
import json
import os
import struct
import uuid
from collections.abc import Generator

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from fido2.utils import sha256, websafe_encode

from auth.context import RequestContext
from auth.login import CredentialVerifier
from auth.passwords import hash_password
from auth.repository import StorageError
from auth.store import MailAuthStore
from auth.tfa import TfaRegistry
from auth.throttle import LoginThrottle
from auth.yubico import YubicoValidator

APP_ID = "https://mail.corp.com"
REMOTE = "203.0.113.5"

PASSWORDS = {
    "admin": "admin-pass",
    "domadm": "domadm-pass",
    "aliasadm": "aliasadm-pass",
    "alice@corp.com": "alice-pass",
    "bob@other.com": "bob-pass",
    "room@corp.com": "room-pass",
}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def seed_store(store: MailAuthStore) -> MailAuthStore:
    store.create_admin("admin", hash_password(PASSWORDS["admin"]), superadmin=True)
    store.create_admin("domadm", hash_password(PASSWORDS["domadm"]))
    store.create_admin("aliasadm", hash_password(PASSWORDS["aliasadm"]))
    store.create_domain("corp.com")
    store.create_domain("other.com")
    store.create_alias_domain("corp-alias.com", "corp.com")
    store.grant_domain_admin("domadm", "corp.com")
    store.grant_domain_admin("aliasadm", "corp-alias.com")
    store.create_mailbox("alice@corp.com", hash_password(PASSWORDS["alice@corp.com"]))
    store.create_mailbox("bob@other.com", hash_password(PASSWORDS["bob@other.com"]))
    store.create_mailbox("room@corp.com", hash_password(PASSWORDS["room@corp.com"]), kind="location")
    store.create_alias("sales@corp.com", goto="alice@corp.com")
    store.create_alias("info@other.com", goto="bob@other.com")
    return store


@pytest.fixture
def store() -> Generator[MailAuthStore, None, None]:
    s = seed_store(MailAuthStore("sqlite:///:memory:"))
    yield s
    s.close()


@pytest.fixture
def shared_store() -> Generator[MailAuthStore, None, None]:
    """Seeded store on a named shared-memory database.

    TestClient runs route handlers in a thread pool. Named URIs let every
    thread see the same in-memory database, where plain ':memory:' would
    give each thread a blank schema.
    """
    s = seed_store(MailAuthStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"))
    yield s
    s.close()


class BrokenStore:
    """A repository whose every call fails like an unreachable database."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise StorageError(f"{name}: database is unavailable")

        return fail


@pytest.fixture
def broken_store() -> BrokenStore:
    return BrokenStore()


class RecordingStore:
    """A repository that only records which of its methods were looked up."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        self.calls.append(name)

        def record(*args, **kwargs):
            raise AssertionError(f"{name} reached the repository")

        return record


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def failed_login(self, username: str, remote_addr: str) -> None:
        self.calls.append((username, remote_addr))


class FakeYubicoClient:
    """Stands in for yubico_client.Yubico. outcome is True, False or an exception."""

    def __init__(self, client_id: str, api_key: str, outcome=True) -> None:
        self.client_id = client_id
        self.api_key = api_key
        self.outcome = outcome
        self.verified: list[str] = []

    def verify(self, otp: str):
        self.verified.append(otp)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeYubicoFactory:
    def __init__(self) -> None:
        self.outcome = True
        self.clients: list[FakeYubicoClient] = []

    def __call__(self, client_id: str, api_key: str) -> FakeYubicoClient:
        client = FakeYubicoClient(client_id, api_key, self.outcome)
        self.clients.append(client)
        return client


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def throttle(sleeps: list[float]) -> LoginThrottle:
    return LoginThrottle(step=0.5, sleep=sleeps.append)


@pytest.fixture
def yubico_client() -> FakeYubicoFactory:
    return FakeYubicoFactory()


@pytest.fixture
def tfa(yubico_client: FakeYubicoFactory) -> TfaRegistry:
    return TfaRegistry(validator=YubicoValidator(client_factory=yubico_client), app_id=APP_ID, totp_window=1)


@pytest.fixture
def verifier(tfa: TfaRegistry, throttle: LoginThrottle) -> CredentialVerifier:
    return CredentialVerifier(tfa=tfa, throttle=throttle)


@pytest.fixture
def ctx(store: MailAuthStore, notifier: RecordingNotifier) -> RequestContext:
    return RequestContext(store=store, session={}, remote_addr=REMOTE, notifier=notifier)


# ---------------------------------------------------------------------------
# Software U2F authenticator
# ---------------------------------------------------------------------------


def _public_bytes(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.public_key().public_bytes(serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint)


def _self_signed_certificate(key: ec.EllipticCurvePrivateKey) -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Soft U2F attestation")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


class SoftU2fKey:
    """Produces U2F_V2 registration and sign responses the way a browser relays them."""

    def __init__(self) -> None:
        self.attestation_key = ec.generate_private_key(ec.SECP256R1())
        self.certificate = _self_signed_certificate(self.attestation_key)
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.key_handle = os.urandom(32)
        self.counter = 0

    @property
    def public_key(self) -> bytes:
        return _public_bytes(self.key)

    @property
    def websafe_key_handle(self) -> str:
        return websafe_encode(self.key_handle)

    @staticmethod
    def _client_data(typ: str, challenge: str) -> bytes:
        return json.dumps({"typ": typ, "challenge": challenge, "origin": APP_ID}).encode("utf-8")

    def register(self, request: dict, typ: str = "navigator.id.finishEnrollment") -> dict:
        client_data = self._client_data(typ, request["challenge"])
        signed = (
            b"\x00"
            + sha256(request["appId"].encode("utf-8"))
            + sha256(client_data)
            + self.key_handle
            + self.public_key
        )
        signature = self.attestation_key.sign(signed, ec.ECDSA(hashes.SHA256()))
        registration = (
            b"\x05"
            + self.public_key
            + bytes([len(self.key_handle)])
            + self.key_handle
            + self.certificate
            + signature
        )
        return {
            "version": "U2F_V2",
            "registrationData": websafe_encode(registration),
            "clientData": websafe_encode(client_data),
        }

    def sign(self, requests: list[dict], counter: int | None = None, presence: int = 1) -> dict:
        request = next(r for r in requests if r["keyHandle"] == self.websafe_key_handle)
        if counter is None:
            self.counter += 1
            counter = self.counter
        client_data = self._client_data("navigator.id.getAssertion", request["challenge"])
        header = bytes([presence]) + struct.pack(">I", counter)
        signature = self.key.sign(
            sha256(request["appId"].encode("utf-8")) + header + sha256(client_data), ec.ECDSA(hashes.SHA256())
        )
        return {
            "keyHandle": self.websafe_key_handle,
            "clientData": websafe_encode(client_data),
            "signatureData": websafe_encode(header + signature),
        }


@pytest.fixture
def make_u2f_key():
    """Factory for fresh software authenticators: key = make_u2f_key()."""
    return SoftU2fKey


@pytest.fixture
def passwords() -> dict[str, str]:
    return dict(PASSWORDS)
