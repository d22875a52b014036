"""
auth/passwords.py -- Password hash codec for the five stored hash formats.

Stored hashes are ASCII strings of the form "{TAG}payload". The tag is matched
case-insensitively and selects one of five schemes:

  {SSHA256}       base64(sha256(password + salt) + salt)   -- the only scheme we write
  {SSHA512}       base64(sha512(password + salt) + salt)
  {PLAIN-MD5}     md5(password) as lower-case hex           -- legacy, unsalted
  {SHA512-CRYPT}  crypt(3) "$6$salt$hash"
  {MD5-CRYPT}     a bcrypt hash. The tag name is historic: the stored value is
                  "$2y$..." and has never been raw MD5.

parse_hash() turns the string into one of the HashVariant dataclasses once, at
the storage boundary; verify_hash() dispatches on the variant type. Anything
that fails to parse (unknown tag, no tag, broken base64) verifies False -- the
codec never raises on bad stored data.

Libraries:
  bcrypt  -- direct usage for {MD5-CRYPT}, same as the rest of the project
             (no passlib wrapper for bcrypt: passlib's wrap-bug probe trips
             bcrypt 4.x on long inputs).
  passlib -- only for the SHA-512 crypt(3) algorithm. The stdlib crypt module
             is gone from current interpreters.

Layer rule: pure functions, no I/O. No imports from other auth/ modules.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from typing import Union

import bcrypt
from passlib.hash import sha512_crypt

_TAG_RE = re.compile(r"^\{(SSHA256|SSHA512|PLAIN-MD5|SHA512-CRYPT|MD5-CRYPT)\}", re.IGNORECASE)
_SHA512_CRYPT_RE = re.compile(r"\$6\$(.*)\$(.*)", re.IGNORECASE)

_SHA256_LEN = 32
_SHA512_LEN = 64


class HashParseError(ValueError):
    """The stored string is not one of the five supported hash formats."""


# ---------------------------------------------------------------------------
# Hash variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ssha256Hash:
    digest: bytes
    salt: bytes


@dataclass(frozen=True)
class Ssha512Hash:
    digest: bytes
    salt: bytes


@dataclass(frozen=True)
class PlainMd5Hash:
    hexdigest: str


@dataclass(frozen=True)
class Sha512CryptHash:
    salt: str  # may carry a "rounds=N$" prefix
    checksum: str

    @property
    def config(self) -> str:
        return f"$6${self.salt}${self.checksum}"


@dataclass(frozen=True)
class BcryptHash:
    value: str


HashVariant = Union[Ssha256Hash, Ssha512Hash, PlainMd5Hash, Sha512CryptHash, BcryptHash]


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    """Return a {SSHA256} hash of password with a fresh 16-hex-char salt.

    The salt is 8 random bytes rendered as hex and used *as text*: the digest
    covers password + salt-string, and the salt string itself is appended to
    the binary digest before base64 encoding.
    """
    salt = secrets.token_hex(8)
    digest = hashlib.sha256((password + salt).encode("utf-8")).digest()
    return "{SSHA256}" + base64.b64encode(digest + salt.encode("ascii")).decode("ascii")


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise HashParseError(f"invalid base64 payload: {exc}") from exc


def _split_salted(payload: str, digest_len: int) -> tuple[bytes, bytes]:
    raw = _b64decode(payload)
    if len(raw) < digest_len:
        raise HashParseError("payload shorter than the digest")
    return raw[:digest_len], raw[digest_len:]


def parse_hash(encoded: str) -> HashVariant:
    """Parse a stored "{TAG}payload" string into its HashVariant.

    Raises HashParseError for a missing or unsupported tag or a payload that
    cannot be decoded.
    """
    if not encoded:
        raise HashParseError("empty hash")
    match = _TAG_RE.match(encoded)
    if match is None:
        raise HashParseError("missing or unsupported hash tag")
    tag = match.group(1).upper()
    payload = encoded[match.end() :]

    if tag == "SSHA256":
        digest, salt = _split_salted(payload, _SHA256_LEN)
        return Ssha256Hash(digest=digest, salt=salt)
    if tag == "SSHA512":
        digest, salt = _split_salted(payload, _SHA512_LEN)
        return Ssha512Hash(digest=digest, salt=salt)
    if tag == "PLAIN-MD5":
        return PlainMd5Hash(hexdigest=payload)
    if tag == "SHA512-CRYPT":
        crypt_match = _SHA512_CRYPT_RE.search(payload)
        if crypt_match is None:
            raise HashParseError("no $6$salt$hash fragment")
        return Sha512CryptHash(salt=crypt_match.group(1), checksum=crypt_match.group(2))
    # MD5-CRYPT
    return BcryptHash(value=payload)


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


def _verify_variant(variant: HashVariant, password: str) -> bool:
    secret = password.encode("utf-8")
    if isinstance(variant, Ssha256Hash):
        return hmac.compare_digest(hashlib.sha256(secret + variant.salt).digest(), variant.digest)
    if isinstance(variant, Ssha512Hash):
        return hmac.compare_digest(hashlib.sha512(secret + variant.salt).digest(), variant.digest)
    if isinstance(variant, PlainMd5Hash):
        # Legacy scheme, plain equality.
        return hashlib.md5(secret).hexdigest() == variant.hexdigest  # noqa: S324
    if isinstance(variant, Sha512CryptHash):
        # passlib recomputes crypt(password, "$6$salt$") and compares in constant time.
        try:
            return sha512_crypt.verify(password, variant.config)
        except ValueError:
            return False
    if isinstance(variant, BcryptHash):
        try:
            return bcrypt.checkpw(secret, variant.value.encode("utf-8"))
        except ValueError:
            return False
    raise TypeError(f"unhandled hash variant: {type(variant).__name__}")


def verify_hash(encoded: str, password: str) -> bool:
    """Return True if password matches the stored hash string.

    Unknown or missing tags and undecodable payloads return False.
    """
    try:
        variant = parse_hash(encoded)
    except HashParseError:
        return False
    return _verify_variant(variant, password)
