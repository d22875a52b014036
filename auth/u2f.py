"""
auth/u2f.py -- FIDO U2F (U2F_V2) server side: challenges, registration, authentication.

Flow:
  Registration
    1. registration_request(app_id) -> {"version", "challenge", "appId"}; stored in the session.
    2. The browser returns {"registrationData", "clientData"} (websafe base64).
    3. complete_registration() checks the client data (type + challenge), then
       the attestation signature over 0x00 | sha256(appId) | sha256(clientData)
       | keyHandle | publicKey with the attestation certificate's key.

  Authentication
    1. sign_requests(app_id, factors) -> one request per registered key handle,
       all sharing one challenge; stored in the session.
    2. The browser returns {"keyHandle", "clientData", "signatureData"}.
    3. complete_authentication() picks the request and factor for the key
       handle, checks the client data, verifies the signature with the stored
       public key, requires user presence, and requires the signature counter
       to be strictly greater than the stored one (replay protection).

Message parsing and ECDSA verification come from python-fido2's CTAP1 types;
this module only adds the challenge bookkeeping around them. A bad signature
surfaces from fido2 as either cryptography's InvalidSignature or fido2's own
InvalidAttestation, depending on the fido2 release. Every failure raises
U2fError.
"""

from __future__ import annotations

import hmac
import json
import secrets
import struct
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature
from fido2.attestation.base import InvalidAttestation
from fido2.ctap1 import RegistrationData, SignatureData
from fido2.utils import sha256, websafe_decode, websafe_encode

from auth.models import TfaFactor

U2F_VERSION = "U2F_V2"
_TYP_REGISTER = "navigator.id.finishEnrollment"
_TYP_SIGN = "navigator.id.getAssertion"

_PARSE_ERRORS = (KeyError, TypeError, ValueError, struct.error, InvalidSignature)


class U2fError(Exception):
    """A U2F registration or authentication response was rejected."""


@dataclass
class Registration:
    key_handle: str
    public_key: str
    certificate: str
    counter: int = -1


def _new_challenge() -> str:
    return websafe_encode(secrets.token_bytes(32))


def _load(response: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(response, str):
        try:
            response = json.loads(response)
        except ValueError as exc:
            raise U2fError("response is not valid JSON") from exc
    if not isinstance(response, dict):
        raise U2fError("response must be a JSON object")
    if response.get("errorCode"):
        raise U2fError(f"client reported error code {response['errorCode']}")
    return response


def _client_data(response: dict[str, Any], expected_typ: str, challenge: str) -> bytes:
    raw = websafe_decode(response["clientData"])
    data = json.loads(raw)
    if data.get("typ") != expected_typ:
        raise U2fError("wrong client data type")
    if not hmac.compare_digest(str(data.get("challenge", "")), challenge):
        raise U2fError("challenge mismatch")
    return raw


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def registration_request(app_id: str) -> dict[str, str]:
    return {"version": U2F_VERSION, "challenge": _new_challenge(), "appId": app_id}


def complete_registration(request: dict[str, str] | None, response: str | dict[str, Any]) -> Registration:
    if not request:
        raise U2fError("no registration challenge was issued")
    data = _load(response)
    try:
        client_data = _client_data(data, _TYP_REGISTER, request["challenge"])
        reg = RegistrationData(websafe_decode(data["registrationData"]))
        reg.verify(sha256(request["appId"].encode("utf-8")), sha256(client_data))
    except U2fError:
        raise
    except (InvalidSignature, InvalidAttestation) as exc:
        raise U2fError("attestation signature is invalid") from exc
    except _PARSE_ERRORS as exc:
        raise U2fError(f"malformed registration response: {exc}") from exc
    return Registration(
        key_handle=websafe_encode(reg.key_handle),
        public_key=websafe_encode(reg.public_key),
        certificate=websafe_encode(reg.certificate),
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def sign_requests(app_id: str, factors: list[TfaFactor]) -> list[dict[str, str]]:
    challenge = _new_challenge()
    return [
        {"version": U2F_VERSION, "challenge": challenge, "keyHandle": f.key_handle, "appId": app_id}
        for f in factors
        if f.key_handle
    ]


def complete_authentication(
    requests: list[dict[str, str]] | None, factors: list[TfaFactor], response: str | dict[str, Any]
) -> tuple[TfaFactor, int]:
    """Verify a sign response. Returns the matching factor and its new counter."""
    if not requests:
        raise U2fError("no authentication challenge was issued")
    data = _load(response)
    key_handle = data.get("keyHandle")
    request = next((r for r in requests if r.get("keyHandle") == key_handle), None)
    if request is None:
        raise U2fError("no challenge was issued for this key handle")
    factor = next((f for f in factors if f.key_handle == key_handle), None)
    if factor is None:
        raise U2fError("key handle is not registered")
    try:
        client_data = _client_data(data, _TYP_SIGN, request["challenge"])
        signature = SignatureData(websafe_decode(data["signatureData"]))
        signature.verify(
            sha256(request["appId"].encode("utf-8")),
            sha256(client_data),
            websafe_decode(factor.public_key),
        )
    except U2fError:
        raise
    except (InvalidSignature, InvalidAttestation) as exc:
        raise U2fError("signature is invalid") from exc
    except _PARSE_ERRORS as exc:
        raise U2fError(f"malformed authentication response: {exc}") from exc
    if not signature.user_presence & 0x01:
        raise U2fError("user presence was not asserted")
    if signature.counter <= factor.counter:
        raise U2fError("signature counter did not increase")
    return factor, signature.counter
