"""
auth/yubico.py -- Yubico OTP helpers and the remote validation client.

A Yubico OTP is 44 modhex characters: a 12-character public device id
followed by 32 characters of encrypted payload. The device id is what ties an
OTP to an enrolled key; the payload is checked by the Yubico validation
service (YubiCloud or a self-hosted validation server) with the client id and
API key the administrator registered with.

The stored factor secret is "client_id:api_key:modhex_prefix".

Validation is a blocking HTTPS round trip done by yubico-client. It is not
retried here: a timeout or transport error is a failed verification.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from yubico_client import Yubico
from yubico_client.yubico_exceptions import YubicoError

logger = logging.getLogger("mailadmin.auth.yubico")

OTP_LENGTH = 44
DEVICE_ID_LENGTH = 12


class OtpValidationError(Exception):
    """The validation service rejected the OTP or could not be reached."""


def is_well_formed(otp: object) -> bool:
    return isinstance(otp, str) and len(otp) == OTP_LENGTH and otp.isascii() and otp.isalnum()


def device_id(otp: str) -> str:
    return otp[:DEVICE_ID_LENGTH]


def pack_secret(client_id: str, api_key: str, modhex: str) -> str:
    return f"{client_id}:{api_key}:{modhex}"


def unpack_secret(secret: str) -> tuple[str, str]:
    """Return (client_id, api_key) from a stored factor secret."""
    parts = secret.split(":")
    if len(parts) < 3:
        raise ValueError("stored Yubico secret is not client_id:api_key:modhex")
    return parts[0], parts[1]


class YubicoValidator:
    """Checks an OTP against the validation service with a given credential pair.

    client_factory builds the yubico-client object from (client_id, api_key);
    tests replace it with a fake.
    """

    def __init__(self, client_factory: Callable[[str, str], Any] = Yubico) -> None:
        self._client_factory = client_factory

    def verify(self, client_id: str, api_key: str, otp: str) -> None:
        try:
            client = self._client_factory(client_id, api_key)
            accepted = client.verify(otp)
        except YubicoError as exc:
            raise OtpValidationError(str(exc) or type(exc).__name__) from exc
        except Exception as exc:  # noqa: BLE001 -- transport failures are verification failures
            logger.warning("Yubico validation for device %s failed: %s", device_id(otp), exc)
            raise OtpValidationError(f"validation service error: {exc}") from exc
        if accepted is not True:
            raise OtpValidationError("OTP was not accepted")
