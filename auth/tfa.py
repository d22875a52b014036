"""
auth/tfa.py -- Second-factor enrollment, verification and description.

Mechanisms form a closed set (auth.models.Mechanism). Each has its own
enrollment payload and its own login response payload, modelled as frozen
dataclasses; TfaRegistry has one dispatch function per operation (_enroll,
_verify_factor, describe) and an unknown payload type there is a programming
error (TypeError), not a user-facing failure.

Per-mechanism rules:
  none      enroll deletes every factor of the user; verify always fails.
  totp      enroll needs a correct code for the submitted secret and then
            replaces every factor of the user. 30 s steps, +-TOTP_VALID_WINDOW.
  u2f       enroll consumes the session's registration challenge, deletes the
            user's factors of *other* mechanisms and adds the key: several U2F
            keys per user accumulate. Login requires an increasing counter.
  yubi_otp  enroll validates the OTP remotely with the administrator's client
            id/api key and replaces the user's factors (other mechanisms and
            other devices; a re-enrolled device replaces its old entry).
  hotp      recognised but never implemented: enroll and verify fail.

The asymmetry between u2f (accumulates) and totp/yubi_otp (purge) is
intentional product behaviour.

Expected failures are reported as result records on the RequestContext and a
False/None return; only StorageError from the repository is caught here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

import pyotp

from auth import u2f, yubico
from auth.context import SESSION_U2F_REGISTER, SESSION_U2F_SIGN, RequestContext
from auth.models import ADMIN_ROLES, Mechanism, ResultType, Role, TfaDescription, TfaFactor
from auth.passwords import verify_hash
from auth.repository import AccountRepository, FactorPurge, StorageError
from auth.validation import is_valid_username
from core.config import get_settings

logger = logging.getLogger("mailadmin.auth.tfa")

PRETTY_NAMES: dict[Mechanism, str] = {
    Mechanism.NONE: "-",
    Mechanism.TOTP: "Time-based OTP",
    Mechanism.U2F: "Fido U2F",
    Mechanism.YUBI_OTP: "Yubico OTP",
    Mechanism.HOTP: "HMAC-based OTP",
}

# ---------------------------------------------------------------------------
# Enrollment payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoneEnrollment:
    mechanism = Mechanism.NONE


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    confirm_code: str
    key_label: str = "unidentified"
    mechanism = Mechanism.TOTP


@dataclass(frozen=True)
class U2fEnrollment:
    response: Union[str, dict]
    key_label: str = "unidentified"
    mechanism = Mechanism.U2F


@dataclass(frozen=True)
class YubiOtpEnrollment:
    otp: str
    client_id: str
    api_key: str
    key_label: str = "unidentified"
    mechanism = Mechanism.YUBI_OTP


@dataclass(frozen=True)
class HotpEnrollment:
    key_label: str = "unidentified"
    mechanism = Mechanism.HOTP


Enrollment = Union[NoneEnrollment, TotpEnrollment, U2fEnrollment, YubiOtpEnrollment, HotpEnrollment]

# ---------------------------------------------------------------------------
# Login responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TotpCode:
    code: str


@dataclass(frozen=True)
class U2fAssertion:
    response: Union[str, dict]


@dataclass(frozen=True)
class YubiOtpCode:
    otp: str


@dataclass(frozen=True)
class HotpCode:
    code: str


TfaResponse = Union[TotpCode, U2fAssertion, YubiOtpCode, HotpCode]


@dataclass
class TotpSetup:
    secret: str
    uri: str  # otpauth:// provisioning URI for the authenticator app


def _parse_factor_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value > 0:
        return value
    return None


class TfaRegistry:
    def __init__(
        self,
        validator: yubico.YubicoValidator | None = None,
        app_id: str | None = None,
        totp_window: int | None = None,
        totp_issuer: str | None = None,
    ) -> None:
        settings = get_settings()
        self.validator = validator or yubico.YubicoValidator()
        self.app_id = app_id or settings.u2f_app_id
        self.totp_window = totp_window if totp_window is not None else settings.totp_valid_window
        self.totp_issuer = totp_issuer or settings.totp_issuer

    # ------------------------------------------------------------------
    # Describe
    # ------------------------------------------------------------------

    @staticmethod
    def active_mechanism(store: AccountRepository, username: str) -> Mechanism:
        """Mechanism of the user's first active factor. StorageError propagates."""
        factor = store.find_tfa_factor(username)
        return factor.mechanism if factor is not None else Mechanism.NONE

    def describe(self, store: AccountRepository, username: str) -> TfaDescription:
        """Report the user's active mechanism and its factors.

        A listing failure degrades to "none" rather than failing the page.
        """
        try:
            mechanism = self.active_mechanism(store, username)
            if mechanism in (Mechanism.NONE, Mechanism.HOTP):
                factors = []
            else:
                factors = store.list_tfa_factors(username, mechanism)
        except StorageError as exc:
            logger.warning("Could not list factors for %s: %s", username, exc)
            mechanism, factors = Mechanism.NONE, []
        return TfaDescription(name=mechanism, pretty=PRETTY_NAMES[mechanism], factors=factors)

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def new_totp_setup(self, username: str) -> TotpSetup:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name=self.totp_issuer)
        return TotpSetup(secret=secret, uri=uri)

    def begin_u2f_registration(self, ctx: RequestContext) -> dict[str, str]:
        request = u2f.registration_request(self.app_id)
        ctx.session[SESSION_U2F_REGISTER] = request
        return request

    def begin_u2f_authentication(self, ctx: RequestContext, username: str) -> list[dict[str, str]]:
        try:
            factors = ctx.store.list_tfa_factors(username, Mechanism.U2F, active_only=True)
        except StorageError as exc:
            logger.warning("Could not list U2F keys for %s: %s", username, exc)
            factors = []
        requests = u2f.sign_requests(self.app_id, factors)
        ctx.session[SESSION_U2F_SIGN] = requests
        return requests

    # ------------------------------------------------------------------
    # Enroll
    # ------------------------------------------------------------------

    def set_tfa(self, ctx: RequestContext, enrollment: Enrollment, confirm_password: str) -> bool:
        """Enroll a factor for the signed-in admin after re-confirming their password."""
        username, role = ctx.username, ctx.role
        call = [
            "set_tfa",
            {"tfa_method": enrollment.mechanism.value, "key_id": getattr(enrollment, "key_label", None)},
            "*",
        ]
        if role not in ADMIN_ROLES or not is_valid_username(username):
            ctx.emit(ResultType.DANGER, "access_denied", call=call)
            return False
        try:
            rows = ctx.store.find_accounts_by_tier_and_username(role, username)
            if not any(verify_hash(row.password_hash, confirm_password) for row in rows):
                ctx.emit(ResultType.DANGER, "access_denied", call=call)
                return False
            return self._enroll(ctx, username, enrollment, call)
        except StorageError as exc:
            logger.error("Storage failure enrolling %s for %s: %s", enrollment.mechanism.value, username, exc)
            ctx.emit(ResultType.DANGER, "storage_error", call=call)
            return False

    def _enroll(self, ctx: RequestContext, username: str, enrollment: Enrollment, call: list) -> bool:
        store = ctx.store
        if isinstance(enrollment, NoneEnrollment):
            store.delete_tfa_factors(username, FactorPurge.ALL)

        elif isinstance(enrollment, TotpEnrollment):
            if not self._totp_matches(enrollment.secret, enrollment.confirm_code):
                ctx.emit(ResultType.DANGER, "totp_verification_failed", call=call)
                return False
            factor = TfaFactor(
                username=username, mechanism=Mechanism.TOTP, key_label=enrollment.key_label, secret=enrollment.secret
            )
            store.replace_tfa_factors(factor, FactorPurge.ALL)

        elif isinstance(enrollment, U2fEnrollment):
            request = ctx.session.pop(SESSION_U2F_REGISTER, None)
            try:
                reg = u2f.complete_registration(request, enrollment.response)
            except u2f.U2fError as exc:
                ctx.emit(ResultType.DANGER, "u2f_verification_failed", str(exc), call=call)
                return False
            factor = TfaFactor(
                username=username,
                mechanism=Mechanism.U2F,
                key_label=enrollment.key_label,
                key_handle=reg.key_handle,
                public_key=reg.public_key,
                certificate=reg.certificate,
                counter=reg.counter,
            )
            store.replace_tfa_factors(factor, FactorPurge.OTHER_MECHANISMS)

        elif isinstance(enrollment, YubiOtpEnrollment):
            if not yubico.is_well_formed(enrollment.otp):
                ctx.emit(ResultType.DANGER, "tfa_token_invalid", call=call)
                return False
            try:
                self.validator.verify(enrollment.client_id, enrollment.api_key, enrollment.otp)
            except yubico.OtpValidationError as exc:
                ctx.emit(ResultType.DANGER, "yotp_verification_failed", str(exc), call=call)
                return False
            modhex = yubico.device_id(enrollment.otp)
            factor = TfaFactor(
                username=username,
                mechanism=Mechanism.YUBI_OTP,
                key_label=enrollment.key_label,
                secret=yubico.pack_secret(enrollment.client_id, enrollment.api_key, modhex),
            )
            store.replace_tfa_factors(factor, FactorPurge.ALL)

        elif isinstance(enrollment, HotpEnrollment):
            ctx.emit(ResultType.DANGER, "hotp_verification_failed", call=call)
            return False

        else:
            raise TypeError(f"unhandled enrollment type: {type(enrollment).__name__}")

        ctx.emit(ResultType.SUCCESS, "object_modified", username, call=call)
        return True

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, ctx: RequestContext, username: str, response: TfaResponse) -> int | None:
        """Check a login response against the user's active mechanism.

        Returns the id of the factor that verified, or None.
        """
        call = ["verify_tfa_login", username, "*"]
        try:
            mechanism = self.active_mechanism(ctx.store, username)
            return self._verify_factor(ctx, username, mechanism, response, call)
        except StorageError as exc:
            logger.error("Storage failure verifying second factor for %s: %s", username, exc)
            ctx.emit(ResultType.DANGER, "storage_error", call=call)
            return None

    def _verify_factor(
        self, ctx: RequestContext, username: str, mechanism: Mechanism, response: TfaResponse, call: list
    ) -> int | None:
        store = ctx.store
        if mechanism == Mechanism.YUBI_OTP:
            otp = response.otp if isinstance(response, YubiOtpCode) else None
            if not yubico.is_well_formed(otp):
                ctx.emit(ResultType.DANGER, "yotp_verification_failed", "token length error", call=call)
                return None
            modhex = yubico.device_id(otp)
            factor = next(
                (f for f in store.list_tfa_factors(username, Mechanism.YUBI_OTP, active_only=True) if f.modhex == modhex),
                None,
            )
            if factor is None:
                ctx.emit(ResultType.DANGER, "yotp_verification_failed", "unknown device", call=call)
                return None
            try:
                client_id, api_key = yubico.unpack_secret(factor.secret)
                self.validator.verify(client_id, api_key, otp)
            except (ValueError, yubico.OtpValidationError) as exc:
                ctx.emit(ResultType.DANGER, "yotp_verification_failed", str(exc), call=call)
                return None
            ctx.emit(ResultType.SUCCESS, "verified_yotp_login", call=call)
            return factor.id

        if mechanism == Mechanism.U2F:
            requests = ctx.session.pop(SESSION_U2F_SIGN, None)
            if not isinstance(response, U2fAssertion):
                ctx.emit(ResultType.DANGER, "u2f_verification_failed", "unexpected response type", call=call)
                return None
            factors = store.list_tfa_factors(username, Mechanism.U2F, active_only=True)
            try:
                factor, counter = u2f.complete_authentication(requests, factors, response.response)
            except u2f.U2fError as exc:
                ctx.emit(ResultType.DANGER, "u2f_verification_failed", str(exc), call=call)
                return None
            store.update_u2f_counter(factor.id, counter)
            ctx.emit(ResultType.SUCCESS, "verified_u2f_login", call=call)
            return factor.id

        if mechanism == Mechanism.HOTP:
            # Known incomplete mechanism: there is no HOTP verifier.
            ctx.emit(ResultType.DANGER, "hotp_verification_failed", call=call)
            return None

        if mechanism == Mechanism.TOTP:
            code = response.code if isinstance(response, TotpCode) else None
            for factor in store.list_tfa_factors(username, Mechanism.TOTP, active_only=True):
                if code is not None and self._totp_matches(factor.secret, code):
                    ctx.emit(ResultType.SUCCESS, "verified_totp_login", call=call)
                    return factor.id
            ctx.emit(ResultType.DANGER, "totp_verification_failed", call=call)
            return None

        if mechanism == Mechanism.NONE:
            ctx.emit(ResultType.DANGER, "unknown_tfa_method", call=call)
            return None

        raise TypeError(f"unhandled mechanism: {mechanism!r}")

    def _totp_matches(self, secret: str | None, code: str) -> bool:
        if not secret or not code:
            return False
        try:
            return pyotp.TOTP(secret).verify(str(code).strip(), valid_window=self.totp_window)
        except (TypeError, ValueError):
            return False

    # ------------------------------------------------------------------
    # Unset / suspend / reactivate
    # ------------------------------------------------------------------

    def unset_tfa_key(self, ctx: RequestContext, factor_id: object) -> bool:
        """Delete one of the signed-in admin's own factors, keeping at least one active."""
        username, role = ctx.username, ctx.role
        call = ["unset_tfa_key", {"unset_tfa_key": factor_id}]
        key_id = _parse_factor_id(factor_id)
        if role not in ADMIN_ROLES or not is_valid_username(username) or key_id is None:
            ctx.emit(ResultType.DANGER, "access_denied", call=call)
            return False
        try:
            if ctx.store.count_active_factors(username) == 1:
                ctx.emit(ResultType.DANGER, "last_key", call=call)
                return False
            if not ctx.store.delete_tfa_factor(username, key_id):
                ctx.emit(ResultType.DANGER, "access_denied", call=call)
                return False
        except StorageError as exc:
            logger.error("Storage failure removing factor %s of %s: %s", key_id, username, exc)
            ctx.emit(ResultType.DANGER, "storage_error", call=call)
            return False
        ctx.emit(ResultType.SUCCESS, "object_modified", username, call=call)
        return True

    def skip_next_login(self, ctx: RequestContext, username: str) -> bool:
        """Let username log in once without a second factor (superadmin only).

        The factors are only deactivated; the next successful password login
        reactivates them.
        """
        call = ["skip_next_login", username]
        if ctx.role != Role.SUPERADMIN or not is_valid_username(username):
            ctx.emit(ResultType.DANGER, "access_denied", call=call)
            return False
        try:
            ctx.store.set_tfa_factors_active(username, False)
        except StorageError as exc:
            logger.error("Storage failure suspending factors of %s: %s", username, exc)
            ctx.emit(ResultType.DANGER, "storage_error", call=call)
            return False
        ctx.emit(ResultType.SUCCESS, "object_modified", username, call=call)
        return True

    @staticmethod
    def reactivate(store: AccountRepository, username: str) -> None:
        store.set_tfa_factors_active(username, True)
