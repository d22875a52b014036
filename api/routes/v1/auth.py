"""
api/routes/v1/auth.py -- Login, second factor, logout and self-service endpoints.

Routes:
  POST   /api/v1/auth/login              -- password login; 401 when rejected
  GET    /api/v1/auth/tfa/u2f/challenge  -- U2F sign requests for the pending login
  POST   /api/v1/auth/tfa/verify         -- complete a pending login
  POST   /api/v1/auth/logout             -- clear the session
  GET    /api/v1/auth/me                 -- current identity (requires auth)
  GET    /api/v1/auth/last-login         -- previous successful login (requires auth)
  POST   /api/v1/auth/password           -- mailbox password change (requires auth)
  GET    /api/v1/auth/tfa                -- own second factor (admin only)
  DELETE /api/v1/auth/tfa/{factor_id}    -- remove one own key (admin only)

Every handler flushes the request's result records to the log table before
answering. Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    LastLoginResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    OperationResponse,
    PasswordChangeRequest,
    ResultModel,
    TfaDescriptionResponse,
    TfaFactorRow,
    TfaVerifyRequest,
)
from auth.account import edit_user_account
from auth.context import SESSION_TFA_ID, RequestContext
from auth.dependencies import get_request_context, require_admin, require_authenticated
from auth.login import CredentialVerifier
from auth.models import LoginOutcome, LoginState, Mechanism
from auth.tfa import HotpCode, TotpCode, U2fAssertion, YubiOtpCode

router = APIRouter()

_RESPONSE_TYPES = {
    Mechanism.TOTP: TotpCode,
    Mechanism.U2F: U2fAssertion,
    Mechanism.YUBI_OTP: YubiOtpCode,
    Mechanism.HOTP: HotpCode,
}


def get_verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier


def _results(ctx: RequestContext) -> list[ResultModel]:
    results = [ResultModel(**r.as_dict()) for r in ctx.results]
    ctx.flush_results()
    return results


def _login_response(ctx: RequestContext, outcome: LoginOutcome) -> JSONResponse:
    body = LoginResponse(
        state=outcome.state, username=outcome.username, role=outcome.role, results=_results(ctx)
    ).model_dump(mode="json")
    resp = JSONResponse(status_code=401 if outcome.state == LoginState.REJECTED else 200, content=body)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(
    body: LoginRequest,
    ctx: RequestContext = Depends(get_request_context),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> JSONResponse:
    """Check a password against every privilege tier.

    A pending second factor answers 200 with state "pending_tfa"; the client
    then calls /auth/tfa/verify.
    """
    outcome = verifier.check_login(ctx, body.username, body.password)
    return _login_response(ctx, outcome)


@router.get("/auth/tfa/u2f/challenge")
def u2f_challenge(
    ctx: RequestContext = Depends(get_request_context),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> list[dict[str, str]]:
    pending = ctx.pending
    if pending is None or pending.mechanism != Mechanism.U2F:
        raise HTTPException(
            status_code=409,
            detail={"code": "no_pending_u2f_login", "message": "No U2F login is waiting for a second factor."},
        )
    return verifier.tfa.begin_u2f_authentication(ctx, pending.username)


@router.post("/auth/tfa/verify", response_model=LoginResponse)
def verify_tfa(
    body: TfaVerifyRequest,
    ctx: RequestContext = Depends(get_request_context),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> JSONResponse:
    pending = ctx.pending
    response_type = _RESPONSE_TYPES.get(pending.mechanism, TotpCode) if pending else TotpCode
    token = body.token if response_type is U2fAssertion or not isinstance(body.token, dict) else ""
    outcome = verifier.verify_tfa_login(ctx, response_type(token))
    return _login_response(ctx, outcome)


@router.post("/auth/logout")
def logout(
    ctx: RequestContext = Depends(get_request_context),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> JSONResponse:
    """End the session. Ends an active dual login too."""
    verifier.logout(ctx)
    return JSONResponse(content={"message": "Logged out."})


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: RequestContext = Depends(require_authenticated)) -> MeResponse:
    dual = ctx.dual_login
    return MeResponse(
        username=ctx.username,
        role=ctx.role,
        dual_login=dual["username"] if dual else None,
        tfa_id=ctx.session.get(SESSION_TFA_ID),
    )


@router.get("/auth/last-login", response_model=LastLoginResponse)
def last_login(ctx: RequestContext = Depends(require_authenticated)) -> LastLoginResponse:
    entry = ctx.store.last_login(ctx.username)
    if entry is None:
        return LastLoginResponse()
    return LastLoginResponse(remote=entry.remote, time=entry.time)


@router.post("/auth/password", response_model=OperationResponse)
def change_password(
    body: PasswordChangeRequest, ctx: RequestContext = Depends(require_authenticated)
) -> OperationResponse:
    ok = edit_user_account(ctx, body.old_password, body.new_password, body.new_password2)
    return OperationResponse(ok=ok, results=_results(ctx))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/tfa", response_model=TfaDescriptionResponse)
def describe_tfa(
    ctx: RequestContext = Depends(require_admin),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> TfaDescriptionResponse:
    description = verifier.tfa.describe(ctx.store, ctx.username)
    return TfaDescriptionResponse(
        name=description.name,
        pretty=description.pretty,
        factors=[TfaFactorRow(id=f.id, key_label=f.key_label, active=f.active) for f in description.factors],
    )


@router.delete("/auth/tfa/{factor_id}", response_model=OperationResponse)
def delete_tfa_key(
    factor_id: int,
    ctx: RequestContext = Depends(require_admin),
    verifier: CredentialVerifier = Depends(get_verifier),
) -> OperationResponse:
    ok = verifier.tfa.unset_tfa_key(ctx, factor_id)
    return OperationResponse(ok=ok, results=_results(ctx))
