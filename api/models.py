"""
API request and response models for the mail-admin auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import LoginState, Mechanism, ResultType, Role

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class TfaVerifyRequest(BaseModel):
    """Second-factor response for a pending login.

    token is a TOTP code, a Yubico OTP, or the U2F sign response (object or
    JSON string), depending on the pending principal's mechanism.
    """

    token: Union[str, dict[str, Any]]


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(max_length=1024)
    new_password: str = Field(max_length=1024)
    new_password2: str = Field(max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ResultModel(BaseModel):
    type: ResultType
    code: str
    args: list[Any] = Field(default_factory=list)


class LoginResponse(BaseModel):
    state: LoginState
    username: Optional[str] = None
    role: Optional[Role] = None
    results: list[ResultModel] = Field(default_factory=list)


class OperationResponse(BaseModel):
    ok: bool
    results: list[ResultModel] = Field(default_factory=list)


class MeResponse(BaseModel):
    username: str
    role: Role
    dual_login: Optional[str] = None
    tfa_id: Optional[int] = None


class TfaFactorRow(BaseModel):
    id: Optional[int]
    key_label: str
    active: bool


class TfaDescriptionResponse(BaseModel):
    name: Mechanism
    pretty: str
    factors: list[TfaFactorRow] = Field(default_factory=list)


class LastLoginResponse(BaseModel):
    remote: Optional[str] = None
    time: Optional[int] = None


class ErrorDetail(BaseModel):
    """Structured error body returned by every error response."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
