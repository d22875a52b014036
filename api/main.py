"""
api/main.py -- FastAPI application for the mail-admin auth core.

Exposes login, second-factor completion and self-service over HTTP. The
identity is kept in a signed session cookie, so the app holds no state of
its own apart from the database and the fail-ban Redis channel.

Run with:      uvicorn asgi:app --reload

Middleware, outermost first:
  TrustedHostMiddleware -- rejects requests with unexpected Host headers
  SessionMiddleware     -- signed cookie holding identity, pending TFA and throttle delay
  log_requests          -- one INFO line per request

Startup opens the account store, the fail-ban notifier and the credential
verifier on app.state; shutdown disposes the store's connection pool.

Every error leaves through _error() with the envelope
{"error": {"code", "message", "detail"?}}.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.login import CredentialVerifier
from auth.notify import FailBanNotifier
from auth.repository import StorageError
from auth.store import MailAuthStore
from core.config import get_settings

VERSION = "0.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mailadmin.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    app.state.store = MailAuthStore()
    app.state.notifier = FailBanNotifier()
    app.state.verifier = CredentialVerifier()
    logger.info(
        "mail-admin API %s up (database=%s, fail-ban channel=%s)",
        VERSION,
        settings.database_url,
        settings.failban_channel,
    )

    yield

    app.state.store.close()
    logger.info("mail-admin API stopped")


app = FastAPI(
    title="mail-admin auth API",
    description="Tiered password login, second factors and domain access for the mail admin panel.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

# Added after TrustedHost so it runs inside it; request.session must exist
# before any auth dependency runs.
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    session_cookie="mailadmin_session",
    same_site="lax",
    https_only=not get_settings().debug,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d in %.1fms from %s",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - start) * 1000,
        request.client.host if request.client else "unknown",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Dependencies raise HTTPException with detail={"code", "message"}; pass that through."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    # Core operations turn StorageError into a storage_error result record;
    # only plain reads such as last_login reach this handler.
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "storage_error", "The account database is unavailable.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the raw exception; the client only sees internal_error."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=VERSION)
