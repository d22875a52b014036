"""
auth/dependencies.py -- FastAPI Depends() helpers for the session-based login.

The identity lives in the Starlette session (SessionMiddleware, signed with
SECRET_KEY). Every request gets a fresh RequestContext built from:
  - request.app.state.store     the AccountRepository,
  - request.app.state.notifier  the fail-ban notifier (may be absent),
  - request.session             identity, pending TFA, throttle delay,
  - request.client.host         the caller's address.

get_request_context() never raises.
require_authenticated() raises HTTP 401 if nobody is signed in.
require_admin() wraps require_authenticated() and raises HTTP 403 for mailbox users.

A principal waiting for its second factor is *not* authenticated.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.context import RequestContext
from auth.models import ADMIN_ROLES


def get_request_context(request: Request) -> RequestContext:
    """Build the RequestContext for this request.

    Use as a FastAPI dependency:
        @router.post("/login")
        def route(ctx: RequestContext = Depends(get_request_context)): ...
    """
    return RequestContext(
        store=request.app.state.store,
        session=request.session,
        remote_addr=request.client.host if request.client else "unknown",
        notifier=getattr(request.app.state, "notifier", None),
    )


def require_authenticated(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Require a signed-in identity. Raises HTTP 401 otherwise."""
    if not ctx.authenticated:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return ctx


def require_admin(ctx: RequestContext = Depends(require_authenticated)) -> RequestContext:
    """Require a superadmin or domainadmin. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    if ctx.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return ctx
