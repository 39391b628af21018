"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token authentication.

A request is authenticated by an "Authorization: Bearer <token>" header whose
token the session ledger still considers valid (recorded, not expired, not
revoked, signature and identity claim intact). A token revoked by a later
login or by logout stops working immediately even though its JWT exp has not
passed.

get_bearer_token() extracts the raw token (or None).
get_current_principal() raises HTTP 401 if the token does not resolve.
require_admin() / require_user() additionally pin the principal kind (403).

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.authentication import AuthenticationFlow
from auth.errors import AuthenticationFailedError
from auth.models import Admin, Principal, PrincipalKind, User


def get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_current_principal(request: Request) -> Principal:
    """Require a valid session token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = get_bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    authentication: AuthenticationFlow = request.app.state.authentication
    try:
        return authentication.authenticate_token(token)
    except AuthenticationFailedError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        ) from exc


def require_admin(request: Request) -> Admin:
    principal = get_current_principal(request)
    if principal.kind is not PrincipalKind.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal


def require_user(request: Request) -> User:
    principal = get_current_principal(request)
    if principal.kind is not PrincipalKind.USER:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "User access required."},
        )
    return principal
