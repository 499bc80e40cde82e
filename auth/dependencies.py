"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted on protected routes: an access token in the
`Authorization: Bearer <token>` header. Access tokens are verified
statelessly -- no store lookup -- so a revoked session's outstanding access
tokens keep working until their short expiry.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because it is part of the FastAPI dependency injection system.
The rest of auth/ stays framework-free.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import TokenPayload
from auth.service import AuthService
from auth.tokens import extract_bearer_token


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService wired into app.state by the lifespan."""
    return request.app.state.auth_service


def try_get_current_identity(request: Request) -> TokenPayload | None:
    """Return the verified access-token payload, or None. Never raises."""
    token = extract_bearer_token(request.headers.get("Authorization"))
    return get_auth_service(request).introspect(token)


def get_current_identity(request: Request) -> TokenPayload:
    """Require a valid bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: TokenPayload = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Valid access token required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
