"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register        -- create account; 201 with token pair
  POST   /api/v1/auth/login           -- password login; token pair
  POST   /api/v1/auth/refresh         -- redeem refresh token; rotated pair
  POST   /api/v1/auth/logout          -- end one session; always 200
  POST   /api/v1/auth/logout-all      -- end every session of the caller (requires auth)
  GET    /api/v1/auth/session         -- stateless access-token introspection
  GET    /api/v1/auth/sessions        -- caller's sessions, newest first (requires auth)
  DELETE /api/v1/auth/sessions/{id}   -- revoke one of the caller's sessions (requires auth)

Session artifact:
  Browser clients also receive the refresh token inside the signed session
  cookie (Starlette SessionMiddleware) as {"sessionId": <refresh token>,
  "user": {id, email, username}}. Clients must treat it as opaque. refresh
  and logout fall back to it when the body carries no refresh_token.

Security:
  [H2] POST /login and /register are rate-limited per client IP.
  [C1] AuthService.login() provides timing equalization -- never inline the
       lookup + verify in a route.
  [M5] Cache-Control: no-store on every response carrying tokens.
  Error responses are produced by the AuthError handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RevokedResponse,
    SessionInfo,
    SessionStatusResponse,
    TokenResponse,
)
from auth.dependencies import get_auth_service, get_current_identity, try_get_current_identity
from auth.errors import SessionError
from auth.models import AuthResult, TokenPayload
from core.config import get_settings

_settings = get_settings()

_ARTIFACT_TOKEN_KEY = "sessionId"

# Auth policy:
# - POST   /auth/register, /auth/login:   public, rate-limited
# - POST   /auth/refresh, /auth/logout:   public -- the refresh token IS the credential
# - GET    /auth/session:                 public -- reports authenticated=false when no token
# - POST   /auth/logout-all:              requires access token
# - GET    /auth/sessions:                requires access token
# - DELETE /auth/sessions/{id}:           requires access token + ownership check in AuthService
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account, open its first session, and return the token pair.

    422 lists every invalid field at once; 409 names the field (email,
    username or phone_number) that is already taken.
    """
    result = get_auth_service(request).register(
        email=body.email,
        password=body.password,
        phone_number=body.phone_number,
        username=body.username,
        user_agent=request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
    )
    _store_artifact(request, result)
    return _token_response(result, status_code=201)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and open a new session.

    Wrong password and unknown email return the same 401 body
    ("invalid_credentials") to avoid leaking account existence. A locked
    account returns 423 without the password being checked.
    """
    result = get_auth_service(request).login(
        email=body.email,
        password=body.password,
        user_agent=request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
    )
    _store_artifact(request, result)
    return _token_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is retired."""
    token = (body.refresh_token if body else None) or request.session.get(_ARTIFACT_TOKEN_KEY)
    if not token:
        raise SessionError("Refresh token required.", code="missing_token")
    try:
        result = get_auth_service(request).refresh(
            token,
            user_agent=request.headers.get("User-Agent"),
            ip_address=_client_ip(request),
        )
    except SessionError:
        if request.session.get(_ARTIFACT_TOKEN_KEY) == token:
            request.session.clear()
        raise
    _store_artifact(request, result)
    return _token_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> JSONResponse:
    """End the current session. Idempotent: succeeds even if it is already gone."""
    token = (body.refresh_token if body else None) or request.session.get(_ARTIFACT_TOKEN_KEY)
    get_auth_service(request).logout(token)
    request.session.clear()
    return JSONResponse(content=MessageResponse(message="Logged out.").model_dump())


@router.get("/auth/session", response_model=SessionStatusResponse)
def session_status(request: Request) -> SessionStatusResponse:
    """Report whether the bearer access token is currently valid.

    Stateless: a session revoked a moment ago still reports authenticated
    until its access token expires.
    """
    identity = try_get_current_identity(request)
    if identity is None:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(
        authenticated=True,
        user=IdentityResponse(id=identity.user_id, email=identity.email, username=identity.username),
        expires_at=identity.expires_at,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=RevokedResponse)
def logout_all(request: Request, identity: TokenPayload = Depends(get_current_identity)) -> RevokedResponse:
    """Revoke every refresh token of the caller (all devices)."""
    count = get_auth_service(request).logout_all(identity.user_id)
    request.session.clear()
    return RevokedResponse(revoked=count)


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, identity: TokenPayload = Depends(get_current_identity)) -> list[SessionInfo]:
    """List the caller's live sessions, newest first."""
    return [SessionInfo.from_session(s) for s in get_auth_service(request).list_sessions(identity.user_id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: int,
    identity: TokenPayload = Depends(get_current_identity),
) -> Response:
    """Revoke one session. Ownership is verified server-side [IDOR guard]."""
    if not get_auth_service(request).revoke_session(identity.user_id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _store_artifact(request: Request, result: AuthResult) -> None:
    request.session[_ARTIFACT_TOKEN_KEY] = result.tokens.refresh_token
    request.session["user"] = {
        "id": result.user.id,
        "email": result.user.email,
        "username": result.user.username,
    }


def _token_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse.from_result(result).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
