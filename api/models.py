"""
API request and response models for Credgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only check shape (types, presence, length caps). Content rules
-- email format, phone format, password strength -- live in AuthService so
every caller, HTTP or CLI, gets the same per-field ValidationError.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthRecord, AuthResult, Session

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    phone_number: str = Field(min_length=1, max_length=32)
    username: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    refresh_token may be omitted by browser clients; the route then falls
    back to the value held in the signed session cookie.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: Optional[str]
    phone_number: str
    email_verified: bool
    phone_verified: bool
    last_login_at: Optional[datetime]

    @classmethod
    def from_record(cls, record: AuthRecord) -> "UserSummary":
        return cls(
            id=record.id,
            email=record.email,
            username=record.username,
            phone_number=record.phone_number,
            email_verified=record.email_verified,
            phone_verified=record.phone_verified,
            last_login_at=record.last_login_at,
        )


class TokenResponse(BaseModel):
    """Response for register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary

    @classmethod
    def from_result(cls, result: AuthResult) -> "TokenResponse":
        return cls(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
            user=UserSummary.from_record(result.user),
        )


class IdentityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: Optional[str]


class SessionStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[IdentityResponse] = None
    expires_at: Optional[datetime] = None


class SessionInfo(BaseModel):
    """One row of GET /api/v1/auth/sessions. The refresh token value is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionInfo":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[dict[str, list[str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
