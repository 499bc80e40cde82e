"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the token service and AuthService do the work.

All timestamps are timezone-aware UTC datetimes. The stores convert them to
and from ISO-8601 strings at the persistence boundary.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class AuthRecord:
    """One authentication record per identity.

    email, username and phone_number are each unique across records. username
    is optional; several records may leave it NULL without colliding.

    failed_attempts counts consecutive failed logins and resets to 0 on any
    successful one. locked_until, while in the future, blocks login regardless
    of password correctness.
    """

    email: str
    password_hash: str
    phone_number: str
    username: str | None = None
    id: int | None = None
    email_verified: bool = False
    phone_verified: bool = False
    failed_attempts: int = 0
    last_login_at: datetime | None = None
    locked_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    """One row per live refresh token.

    A refresh token authenticates only while now < expires_at AND the row
    still exists. Rotation replaces refresh_token in place, so a row outlives
    any single token value.
    """

    user_id: int
    refresh_token: str
    expires_at: datetime
    id: int | None = None
    user_agent: str | None = None  # informational only
    ip_address: str | None = None  # informational only
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TokenPayload:
    """Verified claims carried by an access or refresh token. Never persisted."""

    user_id: int
    email: str
    kind: str  # ACCESS or REFRESH
    expires_at: datetime
    username: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful register, login or refresh."""

    tokens: TokenPair
    user: AuthRecord
    session_id: int
