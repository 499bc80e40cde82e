"""
auth/tokens.py -- Dual-secret JWT issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens carry the same
       identity claims (user_id, email, username) plus a "type" discriminator,
       but each kind is signed with its OWN secret and has its own lifetime
       (access 15 minutes, refresh 7 days by default). A leaked access secret
       therefore cannot mint refresh tokens, and an access token presented on
       the refresh path fails signature verification before the kind check is
       even reached.

  Verification returns None on any failure (bad signature, expired, wrong
       kind, missing claims). The caller decides what None means: AuthService
       raises SessionError on the refresh path; the bearer dependency turns it
       into a 401.

  jti: every token carries a random jti claim. Without it, two tokens issued
       for the same user within the same second would be byte-identical, and
       refresh rotation would hand back the very token it was meant to retire.

  Tokens are stateless. Refresh tokens are additionally gated by SessionStore
  membership in AuthService.refresh(), which is what lets logout and rotation
  revoke a refresh token before its embedded expiry.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.models import ACCESS, REFRESH, TokenPair, TokenPayload

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"
_BEARER_PREFIX = "Bearer "


class TokenService:
    """Signs and verifies access/refresh tokens. Holds no mutable state.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        pair = tokens.issue_pair(user_id=1, email="a@x.com", username=None)
        payload = tokens.verify_access(pair.access_token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenService:
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_expire_seconds,
            refresh_ttl_seconds=settings.refresh_token_expire_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttls[REFRESH]

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_pair(self, user_id: int, email: str, username: str | None = None) -> TokenPair:
        """Sign an access token and a refresh token for the same identity.

        expires_in reports the ACCESS token lifetime -- that is the value a
        client uses to schedule its next refresh.
        """
        return TokenPair(
            access_token=self._encode(ACCESS, user_id, email, username),
            refresh_token=self._encode(REFRESH, user_id, email, username),
            expires_in=self._ttls[ACCESS],
        )

    def _encode(self, kind: str, user_id: int, email: str, username: str | None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "email": email,
            "username": username,
            "type": kind,
            "iat": now,
            "exp": now + timedelta(seconds=self._ttls[kind]),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> TokenPayload | None:
        """Return the payload of a valid access token, else None."""
        return self._decode(ACCESS, token)

    def verify_refresh(self, token: str) -> TokenPayload | None:
        """Return the payload of a valid refresh token, else None.

        A valid signature is necessary but not sufficient: AuthService must
        still find the token in SessionStore before honouring it.
        """
        return self._decode(REFRESH, token)

    def _decode(self, kind: str, token: str) -> TokenPayload | None:
        if not token:
            return None
        try:
            claims = jwt.decode(token, self._secrets[kind], algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if claims.get("type") != kind:
            return None
        user_id = claims.get("user_id")
        email = claims.get("email")
        exp = claims.get("exp")
        if not isinstance(user_id, int) or not email or exp is None:
            return None
        return TokenPayload(
            user_id=user_id,
            email=email,
            username=claims.get("username"),
            kind=kind,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )


def extract_bearer_token(header_value: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" value.

    Any other shape (missing header, other scheme, empty token) yields None
    without raising.
    """
    if not header_value or not header_value.startswith(_BEARER_PREFIX):
        return None
    token = header_value[len(_BEARER_PREFIX) :].strip()
    return token or None
