"""
auth/service.py -- AuthService: the register / login / refresh / logout state machine.

AuthService is the only writer of CredentialStore and SessionStore. It
composes them with the password hasher and the token service, enforces the
lockout policy, and turns every lower-level failure into one of the classes
in auth/errors.py.

Lockout state per identity:
  Active --(failed_attempts reaches max_failed_attempts)--> Locked
      locked_until = now + lockout_seconds, stamped when the threshold is hit.
  Locked --(locked_until elapsed)--> Active
      Evaluated lazily at the next login attempt; there is no timer. The lock
      is cleared and the counter starts again from zero, by one UPDATE that
      only matches while the stored lock is still elapsed; a lock set by a
      concurrent request in the meantime survives and the login is refused.
  A login attempt while Locked is refused BEFORE the password is checked and
  leaves failed_attempts untouched.

Refresh tokens are single-use. refresh() rotates the session row in place
(new token value, new expiry) instead of inserting a new row, so the token
just redeemed stops working immediately and a device never holds more than
one live row per login.

Known accepted gap: access tokens issued before a logout or rotation remain
valid until their own short expiry. There is no access-token denylist;
logout guarantees only that the refresh path is closed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from jose import JWTError
from sqlalchemy.exc import SQLAlchemyError

from auth.db import utcnow
from auth.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    LockedError,
    SessionError,
    ValidationError,
)
from auth.models import AuthRecord, AuthResult, Session, TokenPayload
from auth.passwords import burn_verification, check_password_strength, hash_password, verify_password
from auth.store import CredentialStore, DuplicateIdentityError

if TYPE_CHECKING:
    from auth.sessions import SessionStore
    from auth.tokens import TokenService
    from core.config import Settings

logger = logging.getLogger("credgate.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?\d{7,15}$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")


class AuthService:
    """Orchestrates the authentication flows over the two stores.

    Usage:
        service = AuthService(credentials, sessions, tokens)
        result = service.register("a@x.com", "Passw0rd!", "5551234567")
        result = service.login("a@x.com", "Passw0rd!")
        result = service.refresh(result.tokens.refresh_token)
        service.logout(result.tokens.refresh_token)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        tokens: TokenService,
        *,
        max_failed_attempts: int = 5,
        lockout_seconds: int = 30 * 60,
        password_min_length: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._tokens = tokens
        self._max_failed_attempts = max_failed_attempts
        self._lockout = timedelta(seconds=lockout_seconds)
        self._password_min_length = password_min_length
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        credentials: CredentialStore,
        sessions: SessionStore,
        tokens: TokenService,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        return cls(
            credentials,
            sessions,
            tokens,
            max_failed_attempts=settings.max_failed_attempts,
            lockout_seconds=settings.lockout_seconds,
            password_min_length=settings.password_min_length,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Failure boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        """Re-classify store and signer failures as InternalError.

        The original exception is logged with its traceback and chained, but
        never surfaced to the caller. AuthError subclasses pass through.
        """
        try:
            yield
        except (SQLAlchemyError, JWTError) as exc:
            logger.exception("Store or signer failure during %s", action)
            raise InternalError() from exc

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        phone_number: str,
        username: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResult:
        """Create an account and open its first session.

        Raises ValidationError listing every bad field, or ConflictError naming
        the first field (email, username, phone_number) already in use.
        If the first session cannot be stored the new record is deleted again
        before InternalError is raised.
        """
        email = _normalize_email(email)
        phone_number = _normalize_phone(phone_number)
        username = username.strip() if username and username.strip() else None
        self._validate_registration(email, password, phone_number, username)

        with self._guard("register"):
            self._ensure_available(email, username, phone_number)
            try:
                record = self._credentials.create(
                    AuthRecord(
                        email=email,
                        username=username,
                        password_hash=hash_password(password),
                        phone_number=phone_number,
                    )
                )
            except DuplicateIdentityError as exc:
                # Lost a race with a concurrent registration for the same identity.
                raise ConflictError(exc.field) from exc
            try:
                result = self._open_session(record, user_agent, ip_address)
            except (SQLAlchemyError, JWTError):
                # Registration is all or nothing: no first session, no account.
                self._credentials.delete(record.id)
                raise
            logger.info("Registered account %s", record.id)
            return result

    def _validate_registration(
        self,
        email: str,
        password: str,
        phone_number: str,
        username: str | None,
    ) -> None:
        fields: dict[str, list[str]] = {}
        if not _EMAIL_RE.match(email):
            fields["email"] = ["must be a valid email address"]
        if not _PHONE_RE.match(phone_number):
            fields["phone_number"] = ["must contain 7 to 15 digits, optionally prefixed with +"]
        if username is not None and not _USERNAME_RE.match(username):
            fields["username"] = ["must be 3-50 characters of letters, digits, '_', '.' or '-'"]
        strength = check_password_strength(password or "", self._password_min_length)
        if not strength.valid:
            fields["password"] = strength.reasons
        if fields:
            raise ValidationError(fields)

    def _ensure_available(self, email: str, username: str | None, phone_number: str) -> None:
        if self._credentials.get_by_email(email) is not None:
            raise ConflictError("email")
        if username is not None and self._credentials.get_by_username(username) is not None:
            raise ConflictError("username")
        if self._credentials.get_by_phone_number(phone_number) is not None:
            raise ConflictError("phone_number")

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResult:
        """Verify credentials under the lockout policy and open a new session.

        Unknown email and wrong password raise the same AuthenticationError.
        A locked account raises LockedError without checking the password.
        """
        email = _normalize_email(email)
        if not email or not password:
            raise ValidationError(
                {name: ["is required"] for name, value in (("email", email), ("password", password)) if not value}
            )

        with self._guard("login"):
            now = self._clock()
            record = self._credentials.get_by_email(email)
            if record is None:
                # Equalize timing -- do NOT return early before running bcrypt [C1]
                burn_verification(password)
                raise AuthenticationError()

            if record.is_locked(now):
                logger.info("Login refused for locked account %s", record.id)
                raise LockedError()
            if record.locked_until is not None:
                record = self._release_lock(record, now)
                if record.is_locked(now):
                    # Re-locked by a concurrent request since the first read.
                    logger.info("Login refused for locked account %s", record.id)
                    raise LockedError()

            if not verify_password(password, record.password_hash):
                self._register_failure(record, now)
                raise AuthenticationError()

            self._credentials.reset_failed_attempts(record.id)
            record = self._credentials.record_last_login(record.id, now) or record
            logger.info("Login succeeded for account %s", record.id)
            return self._open_session(record, user_agent, ip_address)

    def _release_lock(self, record: AuthRecord, now: datetime) -> AuthRecord:
        """Lazy Locked -> Active transition once locked_until has elapsed.

        The store only clears a lock that is still elapsed in the row itself,
        so the returned record is authoritative and may carry a newer lock.
        """
        released = self._credentials.release_expired_lock(record.id, now)
        if released is None:
            return record
        if released.locked_until is None:
            logger.info("Lock expired for account %s", record.id)
        return released

    def _register_failure(self, record: AuthRecord, now: datetime) -> None:
        updated = self._credentials.increment_failed_attempts(record.id)
        attempts = updated.failed_attempts if updated is not None else record.failed_attempts + 1
        if attempts >= self._max_failed_attempts:
            until = now + self._lockout
            self._credentials.lock_until(record.id, until)
            logger.warning(
                "Account %s locked until %s after %d failed attempts",
                record.id,
                until.isoformat(),
                attempts,
            )
        else:
            logger.info("Failed login for account %s (%d/%d)", record.id, attempts, self._max_failed_attempts)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResult:
        """Redeem a refresh token for a new pair, rotating its session row in place.

        Signature, expiry and kind are checked first; then the token must
        still be present in SessionStore. Absent means revoked (logout,
        earlier rotation, sweep) even when the signature is perfectly valid.
        """
        payload = self._tokens.verify_refresh(refresh_token) if refresh_token else None
        if payload is None:
            raise SessionError("Refresh token is invalid or expired.", code="invalid_token")

        with self._guard("refresh"):
            now = self._clock()
            session = self._sessions.get_by_refresh_token(refresh_token)
            if session is None or session.user_id != payload.user_id:
                logger.info("Refresh rejected for account %s: session not found", payload.user_id)
                raise SessionError()
            if session.is_expired(now):
                self._sessions.delete_by_id(session.id)
                logger.info("Refresh rejected for account %s: session %s expired", session.user_id, session.id)
                raise SessionError("Session has expired.", code="expired_session")

            record = self._credentials.get_by_id(session.user_id)
            if record is None:
                self._sessions.delete_all_for_user(session.user_id)
                raise SessionError()

            pair = self._tokens.issue_pair(record.id, record.email, record.username)
            expires_at = now + timedelta(seconds=self._tokens.refresh_ttl_seconds)
            rotated = self._sessions.rotate(
                session.id,
                refresh_token,
                pair.refresh_token,
                expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            if rotated is None:
                # A concurrent refresh redeemed this token first.
                raise SessionError()
            return AuthResult(tokens=pair, user=record, session_id=rotated.id)

    # ------------------------------------------------------------------
    # Logout and session management
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str | None) -> None:
        """End the session bound to refresh_token. Always succeeds, even if already gone."""
        if not refresh_token:
            return
        with self._guard("logout"):
            if self._sessions.delete_by_refresh_token(refresh_token):
                logger.info("Session ended by logout")

    def logout_all(self, user_id: int) -> int:
        """Revoke every session of a user. Returns the number removed."""
        with self._guard("logout_all"):
            count = self._sessions.delete_all_for_user(user_id)
        logger.info("Revoked %d session(s) for account %s", count, user_id)
        return count

    def list_sessions(self, user_id: int) -> list[Session]:
        with self._guard("list_sessions"):
            return self._sessions.list_by_user(user_id)

    def revoke_session(self, user_id: int, session_id: int) -> bool:
        """Delete one session if it belongs to user_id. False if missing or not theirs."""
        with self._guard("revoke_session"):
            session = self._sessions.get_by_id(session_id)
            if session is None or session.user_id != user_id:
                return False
            return self._sessions.delete_by_id(session_id)

    def introspect(self, access_token: str | None) -> TokenPayload | None:
        """Stateless access-token check. Never consults a store."""
        if not access_token:
            return None
        return self._tokens.verify_access(access_token)

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def unlock_account(self, email: str) -> AuthRecord | None:
        """Clear a lockout by hand. Returns None if no account has that email.

        Never triggered automatically; expiry of locked_until is handled
        lazily by login().
        """
        with self._guard("unlock_account"):
            record = self._credentials.get_by_email(_normalize_email(email))
            if record is None:
                return None
            self._credentials.unlock(record.id)
            record = self._credentials.reset_failed_attempts(record.id) or record
        logger.info("Account %s unlocked manually", record.id)
        return record

    def find_account(self, email: str) -> AuthRecord | None:
        with self._guard("find_account"):
            return self._credentials.get_by_email(_normalize_email(email))

    def sweep_expired_sessions(self) -> int:
        """Delete expired session rows. Idempotent; safe alongside live traffic."""
        with self._guard("sweep_expired_sessions"):
            removed = self._sessions.delete_expired(self._clock())
        if removed:
            logger.info("Swept %d expired session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(
        self,
        record: AuthRecord,
        user_agent: str | None,
        ip_address: str | None,
    ) -> AuthResult:
        pair = self._tokens.issue_pair(record.id, record.email, record.username)
        session = self._sessions.create(
            Session(
                user_id=record.id,
                refresh_token=pair.refresh_token,
                expires_at=self._clock() + timedelta(seconds=self._tokens.refresh_ttl_seconds),
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        return AuthResult(tokens=pair, user=record, session_id=session.id)


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _normalize_phone(phone_number: str | None) -> str:
    return _PHONE_SEPARATORS.sub("", phone_number or "")
