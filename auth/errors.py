"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure that leaves AuthService is one of these classes. Store and
signer exceptions are caught inside AuthService, logged, and re-raised as
InternalError so SQLAlchemy or JOSE details never reach a caller.

The API layer maps each class to an HTTP status in api/main.py. This module
knows nothing about HTTP.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. code is machine-readable, message is safe to show users."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Malformed input. fields maps each offending field to every rule it broke."""

    code = "validation_error"
    message = "Request validation failed."

    def __init__(self, fields: dict[str, list[str]], message: str | None = None) -> None:
        super().__init__(message)
        self.fields = fields


class ConflictError(AuthError):
    """Registration collided with an existing email, username or phone number."""

    code = "conflict"

    def __init__(self, field: str) -> None:
        super().__init__(f"An account with that {field.replace('_', ' ')} already exists.")
        self.field = field


class AuthenticationError(AuthError):
    """Bad credentials. Deliberately identical for unknown email and wrong password."""

    code = "invalid_credentials"
    message = "Invalid email or password."


class LockedError(AuthError):
    code = "account_locked"
    message = "Account is locked."


class SessionError(AuthError):
    """Refresh token invalid, expired, or revoked."""

    code = "invalid_session"
    message = "Session is invalid or has been revoked."

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InternalError(AuthError):
    code = "internal_error"
    message = "An unexpected error occurred."
