"""
auth/passwords.py -- Password hashing, verification, and strength policy.

Passwords: bcrypt directly (no passlib wrapper). Bcrypt is the right choice
for low-entropy secrets because its cost factor makes brute-force expensive,
and it embeds a per-call random salt in every hash it produces.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The _DUMMY_HASH constant enables timing equalization in AuthService.login()
so response time does not reveal whether an email exists [C1].
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import bcrypt

# bcrypt only looks at the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


@dataclass(frozen=True)
class StrengthResult:
    valid: bool
    reasons: list[str] = field(default_factory=list)


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash yields False rather than an exception: a corrupt
    row must look like a wrong password, not a server error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def check_password_strength(plain: str, min_length: int = 8) -> StrengthResult:
    """Check plain against the password policy and report every violated rule."""
    reasons: list[str] = []
    if len(plain) < min_length:
        reasons.append(f"must be at least {min_length} characters long")
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        reasons.append(f"must be at most {MAX_PASSWORD_BYTES} bytes long")
    if not _LOWER.search(plain):
        reasons.append("must contain a lowercase letter")
    if not _UPPER.search(plain):
        reasons.append("must contain an uppercase letter")
    if not _DIGIT.search(plain):
        reasons.append("must contain a digit")
    return StrengthResult(valid=not reasons, reasons=reasons)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("credgate_timing_dummy")


def burn_verification(plain: str) -> None:
    """Run a full bcrypt check against the dummy hash and discard the result.

    Called when the email is unknown so that path costs the same as a wrong
    password against a real hash.
    """
    verify_password(plain, _DUMMY_HASH)
