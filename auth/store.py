"""
auth/store.py -- SQLAlchemy Core persistence for authentication records.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_record is the mapper. AuthService never touches SQL directly, and
nothing except AuthService writes to this table.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  email, username and phone_number carry UNIQUE constraints. SQLite and
  PostgreSQL both treat two NULLs as distinct in a UNIQUE constraint, which is
  exactly what the optional username needs: any number of records may leave
  it unset. A violation on create() is mapped back to the offending field and
  raised as DuplicateIdentityError so AuthService can report which field
  collided.

Atomicity:
  increment_failed_attempts() issues `failed_attempts = failed_attempts + 1`
  as a single UPDATE and reads the row back inside the same transaction.
  Concurrent failed logins against one account are serialized by the
  database's row lock; the counter can never go negative or jump.

DB path: auth/credgate_auth.db by default (see core.config.Settings.database_url).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import create_store_engine, from_iso, to_iso, utcnow
from auth.models import AuthRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_auth = Table(
    "auth",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(50), unique=True),  # optional; NULLs never collide
    Column("password_hash", Text, nullable=False),
    Column("phone_number", String(20), nullable=False, unique=True),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("phone_verified", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

# Checked in this order when mapping an IntegrityError back to a field.
_UNIQUE_FIELDS = ("email", "username", "phone_number")

_TIMESTAMP_FIELDS = {"last_login_at", "locked_until"}
_BOOL_FIELDS = {"email_verified", "phone_verified"}
_UPDATABLE_FIELDS = {
    "email",
    "username",
    "password_hash",
    "phone_number",
    "failed_attempts",
} | _TIMESTAMP_FIELDS | _BOOL_FIELDS


class DuplicateIdentityError(Exception):
    """A uniqueness constraint rejected the write. field names the column."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate {field}")
        self.field = field


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for AuthRecord entities.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        record = store.create(AuthRecord(email="a@x.com", password_hash=h, phone_number="5551234567"))
        store.increment_failed_attempts(record.id)
        store.close()
    """

    def __init__(self, db_url: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, record: AuthRecord) -> AuthRecord:
        """Insert a new record with zeroed lockout state and return it as stored.

        Raises DuplicateIdentityError if email, username or phone_number is
        already taken.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _auth.insert().values(
                        email=record.email,
                        username=record.username,
                        password_hash=record.password_hash,
                        phone_number=record.phone_number,
                        email_verified=1 if record.email_verified else 0,
                        phone_verified=1 if record.phone_verified else 0,
                        failed_attempts=0,
                        last_login_at=None,
                        locked_until=None,
                        created_at=to_iso(self._clock()),
                        updated_at=None,
                    )
                )
                new_id = result.inserted_primary_key[0]
                row = conn.execute(_auth.select().where(_auth.c.id == new_id)).fetchone()
        except IntegrityError as exc:
            raise DuplicateIdentityError(self._conflicting_field(record)) from exc
        return _row_to_record(row)

    def get_by_id(self, user_id: int) -> AuthRecord | None:
        return self._fetch_one(_auth.c.id == user_id)

    def get_by_email(self, email: str) -> AuthRecord | None:
        return self._fetch_one(_auth.c.email == email)

    def get_by_username(self, username: str) -> AuthRecord | None:
        return self._fetch_one(_auth.c.username == username)

    def get_by_phone_number(self, phone_number: str) -> AuthRecord | None:
        return self._fetch_one(_auth.c.phone_number == phone_number)

    def _fetch_one(self, predicate) -> AuthRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_auth.select().where(predicate)).fetchone()
        return _row_to_record(row) if row is not None else None

    def _conflicting_field(self, record: AuthRecord) -> str:
        """Work out which unique field an IntegrityError was about."""
        lookups = {
            "email": self.get_by_email,
            "username": self.get_by_username,
            "phone_number": self.get_by_phone_number,
        }
        for field in _UNIQUE_FIELDS:
            value = getattr(record, field)
            if value is not None and lookups[field](value) is not None:
                return field
        # The colliding row vanished between the failed INSERT and the lookup.
        return "email"

    # ------------------------------------------------------------------
    # Mutations -- every one stamps updated_at
    # ------------------------------------------------------------------

    def update(self, user_id: int, **fields) -> AuthRecord | None:
        """Apply a partial update and return the updated record.

        Only keys in _UPDATABLE_FIELDS are accepted. Unknown keys raise
        ValueError rather than being silently ignored. id and created_at are
        immutable.

        Returns None if user_id was not found. Raises DuplicateIdentityError
        if the patch would collide with another record's email, username or
        phone number.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown auth record fields: {unknown!r}")
        values = {}
        for key, value in fields.items():
            if key in _TIMESTAMP_FIELDS:
                value = to_iso(value)
            elif key in _BOOL_FIELDS:
                value = 1 if value else 0
            values[key] = value
        values["updated_at"] = to_iso(self._clock())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_auth.update().where(_auth.c.id == user_id).values(**values))
                if result.rowcount == 0:
                    return None
                row = conn.execute(_auth.select().where(_auth.c.id == user_id)).fetchone()
        except IntegrityError as exc:
            field = next((f for f in _UNIQUE_FIELDS if f in fields), "email")
            raise DuplicateIdentityError(field) from exc
        return _row_to_record(row)

    def increment_failed_attempts(self, user_id: int) -> AuthRecord | None:
        """Atomically add one to failed_attempts and return the updated record.

        The increment is computed by the database from the currently stored
        value, never from a value read earlier by the caller.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _auth.update()
                .where(_auth.c.id == user_id)
                .values(
                    failed_attempts=_auth.c.failed_attempts + 1,
                    updated_at=to_iso(self._clock()),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(_auth.select().where(_auth.c.id == user_id)).fetchone()
        return _row_to_record(row)

    def reset_failed_attempts(self, user_id: int) -> AuthRecord | None:
        return self.update(user_id, failed_attempts=0)

    def record_last_login(self, user_id: int, at: datetime | None = None) -> AuthRecord | None:
        """Stamp last_login_at (default: now) after a successful authentication."""
        return self.update(user_id, last_login_at=at or self._clock())

    def lock_until(self, user_id: int, until: datetime) -> AuthRecord | None:
        return self.update(user_id, locked_until=until)

    def unlock(self, user_id: int) -> AuthRecord | None:
        """Clear locked_until. The failed-attempts counter is left as is."""
        return self.update(user_id, locked_until=None)

    def release_expired_lock(self, user_id: int, now: datetime) -> AuthRecord | None:
        """Clear an elapsed lock and restart the counter in one guarded UPDATE.

        The WHERE clause re-checks locked_until against the stored row, so a
        lock written by a concurrent request after the caller read the record
        is left in place. Returns the record as stored afterwards, whether or
        not the update matched; None if user_id was not found.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _auth.update()
                .where(
                    (_auth.c.id == user_id)
                    & _auth.c.locked_until.is_not(None)
                    & (_auth.c.locked_until <= to_iso(now))
                )
                .values(
                    locked_until=None,
                    failed_attempts=0,
                    updated_at=to_iso(self._clock()),
                )
            )
            row = conn.execute(_auth.select().where(_auth.c.id == user_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def delete(self, user_id: int) -> bool:
        """Hard-delete a record. Only used to undo a registration that failed midway."""
        with self.engine.begin() as conn:
            result = conn.execute(_auth.delete().where(_auth.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> AuthRecord:
    return AuthRecord(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        phone_number=row.phone_number,
        email_verified=bool(row.email_verified),
        phone_verified=bool(row.phone_verified),
        failed_attempts=row.failed_attempts or 0,
        last_login_at=from_iso(row.last_login_at),
        locked_until=from_iso(row.locked_until),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
