"""
auth/sessions.py -- SQLAlchemy Core persistence for refresh-token sessions.

One row per live refresh token. The refresh_token column is the lookup key
for every refresh: a token whose row is gone is revoked, no matter how valid
its signature and embedded expiry still are. Logout and rotation rely on
that -- a signed token cannot be invalidated any other way.

Rotation (rotate()) rewrites refresh_token and expires_at on the SAME row.
The UPDATE is guarded by the previous token value, so when two requests race
to redeem one refresh token only the first one matches; the loser gets None
and must treat the token as already used.

No foreign key to the auth table: the two stores are independent and may
live in different databases. AuthService keeps them consistent.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.db import create_store_engine, from_iso, to_iso, utcnow
from auth.models import Session

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("refresh_token", Text, nullable=False, unique=True),
    Column("user_agent", String(512)),
    Column("ip_address", String(45)),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

_UPDATABLE_FIELDS = {"refresh_token", "expires_at", "user_agent", "ip_address"}


class SessionStore:
    """Repository for Session entities.

    Usage:
        store = SessionStore("sqlite:///:memory:")
        session = store.create(Session(user_id=1, refresh_token=tok, expires_at=exp))
        store.get_by_refresh_token(tok)
        store.delete_expired()
        store.close()
    """

    def __init__(self, db_url: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, session: Session) -> Session:
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    refresh_token=session.refresh_token,
                    user_agent=_clip(session.user_agent, 512),
                    ip_address=_clip(session.ip_address, 45),
                    expires_at=to_iso(session.expires_at),
                    created_at=to_iso(self._clock()),
                    updated_at=None,
                )
            )
            new_id = result.inserted_primary_key[0]
            row = conn.execute(_sessions.select().where(_sessions.c.id == new_id)).fetchone()
        return _row_to_session(row)

    def get_by_id(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_refresh_token(self, refresh_token: str) -> Session | None:
        """Look up a session by its current refresh token. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token == refresh_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_by_user(self, user_id: int) -> list[Session]:
        """Return every session of a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(_sessions.c.user_id == user_id)
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def update(self, session_id: int, **fields) -> Session | None:
        """Apply a partial update by id. Returns None if the row is gone."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {unknown!r}")
        return self._update_where(_sessions.c.id == session_id, session_id, fields)

    def rotate(
        self,
        session_id: int,
        previous_token: str,
        new_token: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session | None:
        """Replace the refresh token and expiry in place.

        Matches only while the row still holds previous_token. None means the
        session was deleted or another request rotated it first. user_agent
        and ip_address are overwritten only when given.
        """
        predicate = (_sessions.c.id == session_id) & (_sessions.c.refresh_token == previous_token)
        fields = {"refresh_token": new_token, "expires_at": expires_at}
        if user_agent is not None:
            fields["user_agent"] = _clip(user_agent, 512)
        if ip_address is not None:
            fields["ip_address"] = _clip(ip_address, 45)
        return self._update_where(predicate, session_id, fields)

    def _update_where(self, predicate, session_id: int, fields: dict) -> Session | None:
        values = dict(fields)
        if "expires_at" in values:
            values["expires_at"] = to_iso(values["expires_at"])
        values["updated_at"] = to_iso(self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(predicate).values(**values))
            if result.rowcount == 0:
                return None
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row)

    # ------------------------------------------------------------------
    # Deletes -- all idempotent
    # ------------------------------------------------------------------

    def delete_by_id(self, session_id: int) -> bool:
        return self._delete_where(_sessions.c.id == session_id) > 0

    def delete_by_refresh_token(self, refresh_token: str) -> bool:
        return self._delete_where(_sessions.c.refresh_token == refresh_token) > 0

    def delete_all_for_user(self, user_id: int) -> int:
        return self._delete_where(_sessions.c.user_id == user_id)

    def delete_expired(self, now: datetime | None = None) -> int:
        """Delete every session whose expires_at has passed. Returns rows removed."""
        cutoff = to_iso(now or self._clock())
        return self._delete_where(_sessions.c.expires_at <= cutoff)

    def _delete_where(self, predicate) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(predicate))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _clip(value: str | None, limit: int) -> str | None:
    return value[:limit] if value else value


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token=row.refresh_token,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
