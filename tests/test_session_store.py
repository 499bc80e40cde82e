"""
tests/test_session_store.py -- Unit tests for auth/sessions.py SessionStore.

Covers:
  - create / lookup by id and by refresh token
  - list_by_user() ordering (newest first)
  - rotate(): in-place token replacement guarded by the previous token
  - Idempotent deletes and the expiry sweep
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.models import Session
from auth.sessions import SessionStore


def _open(store: SessionStore, clock, user_id: int = 1, token: str = "tok-1", ttl_days: int = 7) -> Session:
    return store.create(
        Session(
            user_id=user_id,
            refresh_token=token,
            expires_at=clock.now + timedelta(days=ttl_days),
            user_agent="pytest",
            ip_address="127.0.0.1",
        )
    )


class TestCreateAndLookup:
    def test_create_and_find_by_token(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        found = session_store.get_by_refresh_token("tok-1")
        assert found is not None
        assert found.id == created.id
        assert found.user_id == 1
        assert found.created_at == clock.now
        assert found.expires_at == clock.now + timedelta(days=7)
        assert found.user_agent == "pytest"

    def test_get_by_id(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        assert session_store.get_by_id(created.id).refresh_token == "tok-1"
        assert session_store.get_by_id(999) is None

    def test_unknown_token_returns_none(self, session_store: SessionStore) -> None:
        assert session_store.get_by_refresh_token("nope") is None

    def test_long_user_agent_is_clipped(self, session_store: SessionStore, clock) -> None:
        created = session_store.create(
            Session(user_id=1, refresh_token="t", expires_at=clock.now + timedelta(days=1), user_agent="x" * 2000)
        )
        assert len(created.user_agent) == 512

    def test_list_by_user_newest_first(self, session_store: SessionStore, clock) -> None:
        first = _open(session_store, clock, token="a")
        clock.advance(minutes=1)
        second = _open(session_store, clock, token="b")
        _open(session_store, clock, user_id=2, token="c")
        assert [s.id for s in session_store.list_by_user(1)] == [second.id, first.id]
        assert session_store.list_by_user(3) == []


class TestRotate:
    def test_rotate_replaces_token_in_place(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        clock.advance(hours=1)
        new_expiry = clock.now + timedelta(days=7)
        rotated = session_store.rotate(created.id, "tok-1", "tok-2", new_expiry)
        assert rotated.id == created.id
        assert rotated.refresh_token == "tok-2"
        assert rotated.expires_at == new_expiry
        assert rotated.updated_at == clock.now
        assert session_store.get_by_refresh_token("tok-1") is None
        assert session_store.get_by_refresh_token("tok-2").id == created.id

    def test_rotate_with_stale_token_matches_nothing(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        session_store.rotate(created.id, "tok-1", "tok-2", clock.now + timedelta(days=7))
        assert session_store.rotate(created.id, "tok-1", "tok-3", clock.now + timedelta(days=7)) is None
        assert session_store.get_by_id(created.id).refresh_token == "tok-2"

    def test_rotate_overwrites_client_details_only_when_given(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        kept = session_store.rotate(created.id, "tok-1", "tok-2", clock.now + timedelta(days=7))
        assert (kept.user_agent, kept.ip_address) == ("pytest", "127.0.0.1")
        moved = session_store.rotate(
            created.id, "tok-2", "tok-3", clock.now + timedelta(days=7), user_agent="curl", ip_address="10.0.0.9"
        )
        assert (moved.user_agent, moved.ip_address) == ("curl", "10.0.0.9")

    def test_update_unknown_field_raises(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        with pytest.raises(ValueError):
            session_store.update(created.id, user_id=2)

    def test_update_missing_session_returns_none(self, session_store: SessionStore) -> None:
        assert session_store.update(999, user_agent="x") is None


class TestDelete:
    def test_delete_by_refresh_token_is_idempotent(self, session_store: SessionStore, clock) -> None:
        _open(session_store, clock)
        assert session_store.delete_by_refresh_token("tok-1") is True
        assert session_store.delete_by_refresh_token("tok-1") is False
        assert session_store.get_by_refresh_token("tok-1") is None

    def test_delete_by_id(self, session_store: SessionStore, clock) -> None:
        created = _open(session_store, clock)
        assert session_store.delete_by_id(created.id) is True
        assert session_store.delete_by_id(created.id) is False

    def test_delete_all_for_user_leaves_others(self, session_store: SessionStore, clock) -> None:
        _open(session_store, clock, token="a")
        _open(session_store, clock, token="b")
        _open(session_store, clock, user_id=2, token="c")
        assert session_store.delete_all_for_user(1) == 2
        assert session_store.delete_all_for_user(1) == 0
        assert session_store.get_by_refresh_token("c") is not None

    def test_delete_expired_removes_only_expired(self, session_store: SessionStore, clock) -> None:
        _open(session_store, clock, token="short", ttl_days=1)
        _open(session_store, clock, token="long", ttl_days=7)
        clock.advance(days=2)
        assert session_store.delete_expired() == 1
        assert session_store.get_by_refresh_token("short") is None
        assert session_store.get_by_refresh_token("long") is not None
        assert session_store.delete_expired() == 0

    def test_delete_expired_accepts_explicit_cutoff(self, session_store: SessionStore, clock) -> None:
        _open(session_store, clock, ttl_days=1)
        assert session_store.delete_expired(clock.now + timedelta(days=1)) == 1
