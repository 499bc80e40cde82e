"""
tests/test_cli.py -- Tests for the administrative commands in main.py.

The CLI is exercised through main(argv, service=...) with the in-memory
AuthService fixture, so no database file or environment is touched.
"""

from __future__ import annotations

import pytest

from auth.errors import AuthenticationError
from main import main

EMAIL = "a@x.com"
PASSWORD = "Passw0rd!"


@pytest.fixture
def registered(auth_service):
    return auth_service.register(EMAIL, PASSWORD, "5551234567")


def _lock(auth_service) -> None:
    for _ in range(5):
        with pytest.raises(AuthenticationError):
            auth_service.login(EMAIL, "WrongPass1")


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 2
    assert "unlock" in capsys.readouterr().out


def test_unlock(auth_service, registered, capsys) -> None:
    _lock(auth_service)
    assert main(["unlock", EMAIL], service=auth_service) == 0
    assert "Unlocked account" in capsys.readouterr().out
    assert auth_service.login(EMAIL, PASSWORD).user.id == registered.user.id


def test_unlock_unknown_email(auth_service, capsys) -> None:
    assert main(["unlock", "nobody@x.com"], service=auth_service) == 1
    assert "No account found" in capsys.readouterr().out


def test_sweep_sessions(auth_service, registered, clock, capsys) -> None:
    clock.advance(days=8)
    assert main(["sweep-sessions"], service=auth_service) == 0
    assert "Removed 1 expired session(s)." in capsys.readouterr().out


def test_sessions_lists_rows(auth_service, registered, capsys) -> None:
    auth_service.login(EMAIL, PASSWORD, user_agent="pytest-agent")
    assert main(["sessions", EMAIL], service=auth_service) == 0
    out = capsys.readouterr().out
    assert "2 session(s)" in out
    assert "pytest-agent" in out
    assert registered.tokens.refresh_token not in out


def test_sessions_none_active(auth_service, registered, capsys) -> None:
    auth_service.logout(registered.tokens.refresh_token)
    assert main(["sessions", EMAIL], service=auth_service) == 0
    assert "No active sessions" in capsys.readouterr().out


def test_revoke_sessions(auth_service, registered, capsys) -> None:
    assert main(["revoke-sessions", EMAIL], service=auth_service) == 0
    assert "Revoked 1 session(s)" in capsys.readouterr().out
    assert auth_service.list_sessions(registered.user.id) == []
