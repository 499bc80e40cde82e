#!/usr/bin/env python3
"""
Credgate -- administrative commands for the authentication store.

These are the manual operations that no request flow triggers by itself:
lifting a lockout, sweeping expired sessions, and inspecting or revoking a
user's sessions. They talk to the same database the API uses
(DATABASE_URL, see core/config.py).

Usage:
  python main.py unlock a@x.com
  python main.py sweep-sessions
  python main.py sessions a@x.com
  python main.py revoke-sessions a@x.com
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional

from auth.errors import InternalError
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import Settings, get_settings

logger = logging.getLogger("credgate.cli")


def build_service(settings: Settings) -> AuthService:
    """Wire an AuthService against settings.database_url."""
    credentials = CredentialStore(settings.database_url)
    sessions = SessionStore(settings.database_url)
    return AuthService.from_settings(settings, credentials, sessions, TokenService.from_settings(settings))


def _cmd_unlock(service: AuthService, args: argparse.Namespace) -> int:
    record = service.unlock_account(args.email)
    if record is None:
        print(f"  [!] No account found for '{args.email}'.")
        return 1
    print(f"  Unlocked account {record.id} ({record.email}). Failed attempts reset to 0.")
    return 0


def _cmd_sweep(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.sweep_expired_sessions()
    print(f"  Removed {removed} expired session(s).")
    return 0


def _cmd_sessions(service: AuthService, args: argparse.Namespace) -> int:
    record = service.find_account(args.email)
    if record is None:
        print(f"  [!] No account found for '{args.email}'.")
        return 1
    sessions = service.list_sessions(record.id)
    if not sessions:
        print(f"  No active sessions for {record.email}.")
        return 0
    print(f"  {len(sessions)} session(s) for {record.email}:")
    for s in sessions:
        print(
            f"    #{s.id}  created {s.created_at:%Y-%m-%d %H:%M}  "
            f"expires {s.expires_at:%Y-%m-%d %H:%M}  "
            f"{s.ip_address or '-'}  {s.user_agent or '-'}"
        )
    return 0


def _cmd_revoke(service: AuthService, args: argparse.Namespace) -> int:
    record = service.find_account(args.email)
    if record is None:
        print(f"  [!] No account found for '{args.email}'.")
        return 1
    count = service.logout_all(record.id)
    print(f"  Revoked {count} session(s) for {record.email}.")
    return 0


def main(argv: Optional[list[str]] = None, service: Optional[AuthService] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="credgate",
        description="Administrative commands for the Credgate authentication store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py unlock a@x.com
  python main.py sweep-sessions
  DATABASE_URL=postgresql://user:pw@host/db python main.py sessions a@x.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_unlock = sub.add_parser("unlock", help="Clear a lockout and reset the failed-attempt counter")
    p_unlock.add_argument("email")
    p_unlock.set_defaults(handler=_cmd_unlock)

    p_sweep = sub.add_parser("sweep-sessions", help="Delete every expired session")
    p_sweep.set_defaults(handler=_cmd_sweep)

    p_sessions = sub.add_parser("sessions", help="List a user's sessions, newest first")
    p_sessions.add_argument("email")
    p_sessions.set_defaults(handler=_cmd_sessions)

    p_revoke = sub.add_parser("revoke-sessions", help="Log a user out on every device")
    p_revoke.add_argument("email")
    p_revoke.set_defaults(handler=_cmd_revoke)

    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    if service is None:
        service = build_service(get_settings())
    try:
        return args.handler(service, args)
    except InternalError:
        print("  [!] The authentication store is unavailable. See the log for details.")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
