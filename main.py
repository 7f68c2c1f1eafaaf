#!/usr/bin/env python3
"""
SitePass -- operator CLI for the construction portal's session engine.

Usage:
  python main.py create-user ana@obra.example --role "lider de obra"
  python main.py list-users
  python main.py deactivate ana@obra.example
  python main.py unlock ana@obra.example
  python main.py revoke-sessions ana@obra.example
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: auth/sitepass_auth.db)
  SECRET_KEY    Required unless DEBUG=true; refresh hashes depend on it
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.engine import Engine

from auth.errors import AccountExists, AuthError
from auth.models import ROLES
from auth.sessions import SessionService
from auth.store import RefreshTokenStore, SqlAttemptStore, SqlRateWindowStore, UserStore, create_store_engine
from auth.tokens import normalize_identifier
from core.config import get_settings


def _build_service(engine: Engine) -> SessionService:
    settings = get_settings()
    return SessionService.from_settings(
        settings,
        users=UserStore(engine=engine),
        refresh_tokens=RefreshTokenStore(engine=engine),
        attempt_store=SqlAttemptStore(engine=engine),
        rate_store=SqlRateWindowStore(engine=engine),
    )


def _read_password(prompt: str = "Password: ") -> str:
    """Prompt twice without echo. Returns "" when the entries differ."""
    first = getpass.getpass(prompt)
    second = getpass.getpass("Repeat password: ")
    return first if first == second else ""


def _cmd_create_user(service: SessionService, args: argparse.Namespace) -> int:
    password = args.password or _read_password()
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters (and both entries must match).")
        return 2
    try:
        user = service.register(args.email, password, role=args.role)
    except AccountExists:
        print(f"  [!] {normalize_identifier(args.email)} already exists.")
        return 1
    print(f"  Created user {user.username} (id={user.id}, role={user.role}).")
    return 0


def _cmd_list_users(service: SessionService, args: argparse.Namespace) -> int:
    users = service.users.list_users()
    if not users:
        print("  No users.")
        return 0
    for user in users:
        status = "active" if user.is_active else "inactive"
        sessions = service.active_sessions(user.id)
        print(
            f"  {user.id:>5}  {user.username:<40} {user.role:<15} {status:<9} "
            f"sessions={sessions:<3} last_login={user.last_login or '-'}"
        )
    return 0


def _cmd_deactivate(service: SessionService, args: argparse.Namespace) -> int:
    user = service.users.get_by_username(normalize_identifier(args.email))
    if user is None:
        print(f"  [!] No such user: {args.email}")
        return 1
    service.users.update_user(user.id, is_active=0)
    revoked = service.revoke_all_for_user(user.id, reason="account_deactivated")
    print(f"  Deactivated {user.username}; {revoked} session record(s) revoked.")
    return 0


def _cmd_unlock(service: SessionService, args: argparse.Namespace) -> int:
    service.unlock(args.email)
    print(f"  Cleared lockout state for {normalize_identifier(args.email)}.")
    return 0


def _cmd_revoke_sessions(service: SessionService, args: argparse.Namespace) -> int:
    user = service.users.get_by_username(normalize_identifier(args.email))
    if user is None:
        print(f"  [!] No such user: {args.email}")
        return 1
    revoked = service.revoke_all_for_user(user.id, reason="admin_revoked")
    print(f"  Revoked {revoked} session record(s) for {user.username}.")
    return 0


def _cmd_purge(service: SessionService, args: argparse.Namespace) -> int:
    removed = service.purge_expired()
    print(f"  Purged {removed} expired refresh record(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sitepass",
        description="Account and session administration for SitePass.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user admin@obra.example --role admin
  python main.py unlock ana@obra.example
  DATABASE_URL=sqlite:////var/lib/sitepass/auth.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create an account")
    p.add_argument("email", help="Login e-mail address")
    p.add_argument("--role", choices=ROLES, default="cliente", metavar="ROLE", help=f"One of {', '.join(ROLES)}")
    p.add_argument("--password", help="Password (prompted without echo when omitted)")
    p.set_defaults(handler=_cmd_create_user)

    p = sub.add_parser("list-users", help="List every account")
    p.set_defaults(handler=_cmd_list_users)

    p = sub.add_parser("deactivate", help="Deactivate an account and revoke its sessions")
    p.add_argument("email")
    p.set_defaults(handler=_cmd_deactivate)

    p = sub.add_parser("unlock", help="Clear the login lockout for an identifier")
    p.add_argument("email")
    p.set_defaults(handler=_cmd_unlock)

    p = sub.add_parser("revoke-sessions", help="Revoke every session of an account")
    p.add_argument("email")
    p.set_defaults(handler=_cmd_revoke_sessions)

    p = sub.add_parser("purge", help="Delete expired refresh records")
    p.set_defaults(handler=_cmd_purge)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    engine = create_store_engine(settings.database_url) if settings.database_url else create_store_engine()
    try:
        return args.handler(_build_service(engine), args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
