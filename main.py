#!/usr/bin/env python3
"""
Sentinel identity -- operator command line.

Usage:
  python main.py init
  python main.py create-admin --username root --email root@example.com
  python main.py issue-key --username ci-bot --name deploy --scope threat:read --scope case:read
  python main.py revoke-key --key-id KEY-0123456789ABCDEF --by ops
  python main.py set-status --username mallory --status DISABLED
  python main.py permissions --username alice

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity store (default: SQLite beside auth/).
  SECRET_KEY    Token signing secret. Required unless DEBUG=true.

Passwords are read interactively (getpass) so they never land in shell history.
"""

import argparse
import getpass
import json
import sys

from auth.errors import AccountError
from auth.models import AccountStatus
from auth.services import AuthServices, build_services
from core.config import get_settings

_CLI_ACTOR = "cli"


def _prompt_password() -> str:
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _require_user(services: AuthServices, username: str):
    user = services.users.get_by_username(username)
    if user is None:
        print(f"  [!] No user named '{username}'.")
        sys.exit(1)
    return user


def cmd_init(services: AuthServices, args: argparse.Namespace) -> None:
    # build_services() already created the schema and seeded the defaults.
    roles = services.users.list_roles()
    print(f"  Identity store ready: {len(roles)} roles.")
    for role in roles:
        parent = f" (inherits {role.parent_role_id})" if role.parent_role_id else ""
        print(f"    {role.id:<22} {len(role.permissions):>3} permissions{parent}")


def cmd_create_admin(services: AuthServices, args: argparse.Namespace) -> None:
    password = _prompt_password()
    user = services.guard.register(args.username, args.email, password, role_id=args.role, created_by=_CLI_ACTOR)
    print(f"  Created {user.username} ({user.id}) with role {user.role_id}.")


def cmd_issue_key(services: AuthServices, args: argparse.Namespace) -> None:
    user = _require_user(services, args.username)
    issued = services.api_keys.issue_key(
        user.id,
        user.organization_id,
        args.name,
        scopes=args.scope or None,
        expires_in_days=args.expires_in_days,
        rate_limit=args.rate_limit,
        ip_allowlist=args.allow_ip or None,
    )
    print(f"  Key id:  {issued.record.id}")
    print(f"  Scopes:  {', '.join(issued.record.scopes)}")
    print(f"  API key: {issued.raw_key}")
    print("  Store this key now. It cannot be shown again.")


def cmd_revoke_key(services: AuthServices, args: argparse.Namespace) -> None:
    key = services.api_keys.get_key(args.key_id)
    if key is None:
        print(f"  [!] No API key with id '{args.key_id}'.")
        sys.exit(1)
    if services.api_keys.revoke_key(key.key_hash, args.by):
        print(f"  Revoked {key.id} ({key.name}).")
    else:
        print(f"  {key.id} was already revoked.")


def cmd_set_status(services: AuthServices, args: argparse.Namespace) -> None:
    user = _require_user(services, args.username)
    updated = services.guard.set_status(user.id, AccountStatus(args.status), actor=_CLI_ACTOR)
    print(f"  {updated.username} is now {updated.status.value}.")


def cmd_permissions(services: AuthServices, args: argparse.Namespace) -> None:
    user = _require_user(services, args.username)
    print(json.dumps(services.resolver.permission_summary(user.id), indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sentinel",
        description="Sentinel identity core -- operator tasks.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init", help="Create tables and seed default roles.")

    p = sub.add_parser("create-admin", help="Create an account (default role ROLE-SUPERADMIN).")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--role", default="ROLE-SUPERADMIN", help="Role id to assign.")

    p = sub.add_parser("issue-key", help="Issue an API key for a user.")
    p.add_argument("--username", required=True)
    p.add_argument("--name", required=True, help="Human-readable key label.")
    p.add_argument("--scope", action="append", metavar="RESOURCE:ACTION", help="Repeatable. Default: *")
    p.add_argument("--expires-in-days", type=int, default=None)
    p.add_argument("--rate-limit", type=int, default=None, help="Requests per window.")
    p.add_argument("--allow-ip", action="append", metavar="ADDR_OR_CIDR", help="Repeatable.")

    p = sub.add_parser("revoke-key", help="Permanently revoke an API key.")
    p.add_argument("--key-id", required=True)
    p.add_argument("--by", default=_CLI_ACTOR, help="Recorded as the revoking actor.")

    p = sub.add_parser("set-status", help="Disable, re-enable, or unlock an account.")
    p.add_argument("--username", required=True)
    p.add_argument("--status", required=True, choices=[AccountStatus.ACTIVE.value, AccountStatus.DISABLED.value])

    p = sub.add_parser("permissions", help="Print a user's effective permissions.")
    p.add_argument("--username", required=True)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    handlers = {
        "init": cmd_init,
        "create-admin": cmd_create_admin,
        "issue-key": cmd_issue_key,
        "revoke-key": cmd_revoke_key,
        "set-status": cmd_set_status,
        "permissions": cmd_permissions,
    }

    services = build_services(get_settings())
    try:
        handlers[args.command](services, args)
    except AccountError as exc:
        print(f"  [!] {exc.message}")
        sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    main()
