#!/usr/bin/env python3
"""Sign in to the Cerberus IR backend and manage the stored session.

Usage:
    # Persist the session between invocations in a JSON file:
    export CREDENTIAL_STORE=file
    python scripts/auth_session.py login --username asmith
    python scripts/auth_session.py whoami
    python scripts/auth_session.py refresh
    python scripts/auth_session.py change-password
    python scripts/auth_session.py logout --all

Environment Variables:
    CERBERUS_API_BASE_URL: Identity service base URL (default http://localhost:8000)
    CREDENTIAL_STORE: memory, file or redis
    CREDENTIAL_STORE_PATH: JSON file used by the file store
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _print_user(user) -> None:
    print(f"Signed in as {user.display_name} ({user.username})")
    print(f"  id:         {user.id}")
    print(f"  email:      {user.email or '-'}")
    print(f"  role:       {getattr(user.role, 'value', user.role)}")
    print(f"  department: {user.department or '-'}")


async def run(args: argparse.Namespace) -> int:
    # Import here to avoid loading config before env vars are set
    from cerberus_auth.service.runtime import get_runtime

    runtime = get_runtime()
    session = runtime.session
    try:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            result = await session.login(args.username, password)
            if not result.ok:
                print(f"Login failed: {result.message}", file=sys.stderr)
                return 1
            _print_user(result.value)
            return 0

        if args.command == "logout":
            await session.logout(all_devices=args.all)
            print("Signed out" + (" everywhere" if args.all else ""))
            return 0

        if args.command == "health":
            healthy = await runtime.identity.health()
            print("healthy" if healthy else "unreachable")
            return 0 if healthy else 1

        user = await session.init()
        if args.command == "status":
            if user is None:
                print("Not signed in")
                return 1
            _print_user(user)
            return 0

        if user is None:
            print("Not signed in", file=sys.stderr)
            return 1

        if args.command == "whoami":
            _print_user(user)
            return 0

        if args.command == "refresh":
            result = await session.refresh()
            if not result.ok:
                print(f"Refresh failed: {result.message}", file=sys.stderr)
                return 1
            print("Tokens refreshed")
            return 0

        if args.command == "change-password":
            current = getpass.getpass("Current password: ")
            new = getpass.getpass("New password: ")
            if new != getpass.getpass("Confirm new password: "):
                print("Passwords do not match", file=sys.stderr)
                return 1
            result = await session.change_password(current, new)
            if not result.ok:
                print(f"Password change failed: {result.message}", file=sys.stderr)
                return 1
            print("Password changed")
            return 0
    finally:
        await runtime.aclose()
    return 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage the Cerberus IR console session")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in and store the session")
    login.add_argument("--username", required=True)
    login.add_argument("--password", help="Prompted for when omitted")

    logout = sub.add_parser("logout", help="Sign out and clear the stored session")
    logout.add_argument("--all", action="store_true", help="Revoke sessions on every device")

    sub.add_parser("whoami", help="Validate the stored session and show the user")
    sub.add_parser("status", help="Show whether a valid session is stored")
    sub.add_parser("refresh", help="Exchange the refresh token for a new pair")
    sub.add_parser("change-password", help="Change the signed-in user's password")
    sub.add_parser("health", help="Probe the identity service")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
