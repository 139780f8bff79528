#!/usr/bin/env python3
"""
CLI tool to manage Sol Numérique accounts.

Usage:
    python -m app.cli.manage_users create --email admin@example.com --firstname Ada --lastname Admin --admin
    python -m app.cli.manage_users create --email jean@example.com --firstname Jean --lastname Pierre --interactive
    python -m app.cli.manage_users list
    python -m app.cli.manage_users change-password --email jean@example.com
    python -m app.cli.manage_users deactivate --email jean@example.com
    python -m app.cli.manage_users activate --email jean@example.com

When --password is omitted (and not --interactive) a random password is
generated and printed once.
"""
import asyncio
import argparse
import sys
import getpass
import secrets
from contextlib import asynccontextmanager

from app.core.exceptions import SolNumeriqueError
from app.db import connection
from app.db.models import UserRole
from app.services.user_service import UserService


@asynccontextmanager
async def cli_session():
    """Session on the configured database; commits on success."""
    await connection.init_db()
    try:
        async with connection.session_scope() as session:
            yield session
    finally:
        await connection.close_db()


def _prompt_new_password() -> str:
    password = getpass.getpass("Enter password: ")
    password_confirm = getpass.getpass("Confirm password: ")

    if password != password_confirm:
        raise SystemExit("[ERROR] Passwords do not match")
    if len(password) < 8:
        raise SystemExit("[ERROR] Password must be at least 8 characters")
    return password


async def create_user(args):
    """Create a member (or an admin with --admin)"""
    password = args.password
    if args.interactive:
        print(f"Creating user '{args.email}'")
        password = _prompt_new_password()
    elif not password:
        password = secrets.token_urlsafe(16)
        print("ℹ️  No password provided, generating random password")

    async with cli_session() as session:
        user = await UserService.create_user(
            session,
            firstname=args.firstname,
            lastname=args.lastname,
            email=args.email,
            password=password,
            phone=args.phone,
            role=UserRole.ADMIN if args.admin else UserRole.MEMBER,
        )

    print("\n" + "=" * 70)
    print("[SUCCESS] User created successfully!")
    print("=" * 70)
    print(f"  ID: {user.id}")
    print(f"  Email: {user.email}")
    print(f"  Name: {user.full_name}")
    print(f"  Role: {user.role.value}")
    if not args.interactive:
        print(f"  Password: {password}")
        print()
        print("⚠️  SAVE THIS PASSWORD - It will not be shown again!")
    print("=" * 70)


async def list_users(args):
    async with cli_session() as session:
        rows = await UserService.list_users(session, limit=10_000)

    if not rows:
        print("No users found.")
        return

    print("\n" + "=" * 70)
    print("Users:")
    print("=" * 70)
    for row in rows:
        user = row["user"]
        status = "Active" if user.is_active else "Deactivated"
        print(f"  - {user.email} ({user.full_name})")
        print(f"    ID: {user.id}  Role: {user.role.value}  Status: {status}  Sols: {row['sols_count']}")
    print()
    print(f"Total users: {len(rows)}")
    print("=" * 70)


async def change_password(args):
    print(f"Changing password for user '{args.email}'")
    new_password = _prompt_new_password()

    async with cli_session() as session:
        user = await UserService.get_user_by_email(session, args.email, include_inactive=True)
        if not user:
            raise SystemExit(f"[ERROR] User '{args.email}' not found")
        await UserService.update_password(session, user.id, new_password)

    print(f"[SUCCESS] Password updated successfully for user '{args.email}'")


async def set_active(args, is_active: bool):
    if not is_active:
        confirm = input(f"Deactivate user '{args.email}'? (yes/no): ")
        if confirm.lower() not in ['yes', 'y']:
            print("Cancelled")
            return

    async with cli_session() as session:
        user = await UserService.get_user_by_email(session, args.email, include_inactive=True)
        if not user:
            raise SystemExit(f"[ERROR] User '{args.email}' not found")
        await UserService.set_active(session, user.id, is_active)

    print(f"[SUCCESS] User '{args.email}' {'activated' if is_active else 'deactivated'} successfully")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Manage Sol Numérique users',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    create_parser = subparsers.add_parser('create', help='Create a new user')
    create_parser.add_argument('--email', required=True, help='Login email')
    create_parser.add_argument('--firstname', required=True)
    create_parser.add_argument('--lastname', required=True)
    create_parser.add_argument('--phone')
    create_parser.add_argument('--password', help='Password (if not provided, will generate random)')
    create_parser.add_argument('--interactive', action='store_true', help='Prompt for password interactively')
    create_parser.add_argument('--admin', action='store_true', help='Create an administrator')

    subparsers.add_parser('list', help='List all users')

    for name, help_text in (
        ('change-password', 'Change user password'),
        ('deactivate', 'Deactivate a user'),
        ('activate', 'Activate a user'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--email', required=True)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        'create': create_user,
        'list': list_users,
        'change-password': change_password,
        'deactivate': lambda a: set_active(a, False),
        'activate': lambda a: set_active(a, True),
    }
    try:
        asyncio.run(commands[args.command](args))
    except SolNumeriqueError as e:
        print(f"[ERROR] {e.message}")
        sys.exit(1)


if __name__ == '__main__':
    main()
