#!/usr/bin/env python3
"""Create or update a principal in the Wapiti DB.

Usage:
    python scripts/add_user.py username [password] [--admin] [--db PATH]

Initializes the DB (running migrations) and then creates or updates a User
record with a hashed password. Omit the password to be prompted.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import getpass
from typing import Optional


async def _create_or_update(username: str, password: str, is_admin: bool = False) -> Optional['User']:
    # Import lazily so DATABASE_URL set by --db is honoured by wapiti.db.
    from wapiti.db import init_db, async_session
    from wapiti.models import User
    from wapiti.auth import hash_password
    from sqlmodel import select
    await init_db()
    ph = hash_password(password)
    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.username == username))
        user = q.first()
        if user:
            user.password_hash = ph
            user.is_admin = bool(is_admin)
        else:
            user = User(username=username, password_hash=ph, is_admin=bool(is_admin))
        sess.add(user)
        try:
            await sess.commit()
        except Exception:
            await sess.rollback()
            print(f"Failed to save user {username}", file=sys.stderr)
            return None
        await sess.refresh(user)
        return user


def parse_args(argv):
    p = argparse.ArgumentParser(description="Create or update a user in the Wapiti DB")
    p.add_argument("username", help="username to create/update")
    p.add_argument("password", nargs="?", help="password for the user (omit to prompt)")
    p.add_argument("--admin", action="store_true", help="mark user as admin (may trigger /reminders/run)")
    p.add_argument("--db", default=None, help="sqlite file to use instead of DATABASE_URL")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.db:
        os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{args.db}"
    password = args.password
    if not password:
        pw = getpass.getpass("Password: ")
        pw2 = getpass.getpass("Confirm password: ")
        if pw != pw2:
            print("Passwords do not match", file=sys.stderr)
            return 2
        if pw == "":
            print("Empty password not allowed", file=sys.stderr)
            return 2
        password = pw

    user = asyncio.run(_create_or_update(args.username, password, args.admin))
    if not user:
        return 2
    print(f"User '{user.username}' ({'admin' if user.is_admin else 'user'}) saved with id={user.id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
