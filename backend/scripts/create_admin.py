#!/usr/bin/env python3
"""
Bootstrap the first admin of an empty deployment.

Email and password come from the command line, else from FIRST_ADMIN_EMAIL /
FIRST_ADMIN_PASSWORD. Does nothing once any user exists.
Run from backend/: python -m scripts.create_admin --email ops@example.com
"""
import argparse
import asyncio
import getpass
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create the first admin user.")
    parser.add_argument("--email", help="Admin login email (default: FIRST_ADMIN_EMAIL)")
    parser.add_argument("--name", default="Admin", help="Display name")
    parser.add_argument(
        "--password",
        help="Admin password (default: FIRST_ADMIN_PASSWORD, else prompted)",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    from app.config import get_settings
    from app.database import async_session, init_db
    from app.services.auth_service import bootstrap_first_admin

    args = _parse_args(argv)
    settings = get_settings()
    email = args.email or settings.first_admin_email
    if not email:
        print("Error: pass --email or set FIRST_ADMIN_EMAIL")
        return 1
    password = args.password or settings.first_admin_password or getpass.getpass("Admin password: ")
    if len(password) < 8:
        print("Error: password must be at least 8 characters")
        return 1

    await init_db()
    async with async_session() as db:
        admin = await bootstrap_first_admin(db, email, password, name=args.name)
        if admin is None:
            print("Users already exist; the first admin can only be created on an empty database.")
            return 0
        await db.commit()
    print(f"Created admin user: {admin.email}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
