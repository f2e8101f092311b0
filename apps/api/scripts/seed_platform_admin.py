"""
Seed Platform Admin User

Creates the initial super admin for the Shule platform.
Super admins belong to no school and skip the school-status check at login.

Credentials come from the environment:
    SEED_ADMIN_EMAIL     (required)
    SEED_ADMIN_PASSWORD  (required)
    SEED_ADMIN_NAME      (default: "Platform Admin")

Usage:
    cd apps/api
    SEED_ADMIN_EMAIL=... SEED_ADMIN_PASSWORD=... python scripts/seed_platform_admin.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shule.core.config import settings  # noqa: E402
from shule.core.database import async_session_maker, close_db  # noqa: E402
from shule.core.security import PasswordHasher  # noqa: E402
from shule.modules.auth.schemas import check_password_strength  # noqa: E402
from shule.modules.users.models import UserRole  # noqa: E402
from shule.modules.users.repository import UserRepository  # noqa: E402


async def seed_platform_admin() -> None:
    """Create the platform admin user if it doesn't exist."""
    email = os.environ.get("SEED_ADMIN_EMAIL", "").strip().lower()
    password = os.environ.get("SEED_ADMIN_PASSWORD", "")
    full_name = os.environ.get("SEED_ADMIN_NAME", "Platform Admin").strip()

    if not email or not password:
        print("SEED_ADMIN_EMAIL and SEED_ADMIN_PASSWORD must be set")
        sys.exit(1)

    try:
        check_password_strength(password)
    except ValueError as e:
        print(f"Password rejected: {e}")
        sys.exit(1)

    hasher = PasswordHasher(rounds=settings.password_hash_rounds)

    async with async_session_maker() as db:
        existing_user = await UserRepository.get_by_email(db, email)

        if existing_user:
            print(f"Platform admin already exists: {email}")
            print(f"  ID: {existing_user.id}")
            print(f"  Role: {existing_user.role.value}")
            return

        admin_user = await UserRepository.create(
            db,
            email=email,
            password_hash=hasher.hash(password),
            full_name=full_name,
            role=UserRole.SUPER_ADMIN,
            is_active=True,
            email_verified=True,  # Pre-verified
        )
        await db.commit()

        print("Platform admin created successfully!")
        print(f"  Email: {email}")
        print(f"  Name: {full_name}")
        print(f"  ID: {admin_user.id}")
        print(f"  Role: {admin_user.role.value}")

    await close_db()


if __name__ == "__main__":
    asyncio.run(seed_platform_admin())
