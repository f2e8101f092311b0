"""
User Repository

Database operations for user accounts.
"""

import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shule.modules.users.models import User, UserRole

logger = logging.getLogger(__name__)


class UserRepository:
    """Repository for user database operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        email: str,
        password_hash: str,
        full_name: str,
        role: UserRole,
        phone: str | None = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        """
        Create a new user record.

        Args:
            db: Database session
            email: User's email address (stored lower-case, unique)
            password_hash: Hashed password
            full_name: User's display name
            role: User's role
            phone: Phone number (optional, unique)
            is_active: Whether user is active
            email_verified: Whether email is verified

        Returns:
            Created User instance
        """
        user = User(
            email=email.lower(),
            password_hash=password_hash,
            full_name=full_name,
            role=role,
            phone=phone,
            is_active=is_active,
            email_verified=email_verified,
            token_version=1,
        )

        db.add(user)
        await db.flush()
        await db.refresh(user)

        logger.info(f"Created user: {user.id} ({user.role.value})")
        return user

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: str | UUID) -> User | None:
        result = await db.execute(select(User).where(User.id == str(user_id)))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        result = await db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_by_email(db: AsyncSession, email: str) -> User | None:
        """Get an active (not deactivated) user by email address."""
        result = await db.execute(
            select(User).where(User.email == email.lower(), User.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def email_exists(db: AsyncSession, email: str) -> bool:
        """Check an email against active and inactive accounts alike."""
        user = await UserRepository.get_by_email(db, email)
        return user is not None

    @staticmethod
    async def mark_founder_verified(db: AsyncSession, user: User) -> User:
        """Promote a pending founder to school admin with a verified email."""
        user.role = UserRole.SCHOOL_ADMIN
        user.email_verified = True

        await db.flush()
        logger.info(f"Founder {user.id} verified and promoted to {user.role.value}")
        return user

    @staticmethod
    async def update_last_login(db: AsyncSession, user: User) -> None:
        user.last_login = datetime.now(UTC)
        await db.flush()

    @staticmethod
    async def set_password(db: AsyncSession, user: User, password_hash: str) -> int:
        """
        Replace the password hash and bump token_version.

        Bumping the version invalidates every refresh token issued before
        the change.

        Returns:
            The new token version
        """
        result = await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(password_hash=password_hash, token_version=User.token_version + 1)
            .returning(User.token_version)
            .execution_options(synchronize_session=False)
        )
        new_version = result.scalar_one()
        user.password_hash = password_hash
        user.token_version = new_version

        logger.info(f"Password changed for user {user.id}, token version now {new_version}")
        return new_version
