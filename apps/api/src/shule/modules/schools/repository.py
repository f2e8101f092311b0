"""
School Repository

Database operations for schools, memberships, subscriptions and settings.
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.errors import ConflictError
from shule.modules.schools.models import (
    MembershipRole,
    School,
    SchoolMembership,
    SchoolSetting,
    SchoolStatus,
    SchoolSubscription,
    SubscriptionStatus,
)
from shule.modules.users.models import User

logger = logging.getLogger(__name__)

# Roles a user may hold in at most one school at a time
LEADERSHIP_ROLES = (MembershipRole.OWNER, MembershipRole.PRINCIPAL)


class SchoolRepository:
    """Repository for school database operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        code: str,
        name: str,
        email: str,
        phone: str,
        founder_user_id: str,
        address: str | None = None,
        district: str | None = None,
        region: str | None = None,
        country: str = "Tanzania",
        tin: str | None = None,
        registration_number: str | None = None,
    ) -> School:
        """
        Create a new pending school record.

        Args:
            db: Database session
            code: Unique public school code
            name: School name
            email: School email address (unique)
            phone: School phone number (unique)
            founder_user_id: User who registered the school
            address: Street address (optional)
            district: District (optional)
            region: Region (optional)
            country: Country name
            tin: Tax identification number (optional)
            registration_number: Government registration number (optional)

        Returns:
            Created School instance
        """
        school = School(
            code=code,
            name=name,
            email=email.lower(),
            phone=phone,
            founder_user_id=founder_user_id,
            address=address,
            district=district,
            region=region,
            country=country,
            tin=tin,
            registration_number=registration_number,
            status=SchoolStatus.PENDING,
        )

        db.add(school)
        await db.flush()
        await db.refresh(school)

        logger.info(f"Created school: {school.id} - {school.code}")
        return school

    @staticmethod
    async def get_by_id(db: AsyncSession, school_id: str | UUID) -> School | None:
        result = await db.execute(select(School).where(School.id == str(school_id)))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> School | None:
        result = await db.execute(select(School).where(School.email == email.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    async def code_exists(db: AsyncSession, code: str) -> bool:
        result = await db.execute(select(School.id).where(School.code == code.upper()))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def email_exists(db: AsyncSession, email: str) -> bool:
        result = await db.execute(select(School.id).where(School.email == email.lower()))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def phone_exists(
        db: AsyncSession, phone: str, *, exclude_school_id: str | None = None
    ) -> bool:
        query = select(School.id).where(School.phone == phone)
        if exclude_school_id:
            query = query.where(School.id != exclude_school_id)
        result = await db.execute(query)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def get_pending_by_founder_email(db: AsyncSession, email: str) -> School | None:
        """
        Find the pending school registered by the founder with this email.

        Args:
            db: Database session
            email: Founder's email address

        Returns:
            School instance or None if no pending registration exists
        """
        result = await db.execute(
            select(School)
            .join(User, User.id == School.founder_user_id)
            .where(User.email == email.lower(), School.status == SchoolStatus.PENDING)
            .order_by(School.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def activate(db: AsyncSession, school: School) -> School:
        """Move a pending school to active."""
        school.status = SchoolStatus.ACTIVE
        school.verified_at = datetime.now(UTC)

        await db.flush()
        logger.info(f"Activated school {school.id} ({school.code})")
        return school

    @staticmethod
    async def mark_email_verified(db: AsyncSession, school: School) -> School:
        school.email_verified_at = datetime.now(UTC)
        await db.flush()
        logger.info(f"School email verified for {school.id}")
        return school

    @staticmethod
    async def update_fields(db: AsyncSession, school: School, changes: dict) -> School:
        """Apply already-filtered field changes to a school."""
        for field, value in changes.items():
            setattr(school, field, value)

        await db.flush()
        await db.refresh(school)
        logger.info(f"Updated school {school.id}: {sorted(changes)}")
        return school


class MembershipRepository:
    """Repository for school membership operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        school_id: str,
        user_id: str,
        role: MembershipRole,
        is_primary_contact: bool = False,
        permissions: list[str] | None = None,
        added_by: str | None = None,
    ) -> SchoolMembership:
        """
        Add a user to a school.

        Raises:
            ConflictError: If the user already leads another school
        """
        if role in LEADERSHIP_ROLES:
            result = await db.execute(
                select(SchoolMembership.id).where(
                    SchoolMembership.user_id == user_id,
                    SchoolMembership.role.in_(LEADERSHIP_ROLES),
                    SchoolMembership.removed_at.is_(None),
                )
            )
            if result.first() is not None:
                raise ConflictError(
                    "This user already leads a school.",
                    error_code="MEMBERSHIP_CONFLICT",
                )

        membership = SchoolMembership(
            school_id=school_id,
            user_id=user_id,
            role=role,
            is_primary_contact=is_primary_contact,
            permissions=permissions or [],
            added_by=added_by,
        )

        db.add(membership)
        await db.flush()

        logger.info(f"Added user {user_id} to school {school_id} as {role.value}")
        return membership

    @staticmethod
    async def get_primary_for_user(db: AsyncSession, user_id: str) -> SchoolMembership | None:
        """
        Get the membership that scopes a user's session.

        Leadership memberships win over others, then the oldest membership.
        """
        leadership_first = case(
            (SchoolMembership.role.in_(LEADERSHIP_ROLES), 0),
            else_=1,
        )
        result = await db.execute(
            select(SchoolMembership)
            .where(
                SchoolMembership.user_id == str(user_id),
                SchoolMembership.removed_at.is_(None),
            )
            .order_by(leadership_first, SchoolMembership.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()


class SubscriptionRepository:
    """Repository for school subscriptions."""

    @staticmethod
    async def create_trial(
        db: AsyncSession,
        *,
        school_id: str,
        days: int,
        max_students: int,
        max_teachers: int,
    ) -> SchoolSubscription:
        start = datetime.now(UTC)
        end = start + timedelta(days=days)
        subscription = SchoolSubscription(
            school_id=school_id,
            plan_name="trial",
            status=SubscriptionStatus.TRIAL,
            start_date=start,
            end_date=end,
            trial_end_date=end,
            max_students=max_students,
            max_teachers=max_teachers,
        )

        db.add(subscription)
        await db.flush()

        logger.info(f"Created {days}-day trial for school {school_id}")
        return subscription

    @staticmethod
    async def get_current(db: AsyncSession, school_id: str) -> SchoolSubscription | None:
        result = await db.execute(
            select(SchoolSubscription)
            .where(SchoolSubscription.school_id == str(school_id))
            .order_by(SchoolSubscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class SettingRepository:
    """Repository for per-school settings."""

    @staticmethod
    async def create_many(
        db: AsyncSession,
        *,
        school_id: str,
        settings: list[tuple[str, str, str, str]],
    ) -> int:
        """Insert (category, key, value, type) settings for a school."""
        db.add_all(
            [
                SchoolSetting(
                    school_id=school_id,
                    category=category,
                    setting_key=key,
                    setting_value=value,
                    setting_type=setting_type,
                )
                for category, key, value, setting_type in settings
            ]
        )
        await db.flush()
        return len(settings)

    @staticmethod
    async def count_for_school(db: AsyncSession, school_id: str) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(SchoolSetting)
            .where(SchoolSetting.school_id == str(school_id))
        )
        return result.scalar_one()
