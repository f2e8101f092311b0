"""
School Service Layer

School profile operations for signed-in school admins, public code lookup,
and confirmation of the school's own email address.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.database import is_unique_violation
from shule.core.errors import ConflictError, NotFoundError, ValidationError
from shule.modules.schools.helpers import is_valid_phone, normalize_phone
from shule.modules.schools.models import School, SchoolStatus
from shule.modules.schools.repository import (
    SchoolRepository,
    SettingRepository,
    SubscriptionRepository,
)
from shule.modules.schools.schemas import (
    CodeAvailabilityResponse,
    SchoolProfileResponse,
    SubscriptionSummary,
)
from shule.modules.verification.models import VerificationType
from shule.modules.verification.service import INVALID_CODE_MESSAGE, VerificationCodeService

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "phone", "address", "district", "region", "country")


class SchoolService:
    """School profile operations."""

    def __init__(self, *, codes: VerificationCodeService):
        self.codes = codes

    async def check_code(self, db: AsyncSession, code: str) -> CodeAvailabilityResponse:
        code = code.strip().upper()
        if not code:
            raise ValidationError("School code is required.")

        taken = await SchoolRepository.code_exists(db, code)
        return CodeAvailabilityResponse(code=code, available=not taken)

    async def get_profile(self, db: AsyncSession, school_id: str | None) -> SchoolProfileResponse:
        """
        Profile of an active school.

        Raises:
            NotFoundError: If the school does not exist or is not active
        """
        school = await self._get_active_school(db, school_id)
        subscription = await SubscriptionRepository.get_current(db, school.id)
        settings_count = await SettingRepository.count_for_school(db, school.id)

        return _profile(school, subscription, settings_count)

    async def update_profile(
        self, db: AsyncSession, school_id: str | None, changes: dict
    ) -> SchoolProfileResponse:
        """
        Update the editable profile fields of a school.

        Args:
            db: Database session
            school_id: School of the signed-in admin
            changes: Requested changes; keys outside UPDATABLE_FIELDS are ignored

        Raises:
            NotFoundError: If the school does not exist or is not active
            ValidationError: If no editable field was supplied or the phone is invalid
            ConflictError: If the new phone number belongs to another school
        """
        school = await self._get_active_school(db, school_id)

        updates = {
            field: value
            for field, value in changes.items()
            if field in UPDATABLE_FIELDS and value is not None
        }
        if not updates:
            raise ValidationError(
                f"Nothing to update. Editable fields: {', '.join(UPDATABLE_FIELDS)}."
            )

        if "name" in updates:
            updates["name"] = updates["name"].strip()

        if "phone" in updates:
            phone = normalize_phone(updates["phone"])
            if not is_valid_phone(phone):
                raise ValidationError("Phone number must look like +255XXXXXXXXX or 0XXXXXXXXX")
            if await SchoolRepository.phone_exists(db, phone, exclude_school_id=school.id):
                raise ConflictError("Another school already uses this phone number.")
            updates["phone"] = phone

        try:
            school = await SchoolRepository.update_fields(db, school, updates)
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if is_unique_violation(e):
                raise ConflictError("Another school already uses this phone number.") from e
            raise

        subscription = await SubscriptionRepository.get_current(db, school.id)
        settings_count = await SettingRepository.count_for_school(db, school.id)
        return _profile(school, subscription, settings_count)

    async def confirm_school_email(self, db: AsyncSession, email: str, code: str) -> None:
        """
        Confirm the school's contact address with a school_email code.

        Raises:
            ValidationError: If the code is invalid or expired
            NotFoundError: If no school uses this email
        """
        email = email.lower()
        validation = await self.codes.validate(
            db, email=email, code=code, type=VerificationType.SCHOOL_EMAIL
        )
        if not validation.valid:
            await db.rollback()
            raise ValidationError(INVALID_CODE_MESSAGE, "INVALID_CODE")

        school = await SchoolRepository.get_by_email(db, email)
        if school is None:
            await db.rollback()
            raise NotFoundError("School not found.", "SCHOOL_NOT_FOUND")

        await SchoolRepository.mark_email_verified(db, school)
        await db.commit()

    async def _get_active_school(self, db: AsyncSession, school_id: str | None) -> School:
        school = await SchoolRepository.get_by_id(db, school_id) if school_id else None
        if school is None or school.status != SchoolStatus.ACTIVE:
            raise NotFoundError("School not found or not active.", "SCHOOL_NOT_FOUND")
        return school


def _profile(school: School, subscription, settings_count: int) -> SchoolProfileResponse:
    return SchoolProfileResponse(
        id=school.id,
        code=school.code,
        name=school.name,
        email=school.email,
        phone=school.phone,
        address=school.address,
        district=school.district,
        region=school.region,
        country=school.country,
        status=school.status.value,
        verified_at=school.verified_at,
        email_verified_at=school.email_verified_at,
        subscription=(
            SubscriptionSummary(
                plan_name=subscription.plan_name,
                status=subscription.status.value,
                start_date=subscription.start_date,
                end_date=subscription.end_date,
                trial_end_date=subscription.trial_end_date,
                max_students=subscription.max_students,
                max_teachers=subscription.max_teachers,
            )
            if subscription
            else None
        ),
        settings_count=settings_count,
    )
