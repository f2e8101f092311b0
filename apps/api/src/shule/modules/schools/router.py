"""
Schools Router

Endpoints:
- GET /schools/code-availability - Check whether a school code is free (public)
- GET /schools/me - Profile of the caller's school
- PATCH /schools/me - Update the caller's school (school admins only)
- POST /schools/verify-email - Confirm the school's contact email (public)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.auth import CurrentUser, get_current_user, require_roles
from shule.core.database import get_db
from shule.dependencies import get_school_service
from shule.modules.auth.schemas import MessageResponse
from shule.modules.schools.schemas import (
    CodeAvailabilityResponse,
    ConfirmSchoolEmailRequest,
    SchoolProfileResponse,
    UpdateSchoolRequest,
)
from shule.modules.schools.service import SchoolService
from shule.modules.users.models import UserRole

router = APIRouter()


@router.get(
    "/code-availability",
    response_model=CodeAvailabilityResponse,
    summary="Check School Code",
    description="Check whether a school code (e.g. `SCH-1234`) is still available.",
)
async def code_availability(
    code: str = Query(..., min_length=1, max_length=20, description="School code to check"),
    db: AsyncSession = Depends(get_db),
    service: SchoolService = Depends(get_school_service),
) -> CodeAvailabilityResponse:
    return await service.check_code(db, code)


@router.get(
    "/me",
    response_model=SchoolProfileResponse,
    summary="My School",
    description="Profile, plan and settings count of the signed-in user's school.",
    responses={
        401: {"description": "Not authenticated"},
        404: {"description": "School not found or not active"},
    },
)
async def get_my_school(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: SchoolService = Depends(get_school_service),
) -> SchoolProfileResponse:
    return await service.get_profile(db, user.school_id)


@router.patch(
    "/me",
    response_model=SchoolProfileResponse,
    summary="Update My School",
    description="""
Update the signed-in admin's school.

Editable fields: `name`, `phone`, `address`, `district`, `region`, `country`.
Other fields in the body are ignored.
""",
    responses={
        400: {"description": "Nothing to update, or invalid phone"},
        401: {"description": "Not authenticated"},
        403: {"description": "Only school admins can update the school"},
        409: {"description": "Phone number used by another school"},
    },
)
async def update_my_school(
    body: UpdateSchoolRequest,
    user: CurrentUser = Depends(require_roles(UserRole.SCHOOL_ADMIN)),
    db: AsyncSession = Depends(get_db),
    service: SchoolService = Depends(get_school_service),
) -> SchoolProfileResponse:
    return await service.update_profile(db, user.school_id, body.model_dump(exclude_unset=True))


@router.post(
    "/verify-email",
    response_model=MessageResponse,
    summary="Confirm School Email",
    description="Confirm the school's contact email with the code sent after activation.",
    responses={
        400: {"description": "Invalid or expired code"},
        404: {"description": "No school uses this email"},
    },
)
async def verify_school_email(
    body: ConfirmSchoolEmailRequest,
    db: AsyncSession = Depends(get_db),
    service: SchoolService = Depends(get_school_service),
) -> MessageResponse:
    await service.confirm_school_email(db, body.email, body.code)
    return MessageResponse(message="School email confirmed.")
