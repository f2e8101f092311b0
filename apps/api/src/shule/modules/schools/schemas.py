"""
School Schemas

Pydantic schemas for the school profile endpoints.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class CodeAvailabilityResponse(BaseModel):
    code: str
    available: bool


class SubscriptionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_name: str
    status: str
    start_date: datetime
    end_date: datetime
    trial_end_date: datetime | None = None
    max_students: int
    max_teachers: int


class SchoolProfileResponse(BaseModel):
    """A school's profile with its current plan."""

    id: str
    code: str
    name: str
    email: str
    phone: str
    address: str | None = None
    district: str | None = None
    region: str | None = None
    country: str
    status: str
    verified_at: datetime | None = None
    email_verified_at: datetime | None = None
    subscription: SubscriptionSummary | None = None
    settings_count: int = 0


class UpdateSchoolRequest(BaseModel):
    """
    Request body for PATCH /schools/me.

    Only these fields can be changed; anything else in the body is ignored.
    """

    model_config = ConfigDict(extra="ignore")

    name: str | None = Field(None, min_length=2, max_length=200)
    phone: str | None = Field(None, max_length=20)
    address: str | None = Field(None, max_length=500)
    district: str | None = Field(None, max_length=100)
    region: str | None = Field(None, max_length=100)
    country: str | None = Field(None, min_length=2, max_length=100)


class ConfirmSchoolEmailRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=4, max_length=20)
