"""
Authentication Schemas

Pydantic schemas for registration, verification, session and password
endpoints.
"""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shule.modules.schools.helpers import is_valid_phone, normalize_phone

PASSWORD_MIN_LENGTH = 8


def check_password_strength(password: str) -> str:
    """At least 8 characters with at least one letter and one digit."""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise ValueError("Password must contain at least one letter and one number")
    return password


def _check_phone(phone: str) -> str:
    phone = normalize_phone(phone)
    if not is_valid_phone(phone):
        raise ValueError("Phone number must look like +255XXXXXXXXX or 0XXXXXXXXX")
    return phone


# ============================================
# Registration
# ============================================


class RegisterSchoolRequest(BaseModel):
    """Request body for POST /auth/register-school."""

    # School information
    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=20)
    address: str | None = Field(None, max_length=500)
    district: str | None = Field(None, max_length=100)
    region: str | None = Field(None, max_length=100)
    country: str = Field("Tanzania", min_length=2, max_length=100)
    tin: str | None = Field(None, max_length=50)
    registration_number: str | None = Field(None, max_length=100)

    # Founder information
    founder_name: str = Field(..., min_length=2, max_length=200)
    founder_email: EmailStr
    founder_phone: str | None = Field(None, max_length=20)
    founder_password: str = Field(..., max_length=128)

    # Agreements
    agree_terms: bool
    agree_admin: bool

    @field_validator("name", "founder_name")
    @classmethod
    def strip_names(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("must be at least 2 characters")
        return value

    @field_validator("email", "founder_email")
    @classmethod
    def lower_emails(cls, value: str) -> str:
        return value.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("founder_phone")
    @classmethod
    def validate_founder_phone(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return _check_phone(value)

    @field_validator("founder_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def validate_agreements(self) -> "RegisterSchoolRequest":
        if not self.agree_terms:
            raise ValueError("You must agree to the terms and conditions")
        if not self.agree_admin:
            raise ValueError("You must confirm you are authorized to administer this school")
        return self


class RegisteredSchool(BaseModel):
    id: str
    code: str
    name: str
    email: str
    status: str


class RegistrationResponse(BaseModel):
    """202 response for a registration that awaits email verification."""

    status: str = "pending_verification"
    message: str
    school: RegisteredSchool
    next_steps: list[str]


# ============================================
# Email verification
# ============================================


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=4, max_length=20)


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class VerifyEmailResponse(BaseModel):
    status: str = "success"
    message: str
    school: RegisteredSchool


# ============================================
# Sessions
# ============================================


class LoginRequest(BaseModel):
    """Login request schema."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str
    role: str


class SchoolSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str


class LoginResponse(BaseModel):
    """
    Login response schema.

    The refresh token is never part of the body; it is set as an
    HTTP-only cookie.
    """

    status: str = "success"
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary
    school: SchoolSummary | None = None


class RefreshResponse(BaseModel):
    status: str = "success"
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    status: str = "success"
    message: str


class LogoutAllResponse(BaseModel):
    status: str = "success"
    message: str
    revoked_sessions: int


class CurrentUserResponse(BaseModel):
    """Profile of the authenticated user (never includes the password hash)."""

    id: str
    email: str
    full_name: str
    phone: str | None = None
    role: str
    email_verified: bool
    last_login: datetime | None = None
    created_at: datetime
    school: SchoolSummary | None = None
    school_role: str | None = None
    permissions: list[str] = Field(default_factory=list)


# ============================================
# Passwords
# ============================================


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=4, max_length=20)
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_strength(value)
