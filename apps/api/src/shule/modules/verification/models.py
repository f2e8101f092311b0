"""
Verification Code Models

One-time codes sent by email to prove control of an address.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from shule.modules.shared import BaseModel


class VerificationType(str, Enum):
    """What a verification code proves."""

    FOUNDER_REGISTRATION = "founder_registration"
    SCHOOL_EMAIL = "school_email"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    TEACHER_INVITATION = "teacher_invitation"
    PARENT_INVITATION = "parent_invitation"


class VerificationCode(BaseModel):
    """
    A one-time verification code.

    A code is valid while used is False and expires_at is in the future.
    Consumption flips used to True in a single conditional UPDATE.
    """

    __tablename__ = "verification_codes"
    __table_args__ = (
        Index("ix_verification_codes_lookup", "email", "code", "type"),
        Index("ix_verification_codes_email_type_created", "email", "type", "created_at"),
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[VerificationType] = mapped_column(
        ENUM(
            VerificationType,
            name="verification_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    user_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
    )
    school_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=True,
    )

    # Data needed to re-send the same email (names, school code)
    # "metadata" is reserved on declarative classes
    code_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )

    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<VerificationCode(id={self.id}, type={self.type.value}, used={self.used})>"
