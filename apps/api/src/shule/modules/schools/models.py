"""
School Models

Database models for school (tenant) management.
Each school is a tenant in the multi-tenant architecture; tenant data is
scoped by school_id in a shared schema.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from shule.modules.shared import BaseModel


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SchoolStatus(str, Enum):
    """Status of a school tenant."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class MembershipRole(str, Enum):
    """A user's role within one school."""

    OWNER = "owner"
    PRINCIPAL = "principal"
    TEACHER = "teacher"
    ACCOUNTANT = "accountant"
    PARENT = "parent"
    VIEWER = "viewer"


class SubscriptionStatus(str, Enum):
    """Billing state of a school subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class School(BaseModel):
    """
    School tenant model.

    Created pending together with its founder at registration and activated
    only when the founder verifies their email. Schools are never deleted.
    """

    __tablename__ = "schools"

    # Public identifier, immutable once assigned (SCH-NNNN)
    code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        index=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )

    # Contact information
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    phone: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
    )

    # Location
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    district: Mapped[str | None] = mapped_column(String(100), nullable=True)
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="Tanzania",
    )

    # Registration identifiers
    tin: Mapped[str | None] = mapped_column(String(50), nullable=True)
    registration_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[SchoolStatus] = mapped_column(
        ENUM(SchoolStatus, name="school_status", values_callable=_enum_values),
        nullable=False,
        default=SchoolStatus.PENDING,
    )

    # ON DELETE SET NULL: users are never hard-deleted, but keep the FK safe
    founder_user_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    email_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<School(id={self.id}, code={self.code}, status={self.status.value})>"


class SchoolMembership(BaseModel):
    """
    Links a user to a school with a role.

    Memberships are soft-deleted by setting removed_at. A (school, user) pair
    is unique among non-removed rows.
    """

    __tablename__ = "school_memberships"
    __table_args__ = (
        Index(
            "uq_school_memberships_active",
            "school_id",
            "user_id",
            unique=True,
            postgresql_where=text("removed_at IS NULL"),
        ),
    )

    school_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[MembershipRole] = mapped_column(
        ENUM(MembershipRole, name="membership_role", values_callable=_enum_values),
        nullable=False,
    )
    is_primary_contact: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    permissions: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    added_by: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    removed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<SchoolMembership(school_id={self.school_id}, user_id={self.user_id}, "
            f"role={self.role.value})>"
        )


class SchoolSubscription(BaseModel):
    """Plan and limits for a school."""

    __tablename__ = "school_subscriptions"

    school_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        ENUM(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.TRIAL,
    )
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    max_students: Mapped[int] = mapped_column(Integer, nullable=False)
    max_teachers: Mapped[int] = mapped_column(Integer, nullable=False)


class SchoolSetting(BaseModel):
    """A single configurable value for a school, grouped by category."""

    __tablename__ = "school_settings"
    __table_args__ = (
        UniqueConstraint(
            "school_id",
            "category",
            "setting_key",
            name="uq_school_settings_school_category_key",
        ),
    )

    school_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    setting_key: Mapped[str] = mapped_column(String(100), nullable=False)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)
    setting_type: Mapped[str] = mapped_column(String(20), nullable=False, default="string")
