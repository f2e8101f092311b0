"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration creates:
1. Enum types for user roles, school status, membership roles,
   subscription status and verification types
2. users and schools (schools reference their founder)
3. school_memberships with a partial unique index on active rows
4. school_subscriptions and school_settings
5. verification_codes and refresh_tokens
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS = {
    "user_role": ("super_admin", "school_admin", "teacher", "parent", "pending_admin"),
    "school_status": ("pending", "active", "suspended"),
    "membership_role": ("owner", "principal", "teacher", "accountant", "parent", "viewer"),
    "subscription_status": ("trial", "active", "expired", "cancelled"),
    "verification_type": (
        "founder_registration",
        "school_email",
        "password_reset",
        "email_change",
        "teacher_invitation",
        "parent_invitation",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _base_columns() -> list[sa.Column]:
    """Primary key and timestamps (from BaseModel)."""
    return [
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create all tables."""
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # users
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False),
        sa.Column("role", _enum("user_role"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    # schools
    op.create_table(
        "schools",
        *_base_columns(),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("district", sa.String(length=100), nullable=True),
        sa.Column("region", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=False),
        sa.Column("tin", sa.String(length=50), nullable=True),
        sa.Column("registration_number", sa.String(length=100), nullable=True),
        sa.Column("status", _enum("school_status"), nullable=False),
        sa.Column("founder_user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["founder_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("phone"),
    )
    op.create_index(op.f("ix_schools_code"), "schools", ["code"], unique=True)
    op.create_index(op.f("ix_schools_name"), "schools", ["name"], unique=False)
    op.create_index(
        op.f("ix_schools_founder_user_id"), "schools", ["founder_user_id"], unique=False
    )

    # school_memberships
    op.create_table(
        "school_memberships",
        *_base_columns(),
        sa.Column("school_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("role", _enum("membership_role"), nullable=False),
        sa.Column("is_primary_contact", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column(
            "permissions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("added_by", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["added_by"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index(
        op.f("ix_school_memberships_school_id"), "school_memberships", ["school_id"]
    )
    op.create_index(op.f("ix_school_memberships_user_id"), "school_memberships", ["user_id"])
    op.create_index(
        "uq_school_memberships_active",
        "school_memberships",
        ["school_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("removed_at IS NULL"),
    )

    # school_subscriptions
    op.create_table(
        "school_subscriptions",
        *_base_columns(),
        sa.Column("school_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("plan_name", sa.String(length=50), nullable=False),
        sa.Column("status", _enum("subscription_status"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_students", sa.Integer(), nullable=False),
        sa.Column("max_teachers", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="CASCADE"),
    )
    op.create_index(
        op.f("ix_school_subscriptions_school_id"), "school_subscriptions", ["school_id"]
    )

    # school_settings
    op.create_table(
        "school_settings",
        *_base_columns(),
        sa.Column("school_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("setting_key", sa.String(length=100), nullable=False),
        sa.Column("setting_value", sa.Text(), nullable=False),
        sa.Column("setting_type", sa.String(length=20), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "school_id",
            "category",
            "setting_key",
            name="uq_school_settings_school_category_key",
        ),
    )
    op.create_index(op.f("ix_school_settings_school_id"), "school_settings", ["school_id"])

    # verification_codes
    op.create_table(
        "verification_codes",
        *_base_columns(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("type", _enum("verification_type"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("used", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_verification_codes_lookup", "verification_codes", ["email", "code", "type"]
    )
    op.create_index(
        "ix_verification_codes_email_type_created",
        "verification_codes",
        ["email", "type", "created_at"],
    )

    # refresh_tokens
    op.create_table(
        "refresh_tokens",
        *_base_columns(),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index(op.f("ix_refresh_tokens_user_id"), "refresh_tokens", ["user_id"])
    op.create_index(
        op.f("ix_refresh_tokens_token_hash"), "refresh_tokens", ["token_hash"], unique=True
    )


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table("refresh_tokens")
    op.drop_table("verification_codes")
    op.drop_table("school_settings")
    op.drop_table("school_subscriptions")
    op.drop_index("uq_school_memberships_active", table_name="school_memberships")
    op.drop_table("school_memberships")
    op.drop_table("schools")
    op.drop_table("users")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
