"""
Verification Code Repository

Database operations for one-time verification codes.

Design Principles:
- Consumption is a single conditional UPDATE ... RETURNING, so two
  concurrent validations of the same code can never both succeed
- No commits here; the calling service owns the transaction
- Timezone-aware datetime handling (UTC)
"""

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import VerificationCode, VerificationType


async def create(
    db: AsyncSession,
    *,
    email: str,
    code: str,
    type: VerificationType,
    expires_at: datetime,
    metadata: dict | None = None,
    user_id: str | None = None,
    school_id: str | None = None,
) -> VerificationCode:
    """Insert a new unused verification code."""

    record = VerificationCode(
        email=email,
        code=code,
        type=type,
        expires_at=expires_at,
        code_metadata=metadata or {},
        user_id=user_id,
        school_id=school_id,
        used=False,
    )

    db.add(record)
    await db.flush()
    await db.refresh(record)

    return record


async def consume(
    db: AsyncSession,
    *,
    email: str,
    code: str,
    type: VerificationType,
) -> VerificationCode | None:
    """
    Atomically mark the newest matching valid code as used.

    Returns:
        The consumed row, or None if no unused, unexpired match exists
    """

    newest_valid = (
        select(VerificationCode.id)
        .where(
            VerificationCode.email == email,
            VerificationCode.code == code,
            VerificationCode.type == type,
            VerificationCode.used.is_(False),
            VerificationCode.expires_at > func.now(),
        )
        .order_by(VerificationCode.created_at.desc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    result = await db.execute(
        update(VerificationCode)
        .where(VerificationCode.id == newest_valid, VerificationCode.used.is_(False))
        .values(used=True, used_at=func.now())
        .returning(VerificationCode)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def find_match(
    db: AsyncSession,
    *,
    email: str,
    code: str,
    type: VerificationType,
) -> VerificationCode | None:
    """Newest row for (email, code, type) regardless of state. Used for diagnostics."""

    result = await db.execute(
        select(VerificationCode)
        .where(
            VerificationCode.email == email,
            VerificationCode.code == code,
            VerificationCode.type == type,
        )
        .order_by(VerificationCode.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_created_since(
    db: AsyncSession,
    *,
    email: str,
    type: VerificationType,
    since: datetime,
) -> int:
    """Count codes issued for (email, type) after ``since``."""

    result = await db.execute(
        select(func.count())
        .select_from(VerificationCode)
        .where(
            VerificationCode.email == email,
            VerificationCode.type == type,
            VerificationCode.created_at > since,
        )
    )
    return result.scalar_one()


async def get_latest(
    db: AsyncSession,
    *,
    email: str,
    type: VerificationType,
) -> VerificationCode | None:
    """Most recently issued code for (email, type)."""

    result = await db.execute(
        select(VerificationCode)
        .where(VerificationCode.email == email, VerificationCode.type == type)
        .order_by(VerificationCode.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def invalidate_unused(
    db: AsyncSession,
    *,
    email: str,
    type: VerificationType,
) -> int:
    """Mark every still-unused code for (email, type) as used."""

    result = await db.execute(
        update(VerificationCode)
        .where(
            VerificationCode.email == email,
            VerificationCode.type == type,
            VerificationCode.used.is_(False),
        )
        .values(used=True, used_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def purge_expired(db: AsyncSession, *, expired_before: datetime) -> int:
    """Delete codes that expired before the given time."""

    result = await db.execute(
        delete(VerificationCode)
        .where(VerificationCode.expires_at < expired_before)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
