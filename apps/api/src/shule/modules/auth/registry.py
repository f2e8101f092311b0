"""
Refresh Token Registry

Server-side store of issued refresh tokens, keyed by the SHA-256 hash of the
raw token. A refresh token JWT is only honoured while its record here is
unrevoked and unexpired, which is what makes logout and logout-all work.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.security import hash_token
from shule.modules.auth.models import RefreshTokenRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    """Client details captured with a session."""

    user_agent: str | None = None
    ip_address: str | None = None


class RefreshTokenRegistry:
    """Issue, look up and revoke refresh token records."""

    async def issue(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        raw_token: str,
        ttl: timedelta,
        device: DeviceInfo | None = None,
    ) -> RefreshTokenRecord:
        """
        Store the hash of a newly issued refresh token.

        Args:
            db: Database session
            user_id: Owner of the token
            raw_token: The encoded refresh JWT (never stored)
            ttl: Lifetime of the record
            device: User agent and IP of the client

        Returns:
            The stored record
        """
        device = device or DeviceInfo()
        record = RefreshTokenRecord(
            user_id=str(user_id),
            token_hash=hash_token(raw_token),
            expires_at=datetime.now(UTC) + ttl,
            revoked=False,
            user_agent=device.user_agent[:500] if device.user_agent else None,
            ip_address=device.ip_address,
        )

        db.add(record)
        await db.flush()

        logger.info(f"Issued refresh token record {record.id} for user {user_id}")
        return record

    async def lookup(self, db: AsyncSession, raw_token: str) -> RefreshTokenRecord | None:
        """Return the record for a token if it is unrevoked and unexpired."""
        result = await db.execute(
            select(RefreshTokenRecord).where(
                RefreshTokenRecord.token_hash == hash_token(raw_token),
                RefreshTokenRecord.revoked.is_(False),
                RefreshTokenRecord.expires_at > func.now(),
            )
        )
        return result.scalar_one_or_none()

    async def revoke(self, db: AsyncSession, raw_token: str) -> bool:
        """
        Revoke a single token. Revoking an unknown or revoked token is a no-op.

        Returns:
            True if a record changed state
        """
        result = await db.execute(
            update(RefreshTokenRecord)
            .where(
                RefreshTokenRecord.token_hash == hash_token(raw_token),
                RefreshTokenRecord.revoked.is_(False),
            )
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def revoke_all_for_user(self, db: AsyncSession, user_id: str) -> int:
        """Revoke every outstanding token of a user in one statement."""
        result = await db.execute(
            update(RefreshTokenRecord)
            .where(
                RefreshTokenRecord.user_id == str(user_id),
                RefreshTokenRecord.revoked.is_(False),
            )
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.info(f"Revoked {count} refresh token(s) for user {user_id}")
        return count

    async def touch(self, db: AsyncSession, record_id: str) -> None:
        """
        Record that a token was just used.

        Best effort: runs in a savepoint so a failure here never aborts the
        surrounding refresh.
        """
        try:
            async with db.begin_nested():
                await db.execute(
                    update(RefreshTokenRecord)
                    .where(RefreshTokenRecord.id == str(record_id))
                    .values(last_used_at=func.now())
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.warning(f"Could not update last_used_at for refresh token {record_id}: {e}")

    async def purge_expired(self, db: AsyncSession, *, older_than: datetime) -> int:
        """Delete records that expired, or were revoked, before ``older_than``."""
        result = await db.execute(
            delete(RefreshTokenRecord)
            .where(
                or_(
                    RefreshTokenRecord.expires_at < older_than,
                    (RefreshTokenRecord.revoked.is_(True))
                    & (RefreshTokenRecord.created_at < older_than),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
