"""
Auth Background Jobs

Housekeeping for credential tables:
- Delete refresh token records that expired (or were revoked) more than
  the retention period ago
- Delete verification codes that expired more than the retention period ago

Runs hourly. Safe to run repeatedly; each run only deletes rows that are
already unusable.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from shule.core.config import Settings
from shule.core.database import async_session_maker
from shule.core.scheduler import register_job
from shule.modules.auth.registry import RefreshTokenRegistry
from shule.modules.verification import repository as verification_repository

logger = logging.getLogger(__name__)

JOB_ID_PURGE_CREDENTIALS = "auth_purge_expired_credentials"


async def purge_expired_credentials(
    registry: RefreshTokenRegistry,
    retention_days: int,
) -> dict[str, Any]:
    """
    Delete refresh tokens and verification codes past their retention.

    Returns:
        Counts of deleted rows
    """
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)

    async with async_session_maker() as db:
        tokens = await registry.purge_expired(db, older_than=cutoff)
        codes = await verification_repository.purge_expired(db, expired_before=cutoff)
        await db.commit()

    logger.info(f"Housekeeping removed {tokens} refresh token(s) and {codes} verification code(s)")
    return {"refresh_tokens": tokens, "verification_codes": codes, "cutoff": cutoff.isoformat()}


def register_auth_jobs(settings: Settings, registry: RefreshTokenRegistry) -> None:
    """Register the housekeeping job with the scheduler."""

    async def run() -> dict[str, Any]:
        return await purge_expired_credentials(registry, settings.housekeeping_retention_days)

    register_job(
        JOB_ID_PURGE_CREDENTIALS,
        run,
        IntervalTrigger(hours=settings.housekeeping_interval_hours),
    )
