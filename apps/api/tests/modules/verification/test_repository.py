"""
Tests for the verification code repository.

The statements are compiled for PostgreSQL and inspected, so the guards that
make consumption single-use are checked against the real SQL.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from shule.modules.verification import repository
from shule.modules.verification.models import VerificationType

EMAIL = "founder@example.com"


def compiled(mock_db) -> str:
    statement = mock_db.execute.await_args.args[0]
    return " ".join(str(statement.compile(dialect=postgresql.dialect())).split())


def result_with(rowcount: int = 0, row=None, scalar=None) -> MagicMock:
    result = MagicMock()
    result.rowcount = rowcount
    result.scalar_one_or_none.return_value = row
    result.scalar_one.return_value = scalar
    return result


class TestConsume:
    """Tests for consume."""

    @pytest.mark.asyncio
    async def test_consume_is_a_guarded_update(self, mock_db):
        row = MagicMock()
        mock_db.execute.return_value = result_with(row=row)

        consumed = await repository.consume(
            mock_db, email=EMAIL, code="123456", type=VerificationType.FOUNDER_REGISTRATION
        )

        assert consumed is row
        sql = compiled(mock_db)
        assert sql.startswith("UPDATE verification_codes SET")
        assert "used=%(used)s" in sql
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "verification_codes.expires_at > now()" in sql
        assert sql.split(" RETURNING ")[0].endswith("verification_codes.used IS false")
        assert " RETURNING " in sql

    @pytest.mark.asyncio
    async def test_consume_miss(self, mock_db):
        mock_db.execute.return_value = result_with(row=None)

        consumed = await repository.consume(
            mock_db, email=EMAIL, code="123456", type=VerificationType.PASSWORD_RESET
        )

        assert consumed is None


class TestHousekeepingQueries:
    """Tests for the counting, invalidation and purge statements."""

    @pytest.mark.asyncio
    async def test_count_uses_creation_window(self, mock_db):
        mock_db.execute.return_value = result_with(scalar=2)
        since = datetime.now(UTC) - timedelta(minutes=5)

        count = await repository.count_created_since(
            mock_db, email=EMAIL, type=VerificationType.FOUNDER_REGISTRATION, since=since
        )

        assert count == 2
        sql = compiled(mock_db)
        assert sql.startswith("SELECT count(*)")
        assert "verification_codes.created_at >" in sql
        assert "verification_codes.email =" in sql

    @pytest.mark.asyncio
    async def test_invalidate_unused_only_touches_unused(self, mock_db):
        mock_db.execute.return_value = result_with(rowcount=3)

        invalidated = await repository.invalidate_unused(
            mock_db, email=EMAIL, type=VerificationType.FOUNDER_REGISTRATION
        )

        assert invalidated == 3
        sql = compiled(mock_db)
        assert sql.startswith("UPDATE verification_codes SET")
        assert "used=%(used)s" in sql
        assert "verification_codes.used IS false" in sql

    @pytest.mark.asyncio
    async def test_purge_expired(self, mock_db):
        mock_db.execute.return_value = result_with(rowcount=7)

        deleted = await repository.purge_expired(mock_db, expired_before=datetime.now(UTC))

        assert deleted == 7
        sql = compiled(mock_db)
        assert sql.startswith("DELETE FROM verification_codes")
        assert "verification_codes.expires_at <" in sql
