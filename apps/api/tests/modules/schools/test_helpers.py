"""
Unit tests for schools helpers module.
"""

import re
from unittest.mock import AsyncMock, patch

import pytest

from shule.modules.schools.helpers import (
    DEFAULT_SETTINGS,
    SCHOOL_CODE_MAX_ATTEMPTS,
    fallback_school_code,
    generate_school_code,
    is_valid_phone,
    normalize_phone,
    random_school_code,
)


class TestPhoneValidation:
    """Tests for Tanzanian phone validation."""

    @pytest.mark.parametrize(
        "phone",
        ["+255712345678", "0712345678", "0754 000 111", "+255 6 1234 5678"],
    )
    def test_valid_numbers(self, phone):
        assert is_valid_phone(phone) is True

    @pytest.mark.parametrize(
        "phone",
        ["", "12345", "+254712345678", "0012345678", "+2557123456789", "07123abc78"],
    )
    def test_invalid_numbers(self, phone):
        assert is_valid_phone(phone) is False

    def test_normalize_strips_whitespace(self):
        assert normalize_phone(" 0754 000\t111 ") == "0754000111"


class TestSchoolCodes:
    """Tests for school code generation."""

    def test_random_code_format(self):
        for _ in range(50):
            code = random_school_code()
            assert re.fullmatch(r"SCH-\d{4}", code)
            assert 1000 <= int(code[4:]) <= 9999

    def test_fallback_code_format(self):
        assert re.fullmatch(r"SCH-T\d{8}", fallback_school_code())

    @pytest.mark.asyncio
    async def test_generate_returns_first_free_code(self, mock_db):
        """Taken codes are skipped."""
        with patch("shule.modules.schools.helpers.SchoolRepository") as repo:
            repo.code_exists = AsyncMock(side_effect=[True, True, False])

            code = await generate_school_code(mock_db)

        assert re.fullmatch(r"SCH-\d{4}", code)
        assert repo.code_exists.await_count == 3

    @pytest.mark.asyncio
    async def test_generate_falls_back_when_congested(self, mock_db):
        """After repeated collisions a timestamp code is used."""
        with patch("shule.modules.schools.helpers.SchoolRepository") as repo:
            repo.code_exists = AsyncMock(return_value=True)

            code = await generate_school_code(mock_db)

        assert code.startswith("SCH-T")
        assert repo.code_exists.await_count == SCHOOL_CODE_MAX_ATTEMPTS


class TestDefaults:
    def test_default_settings_are_unique_per_category(self):
        keys = [(category, key) for category, key, _, _ in DEFAULT_SETTINGS]

        assert len(DEFAULT_SETTINGS) == 8
        assert len(set(keys)) == len(keys)
