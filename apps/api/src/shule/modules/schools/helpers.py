"""
School Helpers

School code generation, phone normalization and the defaults a school gets
when it is activated.
"""

import logging
import re
import secrets
import time

from sqlalchemy.ext.asyncio import AsyncSession

from shule.modules.schools.repository import SchoolRepository

logger = logging.getLogger(__name__)

SCHOOL_CODE_PREFIX = "SCH"
SCHOOL_CODE_MAX_ATTEMPTS = 10

# Tanzanian numbers: +255 or 0, then nine digits not starting with 0
PHONE_PATTERN = re.compile(r"^(\+255|0)[1-9]\d{8}$")

TRIAL_DAYS = 30
TRIAL_MAX_STUDENTS = 100
TRIAL_MAX_TEACHERS = 20

OWNER_PERMISSIONS = [
    "manage_school",
    "manage_users",
    "manage_finance",
    "manage_academics",
    "manage_settings",
]

# (category, key, value, type)
DEFAULT_SETTINGS: list[tuple[str, str, str, str]] = [
    ("academic", "language", "sw", "string"),
    ("academic", "grading_scale", "A-F", "string"),
    ("financial", "currency", "TZS", "string"),
    ("financial", "payment_methods", '["mpesa", "bank", "cash"]', "json"),
    ("communication", "sms_enabled", "true", "boolean"),
    ("communication", "email_enabled", "true", "boolean"),
    ("system", "timezone", "Africa/Dar_es_Salaam", "string"),
    ("system", "date_format", "DD/MM/YYYY", "string"),
]


def normalize_phone(phone: str) -> str:
    """Strip whitespace from a phone number."""
    return re.sub(r"\s+", "", phone)


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def random_school_code() -> str:
    """Random SCH-NNNN code in the range 1000-9999."""
    return f"{SCHOOL_CODE_PREFIX}-{1000 + secrets.randbelow(9000)}"


def fallback_school_code() -> str:
    """Timestamp based SCH-T<8 digits> code used when random codes keep colliding."""
    millis = str(int(time.time() * 1000))
    return f"{SCHOOL_CODE_PREFIX}-T{millis[-8:]}"


async def generate_school_code(db: AsyncSession) -> str:
    """
    Generate a school code that is not yet taken.

    Tries random SCH-NNNN codes first and falls back to a timestamp code
    after SCHOOL_CODE_MAX_ATTEMPTS collisions. The unique index on
    schools.code remains the final authority.
    """
    for _ in range(SCHOOL_CODE_MAX_ATTEMPTS):
        code = random_school_code()
        if not await SchoolRepository.code_exists(db, code):
            return code

    code = fallback_school_code()
    logger.warning(f"School code space congested, using fallback code {code}")
    return code
