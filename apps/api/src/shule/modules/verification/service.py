"""
Verification Code Service

Issues, validates and re-sends one-time email verification codes.

Codes:
- Numeric codes are zero-padded to a fixed width; alphanumeric codes draw
  from A-Z and 0-9. Both use the ``secrets`` module.
- Each verification type has a default kind, length and lifetime.
- Validation consumes a code in one atomic statement. The failure reason is
  logged for diagnostics only; callers show one generic message.

Resend:
- At most RESEND_MAX_ATTEMPTS codes may be issued for the same (email, type)
  within RESEND_WINDOW_MINUTES; the count covers every issued code, including
  the original one.
- A resend replays the metadata of the most recent code and supersedes every
  older unused code for the same (email, type).

None of these operations commit; the caller owns the transaction.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.errors import NotFoundError, RateLimitError, ValidationError
from shule.modules.verification import repository
from shule.modules.verification.models import VerificationCode, VerificationType

logger = logging.getLogger(__name__)

RESEND_WINDOW_MINUTES = 5
RESEND_MAX_ATTEMPTS = 3

INVALID_CODE_MESSAGE = "Invalid or expired verification code."


class CodeKind(str, Enum):
    """Alphabet a code is drawn from."""

    NUMERIC = "numeric"
    ALPHANUMERIC = "alphanumeric"


class ValidationFailure(str, Enum):
    """Why a code was rejected (for logs only)."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    CONTENDED = "contended"


@dataclass(frozen=True)
class CodePolicy:
    kind: CodeKind
    length: int
    ttl_minutes: int


CODE_POLICIES: dict[VerificationType, CodePolicy] = {
    VerificationType.FOUNDER_REGISTRATION: CodePolicy(CodeKind.NUMERIC, 6, 30),
    VerificationType.SCHOOL_EMAIL: CodePolicy(CodeKind.ALPHANUMERIC, 8, 24 * 60),
    VerificationType.PASSWORD_RESET: CodePolicy(CodeKind.NUMERIC, 6, 15),
    VerificationType.EMAIL_CHANGE: CodePolicy(CodeKind.ALPHANUMERIC, 8, 60),
    VerificationType.TEACHER_INVITATION: CodePolicy(CodeKind.ALPHANUMERIC, 8, 72 * 60),
    VerificationType.PARENT_INVITATION: CodePolicy(CodeKind.ALPHANUMERIC, 8, 72 * 60),
}

RESENDABLE_TYPES = frozenset(
    {
        VerificationType.FOUNDER_REGISTRATION,
        VerificationType.SCHOOL_EMAIL,
        VerificationType.PASSWORD_RESET,
    }
)

_ALPHANUMERIC = string.ascii_uppercase + string.digits


@dataclass
class IssuedCode:
    """A freshly stored code together with its raw value."""

    record: VerificationCode
    code: str
    ttl_minutes: int

    @property
    def metadata(self) -> dict:
        return dict(self.record.code_metadata or {})


@dataclass
class CodeValidation:
    valid: bool
    metadata: dict = field(default_factory=dict)
    reason: ValidationFailure | None = None
    user_id: str | None = None
    school_id: str | None = None


def generate_code(kind: CodeKind, length: int) -> str:
    """
    Generate a random code.

    Args:
        kind: NUMERIC (zero-padded digits) or ALPHANUMERIC (A-Z0-9)
        length: Number of characters

    Returns:
        Code string of exactly ``length`` characters
    """
    if length < 1:
        raise ValueError("Code length must be positive")

    if kind == CodeKind.NUMERIC:
        return str(secrets.randbelow(10**length)).zfill(length)

    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class VerificationCodeService:
    """Stateless service over the verification_codes table."""

    def generate(self, kind: CodeKind, length: int) -> str:
        return generate_code(kind, length)

    async def issue(
        self,
        db: AsyncSession,
        *,
        email: str,
        type: VerificationType,
        metadata: dict | None = None,
        ttl_minutes: int | None = None,
        user_id: str | None = None,
        school_id: str | None = None,
    ) -> IssuedCode:
        """
        Create and store a new code. Older codes stay valid.

        Args:
            db: Database session
            email: Address the code is sent to
            type: Verification type (selects kind, length and default TTL)
            metadata: Data needed to re-send the same email later
            ttl_minutes: Override the type's default lifetime
            user_id: Related user (optional)
            school_id: Related school (optional)

        Returns:
            IssuedCode with the stored row and the raw code
        """
        policy = CODE_POLICIES[type]
        ttl = ttl_minutes if ttl_minutes is not None else policy.ttl_minutes
        code = self.generate(policy.kind, policy.length)

        record = await repository.create(
            db,
            email=email.lower(),
            code=code,
            type=type,
            expires_at=datetime.now(UTC) + timedelta(minutes=ttl),
            metadata=metadata,
            user_id=user_id,
            school_id=school_id,
        )

        logger.info(f"Issued {type.value} code {record.id} (expires in {ttl} min)")
        return IssuedCode(record=record, code=code, ttl_minutes=ttl)

    async def validate(
        self,
        db: AsyncSession,
        *,
        email: str,
        code: str,
        type: VerificationType,
    ) -> CodeValidation:
        """
        Consume a code if it is unused and unexpired.

        At most one concurrent caller can succeed for the same code.
        """
        email = email.lower()
        code = normalize_code(code)

        record = await repository.consume(db, email=email, code=code, type=type)
        if record is not None:
            logger.info(f"Consumed {type.value} code {record.id}")
            return CodeValidation(
                valid=True,
                metadata=dict(record.code_metadata or {}),
                user_id=record.user_id,
                school_id=record.school_id,
            )

        match = await repository.find_match(db, email=email, code=code, type=type)
        if match is None:
            reason = ValidationFailure.NOT_FOUND
        elif match.used:
            reason = ValidationFailure.ALREADY_USED
        elif match.expires_at <= datetime.now(UTC):
            reason = ValidationFailure.EXPIRED
        else:
            # Row locked by a concurrent validation
            reason = ValidationFailure.CONTENDED

        logger.info(f"Rejected {type.value} code: {reason.value}")
        return CodeValidation(valid=False, reason=reason)

    async def resend(
        self,
        db: AsyncSession,
        *,
        email: str,
        type: VerificationType,
    ) -> IssuedCode:
        """
        Issue a replacement code, replaying the latest code's metadata.

        Raises:
            ValidationError: If the type cannot be re-sent
            RateLimitError: If too many codes were issued recently
            NotFoundError: If no code was ever issued for (email, type)
        """
        if type not in RESENDABLE_TYPES:
            raise ValidationError(f"Verification codes of type {type.value} cannot be re-sent.")

        email = email.lower()
        since = datetime.now(UTC) - timedelta(minutes=RESEND_WINDOW_MINUTES)
        recent = await repository.count_created_since(db, email=email, type=type, since=since)

        if recent >= RESEND_MAX_ATTEMPTS:
            logger.warning(f"Resend rate limit reached for {type.value} ({recent} recent codes)")
            raise RateLimitError(
                "Too many attempts. Please wait a few minutes before requesting a new code.",
                retry_after_seconds=RESEND_WINDOW_MINUTES * 60,
            )

        latest = await repository.get_latest(db, email=email, type=type)
        if latest is None:
            raise NotFoundError("No pending verification found for this email.")

        superseded = await repository.invalidate_unused(db, email=email, type=type)
        if superseded:
            logger.info(f"Superseded {superseded} unused {type.value} code(s)")

        return await self.issue(
            db,
            email=email,
            type=type,
            metadata=dict(latest.code_metadata or {}),
            user_id=latest.user_id,
            school_id=latest.school_id,
        )
