"""
Security Utilities

Password hashing (passlib bcrypt) and JWT issuing/verification (python-jose).

Access and refresh tokens are signed with different keys so a leaked access
key can never be used to mint refresh tokens, and a refresh token can never be
presented where an access token is expected.
"""

import hashlib
import logging
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from shule.core.config import Settings

logger = logging.getLogger(__name__)


class PasswordHasher:
    """
    Salted, adaptive password hashing.

    ``verify`` is constant-time and returns False on mismatch. It raises
    ValueError only when the stored hash itself is malformed.
    """

    def __init__(self, rounds: int = 12):
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )
        self._dummy_hash = self._context.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        return self._context.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        return self._context.verify(plaintext, password_hash)

    def dummy_verify(self, plaintext: str) -> None:
        """Spend the same work as a real verify when no user was found."""
        self._context.verify(plaintext, self._dummy_hash)


class TokenKind(str, Enum):
    """JWT token types (the ``type`` claim)."""

    ACCESS = "access"
    REFRESH = "refresh"


class TokenFailure(str, Enum):
    """Reasons a token failed verification."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"


class TokenVerificationError(Exception):
    """Raised when a JWT cannot be verified."""

    def __init__(self, reason: TokenFailure):
        self.reason = reason
        super().__init__(f"Token verification failed: {reason.value}")


class TokenIssuer:
    """Issues and verifies signed access and refresh tokens."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh signing keys must differ")

        self._secrets = {
            TokenKind.ACCESS: access_secret,
            TokenKind.REFRESH: refresh_secret,
        }
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    def _encode(self, kind: TokenKind, claims: dict[str, Any], ttl: timedelta) -> str:
        now = datetime.now(UTC)
        payload = {
            **claims,
            "type": kind.value,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=self._algorithm)

    def issue_access_token(
        self,
        *,
        user_id: str,
        email: str,
        role: str,
        school_id: str | None = None,
        school_code: str | None = None,
    ) -> str:
        """
        Create a short-lived access token.

        Args:
            user_id: Subject of the token
            email: User's email address
            role: User's role
            school_id: Tenant the session is scoped to (None for platform admins)
            school_code: Public school code

        Returns:
            Encoded JWT
        """
        claims = {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "school_id": str(school_id) if school_id else None,
            "school_code": school_code,
        }
        return self._encode(TokenKind.ACCESS, claims, self.access_ttl)

    def issue_refresh_token(self, *, user_id: str, email: str, token_version: int) -> str:
        """
        Create a long-lived refresh token.

        The random ``jti`` makes every token (and so its stored hash) unique,
        even for two tokens issued to the same user in the same second.
        """
        claims = {
            "sub": str(user_id),
            "email": email,
            "token_version": token_version,
            "jti": uuid.uuid4().hex,
        }
        return self._encode(TokenKind.REFRESH, claims, self.refresh_ttl)

    def verify(self, token: str, kind: TokenKind) -> dict[str, Any]:
        """
        Verify a token's signature, expiry and type.

        Raises:
            TokenVerificationError: With MALFORMED, SIGNATURE_INVALID or EXPIRED
        """
        try:
            jwt.get_unverified_header(token)
        except JWTError as e:
            raise TokenVerificationError(TokenFailure.MALFORMED) from e

        try:
            claims = jwt.decode(token, self._secrets[kind], algorithms=[self._algorithm])
        except ExpiredSignatureError as e:
            raise TokenVerificationError(TokenFailure.EXPIRED) from e
        except JWTError as e:
            raise TokenVerificationError(TokenFailure.SIGNATURE_INVALID) from e

        if claims.get("type") != kind.value or not claims.get("sub"):
            logger.warning(f"Token rejected: expected type {kind.value}")
            raise TokenVerificationError(TokenFailure.SIGNATURE_INVALID)

        return claims


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store tokens without keeping the raw value."""
    return hashlib.sha256(token.encode()).hexdigest()


__all__ = [
    "PasswordHasher",
    "TokenIssuer",
    "TokenKind",
    "TokenFailure",
    "TokenVerificationError",
    "hash_token",
]
