"""
Authentication and Authorization Dependencies

FastAPI dependencies that validate the bearer access token and enforce
role-based access control.

An access token alone is not enough: the user it names must still exist and
be active, the same check login performs. Deactivating a user therefore
locks them out immediately rather than when their token expires.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.database import get_db
from shule.core.errors import AuthenticationError, AuthorizationError
from shule.core.security import TokenIssuer, TokenKind, TokenVerificationError
from shule.dependencies import get_token_issuer
from shule.modules.users.models import UserRole
from shule.modules.users.repository import UserRepository

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI documentation
security = HTTPBearer(
    auto_error=False,
    description="JWT Bearer access token",
)


@dataclass
class CurrentUser:
    """
    The authenticated caller.

    Attributes:
        id: User's unique identifier
        email: User's email address
        role: User's role at the time of the request
        school_id: School the session is scoped to (None for platform admins)
        school_code: Public code of that school
    """

    id: str
    email: str
    role: str
    school_id: str | None = None
    school_code: str | None = None

    def __str__(self) -> str:
        return f"CurrentUser(id={self.id}, role={self.role})"


def _invalid_token() -> AuthenticationError:
    return AuthenticationError("Invalid or expired authentication token.", "INVALID_TOKEN")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> CurrentUser:
    """
    FastAPI dependency that validates the access token and returns the caller.

    Usage:
        @router.get("/me")
        async def me(user: CurrentUser = Depends(get_current_user)):
            ...

    Raises:
        AuthenticationError 401: Missing, invalid or expired token, or the
            user is no longer active
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required.", "AUTHENTICATION_REQUIRED")

    try:
        claims = issuer.verify(credentials.credentials, TokenKind.ACCESS)
    except TokenVerificationError as e:
        logger.info(f"Access token rejected: {e.reason.value}")
        raise _invalid_token() from e

    user = await UserRepository.get_by_id(db, claims["sub"])
    if user is None or not user.is_active:
        logger.info(f"Access token for missing or inactive user {claims['sub']}")
        raise _invalid_token()

    return CurrentUser(
        id=user.id,
        email=user.email,
        role=user.role.value,
        school_id=claims.get("school_id"),
        school_code=claims.get("school_code"),
    )


def require_roles(*roles: UserRole) -> Callable[..., Awaitable[CurrentUser]]:
    """
    Build a dependency that only admits the given roles.

    Usage:
        @router.patch("/me")
        async def update(user: CurrentUser = Depends(require_roles(UserRole.SCHOOL_ADMIN))):
            ...
    """
    allowed = {role.value for role in roles}

    async def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            logger.warning(
                f"Access denied: user {user.id} has role '{user.role}', "
                f"needs one of {sorted(allowed)}"
            )
            raise AuthorizationError()
        return user

    return dependency


__all__ = [
    "CurrentUser",
    "get_current_user",
    "require_roles",
]
