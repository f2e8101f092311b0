"""
Authentication Service Layer

Orchestrates school registration, founder email verification and the
session lifecycle.

This module implements:
1. Registration:
   - Pre-check founder email, school email and school phone
   - Create the pending school, the pending founder and a verification code
     in one transaction
   - Send the verification code in the background

2. Verification:
   - Consume the founder's code and activate the school in one transaction:
     role promotion, owner membership, trial subscription, default settings
   - Re-send codes for pending registrations (rate limited)

3. Sessions:
   - Login issues a short-lived access token and a refresh token whose hash
     is recorded server-side
   - Refresh checks the token signature, the registry record, the user and
     the account's token version
   - Logout revokes one record; logout-all revokes every record of the user

4. Passwords:
   - Forgot/reset via a one-time code; reset and change both bump the
     account's token version and revoke all refresh tokens

Security considerations:
- Unknown email, inactive account and wrong password produce the same error,
  and an unknown email still pays for one password hash check
- Raw refresh tokens and verification codes are never logged
- Emails are lower-cased before every lookup
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.config import Settings
from shule.core.database import is_unique_violation
from shule.core.email import EmailDeliveryError, EmailKind, EmailNotifier
from shule.core.errors import (
    AuthenticationError,
    ConflictError,
    DependencyError,
    EmailNotVerifiedError,
    NotFoundError,
    RateLimitError,
    SchoolInactiveError,
    ValidationError,
)
from shule.core.security import (
    PasswordHasher,
    TokenIssuer,
    TokenKind,
    TokenVerificationError,
)
from shule.modules.auth.registry import DeviceInfo, RefreshTokenRegistry
from shule.modules.auth.schemas import (
    CurrentUserResponse,
    LoginResponse,
    RegisteredSchool,
    RegisterSchoolRequest,
    RegistrationResponse,
    SchoolSummary,
    UserSummary,
    VerifyEmailResponse,
)
from shule.modules.schools.helpers import (
    DEFAULT_SETTINGS,
    OWNER_PERMISSIONS,
    TRIAL_DAYS,
    TRIAL_MAX_STUDENTS,
    TRIAL_MAX_TEACHERS,
    generate_school_code,
)
from shule.modules.schools.models import MembershipRole, School, SchoolMembership, SchoolStatus
from shule.modules.schools.repository import (
    MembershipRepository,
    SchoolRepository,
    SettingRepository,
    SubscriptionRepository,
)
from shule.modules.users.models import User, UserRole
from shule.modules.users.repository import UserRepository
from shule.modules.verification.models import VerificationType
from shule.modules.verification.service import (
    INVALID_CODE_MESSAGE,
    VerificationCodeService,
)

logger = logging.getLogger(__name__)

INVALID_REFRESH_MESSAGE = "Your session has expired. Please sign in again."

REGISTRATION_NEXT_STEPS = [
    "Check your email for a 6-digit verification code.",
    "Enter the code to verify your email address.",
    "Sign in to start setting up your school.",
]


@dataclass
class LoginResult:
    """Login outcome. The refresh token goes to the cookie, not the body."""

    response: LoginResponse
    refresh_token: str
    remember_me: bool


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


class AuthService:
    """Registration, verification and session lifecycle."""

    def __init__(
        self,
        *,
        settings: Settings,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        registry: RefreshTokenRegistry,
        codes: VerificationCodeService,
        notifier: EmailNotifier,
    ):
        self.settings = settings
        self.hasher = hasher
        self.issuer = issuer
        self.registry = registry
        self.codes = codes
        self.notifier = notifier

    # ============================================
    # Registration and verification
    # ============================================

    async def register_school(
        self, db: AsyncSession, data: RegisterSchoolRequest
    ) -> RegistrationResponse:
        """
        Register a pending school and its founder.

        Args:
            db: Database session
            data: Validated registration request

        Returns:
            RegistrationResponse with the pending school

        Raises:
            ConflictError: If the founder email, school email or school phone is taken
        """
        founder_email = data.founder_email.lower()
        school_email = data.email.lower()

        if await UserRepository.email_exists(db, founder_email):
            logger.info("Registration rejected: founder email already registered")
            raise ConflictError("An account with this email already exists.", "EMAIL_TAKEN")

        if await SchoolRepository.email_exists(db, school_email) or (
            await SchoolRepository.phone_exists(db, data.phone)
        ):
            logger.info("Registration rejected: school email or phone already registered")
            raise ConflictError(
                "A school with this email or phone number is already registered.",
                "SCHOOL_EXISTS",
            )

        password_hash = self.hasher.hash(data.founder_password)

        try:
            code = await generate_school_code(db)
            founder = await UserRepository.create(
                db,
                email=founder_email,
                password_hash=password_hash,
                full_name=data.founder_name,
                phone=data.founder_phone,
                role=UserRole.PENDING_ADMIN,
                email_verified=False,
            )
            school = await SchoolRepository.create(
                db,
                code=code,
                name=data.name,
                email=school_email,
                phone=data.phone,
                founder_user_id=founder.id,
                address=data.address,
                district=data.district,
                region=data.region,
                country=data.country,
                tin=data.tin,
                registration_number=data.registration_number,
            )
            issued = await self.codes.issue(
                db,
                email=founder_email,
                type=VerificationType.FOUNDER_REGISTRATION,
                metadata={
                    "founder_name": founder.full_name,
                    "school_name": school.name,
                    "school_code": school.code,
                },
                user_id=founder.id,
                school_id=school.id,
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if is_unique_violation(e):
                logger.info("Registration lost a uniqueness race")
                raise ConflictError(
                    "A school or account with these details already exists.", "CONFLICT"
                ) from e
            raise

        logger.info(f"Registered pending school {school.id} ({school.code})")

        self.notifier.dispatch(
            EmailKind.FOUNDER_VERIFICATION,
            founder_email,
            {
                **issued.metadata,
                "code": issued.code,
                "expires_minutes": issued.ttl_minutes,
            },
        )

        return RegistrationResponse(
            message=(
                "School registered. We sent a verification code to "
                f"{founder_email}. Verify your email to activate the school."
            ),
            school=_registered_school(school),
            next_steps=REGISTRATION_NEXT_STEPS,
        )

    async def verify_email(self, db: AsyncSession, email: str, code: str) -> VerifyEmailResponse:
        """
        Verify a founder's email and activate their school.

        Raises:
            ValidationError: If the code is invalid, used or expired
            NotFoundError: If no pending school exists for the email
        """
        email = email.lower()
        validation = await self.codes.validate(
            db, email=email, code=code, type=VerificationType.FOUNDER_REGISTRATION
        )
        if not validation.valid:
            await db.rollback()
            raise ValidationError(INVALID_CODE_MESSAGE, "INVALID_CODE")

        school = await SchoolRepository.get_pending_by_founder_email(db, email)
        founder = (
            await UserRepository.get_by_id(db, school.founder_user_id)
            if school and school.founder_user_id
            else None
        )
        if school is None or founder is None:
            await db.rollback()
            raise NotFoundError("No pending school registration was found for this email.")

        try:
            await SchoolRepository.activate(db, school)
            await UserRepository.mark_founder_verified(db, founder)
            await MembershipRepository.create(
                db,
                school_id=school.id,
                user_id=founder.id,
                role=MembershipRole.OWNER,
                is_primary_contact=True,
                permissions=list(OWNER_PERMISSIONS),
            )
            await SubscriptionRepository.create_trial(
                db,
                school_id=school.id,
                days=TRIAL_DAYS,
                max_students=TRIAL_MAX_STUDENTS,
                max_teachers=TRIAL_MAX_TEACHERS,
            )
            await SettingRepository.create_many(
                db, school_id=school.id, settings=DEFAULT_SETTINGS
            )
            school_code = await self.codes.issue(
                db,
                email=school.email,
                type=VerificationType.SCHOOL_EMAIL,
                metadata={"school_name": school.name, "founder_name": founder.full_name},
                school_id=school.id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Activated school {school.id} after founder verification")

        self.notifier.dispatch(
            EmailKind.WELCOME,
            email,
            {
                "founder_name": founder.full_name,
                "school_name": school.name,
                "school_code": school.code,
            },
        )
        self.notifier.dispatch(
            EmailKind.SCHOOL_EMAIL_VERIFICATION,
            school.email,
            {
                **school_code.metadata,
                "code": school_code.code,
                "expires_minutes": school_code.ttl_minutes,
            },
        )

        return VerifyEmailResponse(
            message="Email verified. Your school is now active and you can sign in.",
            school=_registered_school(school),
        )

    async def resend_verification(self, db: AsyncSession, email: str) -> None:
        """
        Send a fresh founder verification code.

        Delivery is the point of this call, so a send failure rolls the new
        code back and is reported to the caller.

        Raises:
            NotFoundError: If the email has no pending registration
            RateLimitError: If too many codes were requested recently
            DependencyError: If the email could not be sent
        """
        email = email.lower()
        school = await SchoolRepository.get_pending_by_founder_email(db, email)
        if school is None:
            raise NotFoundError("No pending school registration was found for this email.")

        issued = await self.codes.resend(
            db, email=email, type=VerificationType.FOUNDER_REGISTRATION
        )

        try:
            await self.notifier.send(
                EmailKind.FOUNDER_VERIFICATION,
                email,
                {**issued.metadata, "code": issued.code, "expires_minutes": issued.ttl_minutes},
            )
        except EmailDeliveryError as e:
            await db.rollback()
            raise DependencyError(
                "We could not send the verification email. Please try again shortly.",
                "EMAIL_DELIVERY_FAILED",
            ) from e

        await db.commit()
        logger.info(f"Re-sent founder verification code for school {school.id}")

    # ============================================
    # Sessions
    # ============================================

    async def login(
        self,
        db: AsyncSession,
        *,
        email: str,
        password: str,
        remember_me: bool = False,
        device: DeviceInfo | None = None,
    ) -> LoginResult:
        """
        Authenticate a user and open a session.

        Raises:
            AuthenticationError: Unknown email, inactive account or wrong password
            EmailNotVerifiedError: Email not yet verified
            SchoolInactiveError: The user's school is not active
        """
        email = email.strip().lower()
        user = await UserRepository.get_active_by_email(db, email)

        if user is None:
            self.hasher.dummy_verify(password)
            logger.info("Login failed: no active account for email")
            raise AuthenticationError()

        if not self._password_matches(user, password):
            logger.info(f"Login failed: wrong password for user {user.id}")
            raise AuthenticationError()

        if not user.email_verified:
            raise EmailNotVerifiedError()

        membership, school = await self._resolve_school(db, user)

        access_token = self._issue_access_token(user, school)
        refresh_token = self.issuer.issue_refresh_token(
            user_id=user.id, email=user.email, token_version=user.token_version
        )

        await self.registry.issue(
            db,
            user_id=user.id,
            raw_token=refresh_token,
            ttl=self.issuer.refresh_ttl,
            device=device,
        )
        await UserRepository.update_last_login(db, user)
        await db.commit()

        logger.info(f"User {user.id} logged in ({user.role.value})")

        return LoginResult(
            response=LoginResponse(
                access_token=access_token,
                expires_in=self.issuer.access_ttl_seconds,
                user=_user_summary(user),
                school=_school_summary(school),
            ),
            refresh_token=refresh_token,
            remember_me=remember_me,
        )

    async def refresh_access_token(
        self,
        db: AsyncSession,
        raw_token: str | None,
        device: DeviceInfo | None = None,
    ) -> RefreshResult:
        """
        Exchange a refresh token for a new access token.

        With rotation enabled the presented token is revoked and a new one
        is returned alongside the access token.

        Raises:
            AuthenticationError: For any missing, invalid, revoked or stale token
        """
        if not raw_token:
            raise AuthenticationError("No active session.", "REFRESH_TOKEN_MISSING")

        try:
            claims = self.issuer.verify(raw_token, TokenKind.REFRESH)
        except TokenVerificationError as e:
            logger.info(f"Refresh rejected: {e.reason.value}")
            raise AuthenticationError(INVALID_REFRESH_MESSAGE, "INVALID_REFRESH_TOKEN") from e

        record = await self.registry.lookup(db, raw_token)
        if record is None or record.user_id != claims.get("sub"):
            logger.info("Refresh rejected: token not registered, revoked or expired")
            raise AuthenticationError(INVALID_REFRESH_MESSAGE, "INVALID_REFRESH_TOKEN")

        user = await UserRepository.get_by_id(db, record.user_id)
        if user is None or not user.is_active:
            logger.info(f"Refresh rejected: user {record.user_id} missing or inactive")
            raise AuthenticationError(INVALID_REFRESH_MESSAGE, "INVALID_REFRESH_TOKEN")

        if claims.get("token_version") != user.token_version:
            revoked = await self.registry.revoke_all_for_user(db, user.id)
            await db.commit()
            logger.warning(
                f"Refresh token version mismatch for user {user.id}; revoked {revoked} session(s)"
            )
            raise AuthenticationError(INVALID_REFRESH_MESSAGE, "INVALID_REFRESH_TOKEN")

        _, school = await self._resolve_school(db, user)
        access_token = self._issue_access_token(user, school)

        new_refresh_token = None
        if self.settings.refresh_token_rotation:
            if not await self.registry.revoke(db, raw_token):
                # Another refresh already redeemed this token
                revoked = await self.registry.revoke_all_for_user(db, user.id)
                await db.commit()
                logger.warning(
                    f"Rotated refresh token reused for user {user.id}; "
                    f"revoked {revoked} session(s)"
                )
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, "INVALID_REFRESH_TOKEN")
            new_refresh_token = self.issuer.issue_refresh_token(
                user_id=user.id, email=user.email, token_version=user.token_version
            )
            await self.registry.issue(
                db,
                user_id=user.id,
                raw_token=new_refresh_token,
                ttl=self.issuer.refresh_ttl,
                device=device,
            )
        else:
            await self.registry.touch(db, record.id)

        await db.commit()

        return RefreshResult(
            access_token=access_token,
            expires_in=self.issuer.access_ttl_seconds,
            refresh_token=new_refresh_token,
        )

    async def logout(self, db: AsyncSession, raw_token: str | None) -> None:
        """Revoke the presented refresh token, if any. Always succeeds."""
        if not raw_token:
            return

        if await self.registry.revoke(db, raw_token):
            logger.info("Refresh token revoked on logout")
        await db.commit()

    async def logout_all_devices(self, db: AsyncSession, user_id: str) -> int:
        """Revoke every refresh token of a user."""
        count = await self.registry.revoke_all_for_user(db, user_id)
        await db.commit()
        return count

    async def get_current_user(self, db: AsyncSession, user_id: str) -> CurrentUserResponse:
        """
        Profile of a user with their school.

        Raises:
            NotFoundError: If the user does not exist or is deactivated
        """
        user = await UserRepository.get_by_id(db, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found.", "USER_NOT_FOUND")

        membership = await MembershipRepository.get_primary_for_user(db, user.id)
        school = (
            await SchoolRepository.get_by_id(db, membership.school_id) if membership else None
        )

        return CurrentUserResponse(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            phone=user.phone,
            role=user.role.value,
            email_verified=user.email_verified,
            last_login=user.last_login,
            created_at=user.created_at,
            school=_school_summary(school),
            school_role=membership.role.value if membership else None,
            permissions=list(membership.permissions or []) if membership else [],
        )

    # ============================================
    # Passwords
    # ============================================

    async def request_password_reset(self, db: AsyncSession, email: str) -> None:
        """
        Send a password reset code if the account exists.

        The caller always answers the same way, whether or not an account
        exists, so this method never raises for unknown emails.
        """
        email = email.lower()
        user = await UserRepository.get_active_by_email(db, email)
        if user is None or not user.email_verified:
            logger.info("Password reset requested for unknown or unverified email")
            return

        try:
            issued = await self.codes.resend(db, email=email, type=VerificationType.PASSWORD_RESET)
        except NotFoundError:
            issued = await self.codes.issue(
                db,
                email=email,
                type=VerificationType.PASSWORD_RESET,
                metadata={"user_name": user.full_name},
                user_id=user.id,
            )
        except RateLimitError:
            logger.warning(f"Password reset rate limit reached for user {user.id}")
            return

        await db.commit()

        self.notifier.dispatch(
            EmailKind.PASSWORD_RESET,
            email,
            {**issued.metadata, "code": issued.code, "expires_minutes": issued.ttl_minutes},
        )

    async def reset_password(
        self, db: AsyncSession, *, email: str, code: str, new_password: str
    ) -> None:
        """
        Set a new password using a reset code and end every session.

        Raises:
            ValidationError: If the code is invalid or expired
        """
        email = email.lower()
        validation = await self.codes.validate(
            db, email=email, code=code, type=VerificationType.PASSWORD_RESET
        )
        user = await UserRepository.get_active_by_email(db, email) if validation.valid else None
        if user is None:
            await db.rollback()
            raise ValidationError(INVALID_CODE_MESSAGE, "INVALID_CODE")

        await self._replace_password(db, user, new_password)
        logger.info(f"Password reset for user {user.id}")

    async def change_password(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        current_password: str,
        new_password: str,
    ) -> None:
        """
        Change the password of a signed-in user and end every session.

        Raises:
            NotFoundError: If the user no longer exists
            AuthenticationError: If the current password is wrong
            ValidationError: If the new password equals the current one
        """
        user = await UserRepository.get_by_id(db, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found.", "USER_NOT_FOUND")

        if not self._password_matches(user, current_password):
            raise AuthenticationError("Current password is incorrect.", "INVALID_CREDENTIALS")

        if current_password == new_password:
            raise ValidationError("New password must be different from the current password.")

        await self._replace_password(db, user, new_password)
        logger.info(f"Password changed for user {user.id}")

    # ============================================
    # Helpers
    # ============================================

    def _password_matches(self, user: User, password: str) -> bool:
        try:
            return self.hasher.verify(password, user.password_hash)
        except ValueError:
            logger.error(f"Stored password hash for user {user.id} is malformed")
            return False

    async def _resolve_school(
        self, db: AsyncSession, user: User
    ) -> tuple[SchoolMembership | None, School | None]:
        """
        Find the school that scopes a user's session.

        Platform admins have no school. Everyone else needs a membership in
        an active school.

        Raises:
            SchoolInactiveError: If there is no membership or the school is not active
        """
        if user.role == UserRole.SUPER_ADMIN:
            return None, None

        membership = await MembershipRepository.get_primary_for_user(db, user.id)
        school = (
            await SchoolRepository.get_by_id(db, membership.school_id) if membership else None
        )
        if school is None or school.status != SchoolStatus.ACTIVE:
            logger.info(f"User {user.id} has no active school")
            raise SchoolInactiveError()

        return membership, school

    def _issue_access_token(self, user: User, school: School | None) -> str:
        return self.issuer.issue_access_token(
            user_id=user.id,
            email=user.email,
            role=user.role.value,
            school_id=school.id if school else None,
            school_code=school.code if school else None,
        )

    async def _replace_password(self, db: AsyncSession, user: User, new_password: str) -> None:
        password_hash = self.hasher.hash(new_password)
        await UserRepository.set_password(db, user, password_hash)
        await self.registry.revoke_all_for_user(db, user.id)
        await db.commit()


def _registered_school(school: School) -> RegisteredSchool:
    return RegisteredSchool(
        id=school.id,
        code=school.code,
        name=school.name,
        email=school.email,
        status=school.status.value,
    )


def _user_summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role.value,
    )


def _school_summary(school: School | None) -> SchoolSummary | None:
    if school is None:
        return None
    return SchoolSummary(id=school.id, code=school.code, name=school.name)
