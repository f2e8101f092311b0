"""
Authentication Router

API endpoints for school registration, email verification, sessions and
passwords.

Endpoints:
- POST /auth/register-school - Register a school and its founder
- POST /auth/verify-email - Verify the founder's email and activate the school
- POST /auth/resend-verification - Send a new founder verification code
- POST /auth/login - Sign in
- POST /auth/session/refresh - New access token from the refresh cookie
- POST /auth/session/logout - End this session
- POST /auth/session/logout-all - End every session of the caller
- GET /auth/me - Current user profile
- POST /auth/password/forgot - Request a password reset code
- POST /auth/password/reset - Reset the password with a code
- POST /auth/password/change - Change the password while signed in

Security:
- The refresh token only ever travels in an HTTP-only cookie scoped to
  /auth/session; it is never part of a response body
- Rate limiting on every credential endpoint
- Login failures for unknown and known emails return identical responses
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shule.core.auth import CurrentUser, get_current_user
from shule.core.config import Settings
from shule.core.database import get_db
from shule.core.errors import AuthenticationError, AuthorizationError, ServiceError, error_body
from shule.core.rate_limit import client_ip, rate_limit
from shule.dependencies import get_auth_service, get_settings_dependency
from shule.modules.auth.registry import DeviceInfo
from shule.modules.auth.schemas import (
    ChangePasswordRequest,
    CurrentUserResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MessageResponse,
    RefreshResponse,
    RegisterSchoolRequest,
    RegistrationResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from shule.modules.auth.service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_EXAMPLE = {
    "application/json": {
        "example": {
            "status": "error",
            "error": "INVALID_CREDENTIALS",
            "message": "Invalid email or password.",
        }
    }
}


# ============================================
# Cookie helpers
# ============================================


def set_refresh_cookie(
    response: Response, token: str, *, remember_me: bool, settings: Settings
) -> None:
    days = (
        settings.refresh_cookie_remember_me_days
        if remember_me
        else settings.refresh_cookie_max_age_days
    )
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        max_age=days * 24 * 60 * 60,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
    )


def clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
    )


def device_info(request: Request) -> DeviceInfo:
    return DeviceInfo(
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    )


def _session_rejected(exc: ServiceError, settings: Settings) -> JSONResponse:
    """Error response that also removes the refresh cookie."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error_code, exc.message),
        headers=exc.headers,
    )
    clear_refresh_cookie(response, settings)
    return response


# ============================================
# Registration and verification
# ============================================


@router.post(
    "/register-school",
    response_model=RegistrationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Register a School",
    description="""
Register a new school together with its founder account.

The school and the founder are created **pending**. A 6-digit verification
code is emailed to the founder; the school becomes active once the founder
verifies with `POST /auth/verify-email`. No session is created here.

**Validation:**
- Phone numbers must be Tanzanian (`+255XXXXXXXXX` or `0XXXXXXXXX`)
- Password of at least 8 characters with a letter and a number
- Both agreements must be accepted
""",
    responses={
        202: {"description": "School registered, awaiting email verification"},
        400: {"description": "Validation error"},
        409: {"description": "Founder email, school email or school phone already registered"},
        429: {"description": "Too many registration attempts"},
    },
)
@rate_limit(limit=5, window_seconds=3600)
async def register_school(
    request: Request,
    body: RegisterSchoolRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> RegistrationResponse:
    return await service.register_school(db, body)


@router.post(
    "/verify-email",
    response_model=VerifyEmailResponse,
    summary="Verify Founder Email",
    description="""
Verify the founder's email with the code from the registration email.

On success the school is activated, the founder becomes its school admin and
owner, a 30-day trial starts and default settings are created. Each code
works once.
""",
    responses={
        400: {"description": "Invalid or expired verification code"},
        404: {"description": "No pending registration for this email"},
        429: {"description": "Too many attempts"},
    },
)
@rate_limit(limit=10, window_seconds=300)
async def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> VerifyEmailResponse:
    return await service.verify_email(db, body.email, body.code)


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    summary="Resend Verification Code",
    description="""
Send a new verification code to a founder whose school is still pending.

Older unused codes stop working. At most 3 codes can be issued per email
within 5 minutes.
""",
    responses={
        404: {"description": "No pending registration for this email"},
        429: {"description": "Too many codes requested"},
        503: {"description": "The email could not be sent"},
    },
)
async def resend_verification(
    body: ResendVerificationRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.resend_verification(db, body.email)
    return MessageResponse(message="A new verification code has been sent.")


# ============================================
# Sessions
# ============================================


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Sign In",
    description="""
Authenticate with email and password.

Returns a short-lived access token in the body. The refresh token is set as
an HTTP-only cookie (1 day, or 7 days with `remember_me`).
""",
    responses={
        401: {"description": "Invalid email or password", "content": _ERROR_EXAMPLE},
        403: {"description": "Email not verified, or school not active"},
        429: {"description": "Too many login attempts"},
    },
)
@rate_limit(limit=10, window_seconds=60)
async def login(
    request: Request,
    response: Response,
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
) -> LoginResponse:
    result = await service.login(
        db,
        email=credentials.email,
        password=credentials.password,
        remember_me=credentials.remember_me,
        device=device_info(request),
    )
    set_refresh_cookie(
        response, result.refresh_token, remember_me=result.remember_me, settings=settings
    )
    return result.response


@router.post(
    "/session/refresh",
    response_model=RefreshResponse,
    summary="Refresh Access Token",
    description="Issue a new access token from the refresh token cookie.",
    responses={
        401: {"description": "Missing, invalid, revoked or expired refresh token"},
        403: {"description": "School is no longer active"},
    },
)
async def refresh(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
):
    raw_token = request.cookies.get(settings.refresh_cookie_name)
    try:
        result = await service.refresh_access_token(db, raw_token, device_info(request))
    except (AuthenticationError, AuthorizationError) as e:
        return _session_rejected(e, settings)

    if result.refresh_token:
        # Rotated cookies slide by the default lifetime
        set_refresh_cookie(response, result.refresh_token, remember_me=False, settings=settings)

    return RefreshResponse(access_token=result.access_token, expires_in=result.expires_in)


@router.post(
    "/session/logout",
    response_model=MessageResponse,
    summary="Sign Out",
    description="Revoke the refresh token of this session and clear the cookie. Always succeeds.",
)
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
) -> MessageResponse:
    await service.logout(db, request.cookies.get(settings.refresh_cookie_name))
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Logged out successfully.")


@router.post(
    "/session/logout-all",
    response_model=LogoutAllResponse,
    summary="Sign Out Everywhere",
    description="Revoke every refresh token of the signed-in user.",
    responses={401: {"description": "Not authenticated"}},
)
async def logout_all(
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
) -> LogoutAllResponse:
    count = await service.logout_all_devices(db, user.id)
    clear_refresh_cookie(response, settings)
    return LogoutAllResponse(message="Logged out from all devices.", revoked_sessions=count)


@router.get(
    "/me",
    response_model=CurrentUserResponse,
    summary="Current User",
    responses={
        401: {"description": "Not authenticated"},
        404: {"description": "User no longer exists"},
    },
)
async def me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    return await service.get_current_user(db, user.id)


# ============================================
# Passwords
# ============================================


@router.post(
    "/password/forgot",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Forgot Password",
    description="""
Request a password reset code.

The response is the same whether or not an account exists for the email.
""",
)
@rate_limit(limit=5, window_seconds=900)
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.request_password_reset(db, body.email)
    return MessageResponse(
        message="If an account exists for this email, a reset code has been sent."
    )


@router.post(
    "/password/reset",
    response_model=MessageResponse,
    summary="Reset Password",
    description="Set a new password with a reset code. Signs out every device.",
    responses={400: {"description": "Invalid or expired code, or weak password"}},
)
@rate_limit(limit=10, window_seconds=900)
async def reset_password(
    request: Request,
    response: Response,
    body: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
) -> MessageResponse:
    await service.reset_password(
        db, email=body.email, code=body.code, new_password=body.new_password
    )
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Password reset. Please sign in with your new password.")


@router.post(
    "/password/change",
    response_model=MessageResponse,
    summary="Change Password",
    description="Change the password of the signed-in user. Signs out every device.",
    responses={
        400: {"description": "Weak password or same as current"},
        401: {"description": "Not authenticated, or current password is wrong"},
    },
)
@rate_limit(limit=10, window_seconds=900)
async def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dependency),
) -> MessageResponse:
    await service.change_password(
        db,
        user_id=user.id,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Password changed. Please sign in again.")
