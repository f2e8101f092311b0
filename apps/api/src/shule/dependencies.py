"""
Service Container

All long-lived collaborators are built once at startup by build_services()
and stored on ``app.state.services``. Routers reach them through the FastAPI
dependencies below, so tests can swap any of them.
"""

from dataclasses import dataclass

from fastapi import Request

from shule.core.config import Settings
from shule.core.email import EmailNotifier
from shule.core.security import PasswordHasher, TokenIssuer
from shule.modules.auth.registry import RefreshTokenRegistry
from shule.modules.auth.service import AuthService
from shule.modules.schools.service import SchoolService
from shule.modules.verification.service import VerificationCodeService


@dataclass
class Services:
    settings: Settings
    hasher: PasswordHasher
    issuer: TokenIssuer
    registry: RefreshTokenRegistry
    codes: VerificationCodeService
    notifier: EmailNotifier
    auth: AuthService
    schools: SchoolService


def build_services(settings: Settings) -> Services:
    """Construct every service from settings."""
    hasher = PasswordHasher(rounds=settings.password_hash_rounds)
    issuer = TokenIssuer.from_settings(settings)
    registry = RefreshTokenRegistry()
    codes = VerificationCodeService()
    notifier = EmailNotifier.from_settings(settings)

    return Services(
        settings=settings,
        hasher=hasher,
        issuer=issuer,
        registry=registry,
        codes=codes,
        notifier=notifier,
        auth=AuthService(
            settings=settings,
            hasher=hasher,
            issuer=issuer,
            registry=registry,
            codes=codes,
            notifier=notifier,
        ),
        schools=SchoolService(codes=codes),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings_dependency(request: Request) -> Settings:
    return get_services(request).settings


def get_auth_service(request: Request) -> AuthService:
    return get_services(request).auth


def get_school_service(request: Request) -> SchoolService:
    return get_services(request).schools


def get_token_issuer(request: Request) -> TokenIssuer:
    return get_services(request).issuer
