"""Authentication module - sessions, refresh tokens and passwords."""

from shule.modules.auth.models import RefreshTokenRecord
from shule.modules.auth.registry import DeviceInfo, RefreshTokenRegistry
from shule.modules.auth.service import AuthService

__all__ = ["AuthService", "DeviceInfo", "RefreshTokenRecord", "RefreshTokenRegistry"]
