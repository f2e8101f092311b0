"""
Core module - Configuration, database, security, and utilities.
"""

from shule.core.config import Settings, get_settings, settings
from shule.core.database import Base, close_db, get_db, init_db
from shule.core.errors import ServiceError, register_exception_handlers
from shule.core.redis import close_redis, init_redis, ping_redis
from shule.core.security import PasswordHasher, TokenIssuer, hash_token

__all__ = [
    # Config
    "Settings",
    "settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "init_db",
    "close_db",
    # Errors
    "ServiceError",
    "register_exception_handlers",
    # Redis
    "ping_redis",
    "init_redis",
    "close_redis",
    # Security
    "PasswordHasher",
    "TokenIssuer",
    "hash_token",
]
