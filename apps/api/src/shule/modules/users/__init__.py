"""
Users module - User accounts and authentication identity.
"""

from shule.modules.users.models import User, UserRole
from shule.modules.users.repository import UserRepository

__all__ = ["User", "UserRole", "UserRepository"]
