"""
Schools module - School tenant management.
"""

from shule.modules.schools.models import (
    MembershipRole,
    School,
    SchoolMembership,
    SchoolSetting,
    SchoolStatus,
    SchoolSubscription,
    SubscriptionStatus,
)
from shule.modules.schools.repository import (
    MembershipRepository,
    SchoolRepository,
    SettingRepository,
    SubscriptionRepository,
)

__all__ = [
    "MembershipRole",
    "School",
    "SchoolMembership",
    "SchoolSetting",
    "SchoolStatus",
    "SchoolSubscription",
    "SubscriptionStatus",
    "MembershipRepository",
    "SchoolRepository",
    "SettingRepository",
    "SubscriptionRepository",
]
