"""
Verification module - One-time email verification codes.
"""

from shule.modules.verification.models import VerificationCode, VerificationType
from shule.modules.verification.service import (
    CodeKind,
    CodeValidation,
    IssuedCode,
    VerificationCodeService,
)

__all__ = [
    "VerificationCode",
    "VerificationType",
    "CodeKind",
    "CodeValidation",
    "IssuedCode",
    "VerificationCodeService",
]
