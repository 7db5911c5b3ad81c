"""Domain-specific SQLAlchemy model package."""

from ..database import Base

from .tokens import (
    TOKEN_MODELS,
    EmailVerificationToken,
    MagicLinkToken,
    PasswordResetToken,
    TokenPurpose,
    TokenRecord,
)
from .users import User, UserRole, normalize_email

__all__ = [
    "Base",
    "EmailVerificationToken",
    "MagicLinkToken",
    "PasswordResetToken",
    "TOKEN_MODELS",
    "TokenPurpose",
    "TokenRecord",
    "User",
    "UserRole",
    "normalize_email",
]
