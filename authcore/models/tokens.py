"""Single-use token models.

Each purpose gets its own table; the token service addresses them through
``TokenPurpose`` and the uniform ``consumed_at`` attribute.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship, synonym

from ..database import Base
from .types import UTCDateTime

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .users import User


class TokenPurpose(str, Enum):
    """Supported token scopes; expiry and invalidation are tracked per purpose."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    MAGIC_LINK = "magic_link"


class _TokenColumns:
    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    @declared_attr
    def user_id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        )


class EmailVerificationToken(_TokenColumns, Base):
    """Outstanding invitation to prove ownership of ``email``."""

    __tablename__ = "email_verification_tokens"

    # The address being verified; may differ from the account's current email.
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    consumed_at = synonym("verified_at")
    consumed_field = "verified_at"

    user: Mapped["User"] = relationship(back_populates="email_verification_tokens")


class PasswordResetToken(_TokenColumns, Base):
    """Password reset grant; consumed together with the password rewrite."""

    __tablename__ = "password_reset_tokens"

    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    consumed_at = synonym("used_at")
    consumed_field = "used_at"

    user: Mapped["User"] = relationship(back_populates="password_reset_tokens")


class MagicLinkToken(_TokenColumns, Base):
    """Short-lived passwordless sign-in grant."""

    __tablename__ = "magic_link_tokens"

    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    consumed_at = synonym("used_at")
    consumed_field = "used_at"

    user: Mapped["User"] = relationship(back_populates="magic_link_tokens")


TokenRecord = EmailVerificationToken | PasswordResetToken | MagicLinkToken

TOKEN_MODELS: dict[TokenPurpose, type[EmailVerificationToken] | type[PasswordResetToken] | type[MagicLinkToken]] = {
    TokenPurpose.EMAIL_VERIFICATION: EmailVerificationToken,
    TokenPurpose.PASSWORD_RESET: PasswordResetToken,
    TokenPurpose.MAGIC_LINK: MagicLinkToken,
}


Index(
    "ix_email_verification_tokens_user_active",
    EmailVerificationToken.user_id,
    EmailVerificationToken.verified_at,
)
Index(
    "ix_password_reset_tokens_user_active",
    PasswordResetToken.user_id,
    PasswordResetToken.used_at,
)
Index(
    "ix_magic_link_tokens_user_active",
    MagicLinkToken.user_id,
    MagicLinkToken.used_at,
)
