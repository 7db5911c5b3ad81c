"""User domain models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..database import Base
from .types import UTCDateTime

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .tokens import EmailVerificationToken, MagicLinkToken, PasswordResetToken


class UserRole(str, Enum):
    """Roles carried in the session claim."""

    CUSTOMER = "customer"
    ADMIN = "admin"


def _now() -> datetime:
    return datetime.now(UTC)


class User(Base):
    """An account that can authenticate against the storefront."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    # Always stored lowercased; see ``normalize_email``.
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Allow extra room for bcrypt_sha256 and future password hashing schemes
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(32), nullable=False, default=UserRole.CUSTOMER.value
    )
    email_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now)

    email_verification_tokens: Mapped[list["EmailVerificationToken"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    password_reset_tokens: Mapped[list["PasswordResetToken"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    magic_link_tokens: Mapped[list["MagicLinkToken"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or "there"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def normalize_email(email: str) -> str:
    """Return the canonical (trimmed, lowercased) form of ``email``."""

    return email.strip().lower()
