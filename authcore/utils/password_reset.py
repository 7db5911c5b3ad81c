"""Password reset via emailed single-use links."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from sqlalchemy.orm import Session

from .. import models
from ..config import Settings
from ..credentials import hash_password, password_policy_violations
from ..tokens import SecureTokenService
from .account_notifications import password_changed_email, password_reset_email
from .outbox import EmailOutbox

logger = logging.getLogger("authcore.password_reset")
audit_logger = logging.getLogger("authcore.audit")

_PURPOSE = models.TokenPurpose.PASSWORD_RESET
_DAILY_WINDOW = timedelta(hours=24)


class ResetOutcome(str, Enum):
    COMPLETED = "completed"
    INVALID_TOKEN = "invalid_token"
    PASSWORD_MISMATCH = "password_mismatch"
    WEAK_PASSWORD = "weak_password"


@dataclass(frozen=True)
class ResetResult:
    outcome: ResetOutcome
    violations: list[str] = field(default_factory=list)


def find_user_by_email(db: Session, email: str | None) -> models.User | None:
    if not email:
        return None
    normalized = models.normalize_email(email)
    if not normalized:
        return None
    return db.query(models.User).filter(models.User.email == normalized).one_or_none()


class PasswordResetFlow:
    def __init__(
        self,
        db: Session,
        tokens: SecureTokenService,
        outbox: EmailOutbox,
        settings: Settings,
    ) -> None:
        self.db = db
        self.tokens = tokens
        self.outbox = outbox
        self.settings = settings

    def request_reset(self, email: str) -> None:
        """Start a reset for ``email``.

        Returns nothing: unknown addresses, capped accounts and successful
        requests all look the same to the caller.
        """

        user = find_user_by_email(self.db, email)
        if user is None:
            logger.info(
                "Password reset requested for unknown address",
                extra={"event_dataset": "authcore.auth", "event_action": "password_reset_unknown"},
            )
            return

        since = self.tokens.now() - _DAILY_WINDOW
        if self.tokens.issued_since(user.id, _PURPOSE, since) >= self.settings.password_reset_daily_limit:
            logger.warning(
                "Password reset daily limit reached",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "password_reset_throttled",
                    "user_id": str(user.id),
                },
            )
            return

        issued = self.tokens.issue(user, _PURPOSE)
        self.db.commit()
        self.outbox.queue(password_reset_email(self.settings, user, token=issued.raw))
        logger.info(
            "Password reset link issued",
            extra={
                "event_dataset": "authcore.auth",
                "event_action": "password_reset_requested",
                "user_id": str(user.id),
            },
        )

    def check_token(self, raw: str | None) -> str | None:
        """Return the account email for a live reset token without consuming it."""

        owner_id = self.tokens.resolve(raw, _PURPOSE)
        if owner_id is None:
            return None
        user = self.db.get(models.User, owner_id)
        return user.email if user is not None else None

    def complete_reset(self, raw: str | None, new_password: str, confirm_password: str) -> ResetResult:
        # Cheap checks first so a typo never burns the link.
        if new_password != confirm_password:
            return ResetResult(ResetOutcome.PASSWORD_MISMATCH)
        violations = password_policy_violations(new_password)
        if violations:
            return ResetResult(ResetOutcome.WEAK_PASSWORD, violations)

        new_hash = hash_password(new_password)

        def _rewrite_password(user: models.User, record: models.TokenRecord) -> None:
            user.password_hash = new_hash

        owner_id = self.tokens.consume(raw, _PURPOSE, _rewrite_password)
        if owner_id is None:
            return ResetResult(ResetOutcome.INVALID_TOKEN)

        user = self.db.get(models.User, owner_id)
        if user is not None:
            self.outbox.queue(password_changed_email(self.settings, user))
        audit_logger.info(
            "Password reset completed",
            extra={
                "event_dataset": "authcore.audit",
                "event_action": "password_reset_completed",
                "user_id": str(owner_id),
            },
        )
        return ResetResult(ResetOutcome.COMPLETED)
