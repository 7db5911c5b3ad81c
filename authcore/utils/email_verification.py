"""Email ownership verification."""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from enum import Enum

from sqlalchemy.orm import Session

from .. import models
from ..config import Settings
from ..tokens import SecureTokenService
from .account_notifications import verification_email
from .outbox import EmailOutbox

logger = logging.getLogger("authcore.email_verification")

_PURPOSE = models.TokenPurpose.EMAIL_VERIFICATION
_DAILY_WINDOW = timedelta(hours=24)


class VerificationRequestOutcome(str, Enum):
    SENT = "sent"
    ALREADY_VERIFIED = "already_verified"
    COOLDOWN = "cooldown"
    DAILY_LIMIT = "daily_limit"


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    INVALID_TOKEN = "invalid_token"


class _AddressChanged(Exception):
    """The account's email moved on after the token was issued."""


class EmailVerificationFlow:
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

    def _throttle(self, user: models.User) -> VerificationRequestOutcome | None:
        current = self.tokens.now()
        last_issued = self.tokens.latest_issued_at(user.id, _PURPOSE)
        cooldown = self.settings.email_verification_resend_cooldown
        if last_issued and (current - last_issued).total_seconds() < cooldown:
            return VerificationRequestOutcome.COOLDOWN
        recent = self.tokens.issued_since(user.id, _PURPOSE, current - _DAILY_WINDOW)
        if recent >= self.settings.email_verification_daily_limit:
            return VerificationRequestOutcome.DAILY_LIMIT
        return None

    def cooldown_remaining(self, user: models.User) -> int:
        """Whole seconds until ``user`` may ask for another link; 0 when allowed now."""

        last_issued = self.tokens.latest_issued_at(user.id, _PURPOSE)
        if last_issued is None:
            return 0
        elapsed = (self.tokens.now() - last_issued).total_seconds()
        return max(0, math.ceil(self.settings.email_verification_resend_cooldown - elapsed))

    def request_verification(self, user: models.User) -> VerificationRequestOutcome:
        """Issue a fresh verification link for ``user`` unless throttled.

        Commits the token together with anything pending on the session, so
        registration can create the account and its first link atomically.
        """

        if user.email_verified_at is not None:
            return VerificationRequestOutcome.ALREADY_VERIFIED

        throttled = self._throttle(user)
        if throttled is not None:
            logger.info(
                "Verification email throttled",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "verification_throttled",
                    "user_id": str(user.id),
                    "auth_failure_reason": throttled.value,
                },
            )
            return throttled

        issued = self.tokens.issue(user, _PURPOSE, email=user.email)
        self.db.commit()
        self.outbox.queue(
            verification_email(self.settings, user, token=issued.raw, email=user.email)
        )
        return VerificationRequestOutcome.SENT

    def confirm_verification(self, raw: str | None) -> VerificationOutcome:
        was_verified = False

        def _mark_verified(user: models.User, record: models.TokenRecord) -> None:
            nonlocal was_verified
            target = getattr(record, "email", None)
            if target is None or models.normalize_email(target) != user.email:
                raise _AddressChanged
            was_verified = user.email_verified_at is not None
            if not was_verified:
                user.email_verified_at = self.tokens.now()

        try:
            owner_id = self.tokens.consume(raw, _PURPOSE, _mark_verified)
        except _AddressChanged:
            logger.info(
                "Verification token targets a previous address",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "verification_failed",
                    "auth_failure_reason": "address_changed",
                },
            )
            return VerificationOutcome.INVALID_TOKEN

        if owner_id is not None:
            if was_verified:
                return VerificationOutcome.ALREADY_VERIFIED
            logger.info(
                "Email address verified",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "email_verified",
                    "user_id": str(owner_id),
                },
            )
            return VerificationOutcome.VERIFIED

        spent_owner = self.tokens.spent_owner(raw, _PURPOSE)
        if spent_owner is not None:
            user = self.db.get(models.User, spent_owner)
            if user is not None and user.email_verified_at is not None:
                return VerificationOutcome.ALREADY_VERIFIED
        return VerificationOutcome.INVALID_TOKEN
