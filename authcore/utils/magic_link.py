"""Passwordless sign-in through short-lived emailed links."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from .. import models
from ..config import Settings
from ..tokens import SecureTokenService
from .account_notifications import magic_link_email
from .outbox import EmailOutbox
from .password_reset import find_user_by_email

logger = logging.getLogger("authcore.magic_link")

_PURPOSE = models.TokenPurpose.MAGIC_LINK


class MagicLinkFlow:
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

    def request_link(self, email: str) -> None:
        user = find_user_by_email(self.db, email)
        if user is None:
            logger.info(
                "Magic link requested for unknown address",
                extra={"event_dataset": "authcore.auth", "event_action": "magic_link_unknown"},
            )
            return
        issued = self.tokens.issue(user, _PURPOSE)
        self.db.commit()
        self.outbox.queue(magic_link_email(self.settings, user, token=issued.raw))

    def redeem(self, raw: str | None) -> models.User | None:
        """Consume the link and return the signed-in account.

        Opening the link proves control of the mailbox, so an unverified
        address is marked verified in the same transaction.
        """

        def _sign_in(user: models.User, record: models.TokenRecord) -> None:
            now = self.tokens.now()
            if user.email_verified_at is None:
                user.email_verified_at = now
            user.last_login_at = now

        owner_id = self.tokens.consume(raw, _PURPOSE, _sign_in)
        if owner_id is None:
            return None
        return self.db.get(models.User, owner_id)
