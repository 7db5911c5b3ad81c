"""Anonymous "email me a link" requests, run after the response is sent.

Reset links, sign-in links and anonymous verification resends all answer
the caller before looking the address up. The endpoint only schedules a
:class:`MailboxRequestRunner` call, so its latency is the same whether or not
an account exists; the lookup, token issue, commit and delivery happen in
the background with a session of their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from fastapi import BackgroundTasks, FastAPI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity.wait import wait_base

from ..config import Settings
from ..tokens import SecureTokenService
from .email_sender import Mailer
from .email_verification import EmailVerificationFlow
from .magic_link import MagicLinkFlow
from .outbox import EmailOutbox
from .password_reset import PasswordResetFlow, find_user_by_email

logger = logging.getLogger("authcore.mailbox_requests")


class MailboxRequest(str, Enum):
    PASSWORD_RESET = "password_reset"
    MAGIC_LINK = "magic_link"
    EMAIL_VERIFICATION = "email_verification"


@dataclass(frozen=True)
class MailboxRequestRunner:
    session_factory: sessionmaker[Session]
    settings: Settings
    mailer: Mailer | None
    mail_wait: wait_base | None = None

    @classmethod
    def from_app(cls, app: FastAPI) -> "MailboxRequestRunner":
        return cls(
            session_factory=app.state.session_factory,
            settings=app.state.settings,
            mailer=app.state.mailer,
            mail_wait=getattr(app.state, "mail_retry_wait", None),
        )

    def schedule(
        self, background_tasks: BackgroundTasks, kind: MailboxRequest, email: str
    ) -> None:
        background_tasks.add_task(self, kind, email)

    def _outbox(self) -> EmailOutbox:
        outbox = EmailOutbox(self.mailer, max_attempts=self.settings.mail_max_attempts)
        if self.mail_wait is not None:
            outbox.wait = self.mail_wait
        return outbox

    def __call__(self, kind: MailboxRequest, email: str) -> None:
        db = self.session_factory()
        outbox = self._outbox()
        try:
            tokens = SecureTokenService.from_settings(db, self.settings)
            if kind is MailboxRequest.PASSWORD_RESET:
                PasswordResetFlow(db, tokens, outbox, self.settings).request_reset(email)
            elif kind is MailboxRequest.MAGIC_LINK:
                MagicLinkFlow(db, tokens, outbox, self.settings).request_link(email)
            else:
                user = find_user_by_email(db, email)
                if user is not None:
                    EmailVerificationFlow(db, tokens, outbox, self.settings).request_verification(
                        user
                    )
        except SQLAlchemyError:
            # Nobody is waiting on this request any more; record it and drop the mail.
            db.rollback()
            outbox.discard()
            logger.exception(
                "Deferred %s request failed",
                kind.value,
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "mailbox_request_failed",
                    "error_type": "SQLAlchemyError",
                },
            )
        finally:
            db.close()
        outbox.flush()
