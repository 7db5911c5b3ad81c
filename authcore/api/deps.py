"""Request-scoped service wiring for the routers."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ..config import Settings
from ..database import get_db
from ..tokens import SecureTokenService
from ..utils.email_verification import EmailVerificationFlow
from ..utils.magic_link import MagicLinkFlow
from ..utils.mailbox_requests import MailboxRequestRunner
from ..utils.outbox import EmailOutbox
from ..utils.password_reset import PasswordResetFlow


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> SecureTokenService:
    return SecureTokenService.from_settings(db, settings)


def get_outbox(request: Request, settings: Settings = Depends(get_app_settings)) -> EmailOutbox:
    """A fresh outbox per request; routes dispatch it once their work committed."""

    outbox = EmailOutbox(request.app.state.mailer, max_attempts=settings.mail_max_attempts)
    mail_wait = getattr(request.app.state, "mail_retry_wait", None)
    if mail_wait is not None:
        outbox.wait = mail_wait
    return outbox


def get_verification_flow(
    db: Session = Depends(get_db),
    tokens: SecureTokenService = Depends(get_token_service),
    outbox: EmailOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_app_settings),
) -> EmailVerificationFlow:
    return EmailVerificationFlow(db, tokens, outbox, settings)


def get_reset_flow(
    db: Session = Depends(get_db),
    tokens: SecureTokenService = Depends(get_token_service),
    outbox: EmailOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_app_settings),
) -> PasswordResetFlow:
    return PasswordResetFlow(db, tokens, outbox, settings)


def get_magic_link_flow(
    db: Session = Depends(get_db),
    tokens: SecureTokenService = Depends(get_token_service),
    outbox: EmailOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_app_settings),
) -> MagicLinkFlow:
    return MagicLinkFlow(db, tokens, outbox, settings)


def get_mailbox_runner(request: Request) -> MailboxRequestRunner:
    return MailboxRequestRunner.from_app(request.app)
