"""Constructing and delivering SMTP email messages."""

from __future__ import annotations

import logging
import os
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any, Protocol

logger = logging.getLogger("authcore.email")


class MailDeliveryError(RuntimeError):
    """Transient delivery failure; the message may be retried."""


class Mailer(Protocol):
    """Anything able to deliver a plain-text message.

    ``send`` returns ``True`` once the relay accepted the message and
    ``False`` for permanent failures that retrying cannot fix. Transient
    failures raise :class:`MailDeliveryError`.
    """

    def send(self, to: str, subject: str, body: str) -> bool: ...


@dataclass(slots=True)
class SMTPSettings:
    """Runtime configuration for delivering emails via SMTP."""

    host: str | None
    port: int
    use_ssl: bool
    user: str | None
    password: str | None
    from_addr: str
    timeout: float


def load_smtp_settings(*, default_from: str) -> SMTPSettings:
    """Load SMTP configuration from environment variables."""

    host = os.getenv("SMTP_HOST")
    port_str = os.getenv("SMTP_PORT", "587")
    try:
        port = int(port_str)
    except ValueError:
        port = 587
    use_ssl = os.getenv("SMTP_SSL", "").strip().lower() in {"1", "true", "yes", "on"}
    timeout_value = os.getenv("SMTP_TIMEOUT", "10")
    try:
        timeout = float(timeout_value)
    except ValueError:
        timeout = 10.0
    return SMTPSettings(
        host=host,
        port=port,
        use_ssl=use_ssl,
        user=os.getenv("SMTP_USER"),
        password=os.getenv("SMTP_PASSWORD"),
        from_addr=os.getenv("SMTP_FROM", default_from),
        timeout=timeout,
    )


def build_email(
    *,
    subject: str,
    from_addr: str,
    to_addr: str,
    body: str,
    reply_to: str | None = None,
) -> EmailMessage:
    """Create a simple plain text email message."""

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = from_addr
    message["To"] = to_addr
    message["Date"] = formatdate(localtime=True)
    # Mark messages as automated to avoid responder loops and suppress OOO replies.
    message["Auto-Submitted"] = "auto-generated"
    message["X-Auto-Response-Suppress"] = "All"
    domain = from_addr.split("@", 1)[1] if "@" in from_addr else None
    message["Message-ID"] = make_msgid(domain=domain)
    if reply_to:
        message["Reply-To"] = reply_to
    message.set_content(body)
    return message


def _safe_ehlo(server: Any) -> None:
    ehlo = getattr(server, "ehlo", None)
    if ehlo is None:
        return
    if not getattr(server, "local_hostname", None):
        server.local_hostname = "localhost"
    ehlo()


class SMTPMailer:
    """Deliver messages through an SMTP relay.

    Implicit TLS is attempted first when ``SMTP_SSL`` is set; any non
    authentication failure there is retried once over STARTTLS.
    """

    def __init__(self, settings: SMTPSettings) -> None:
        self.settings = settings
        self._context = ssl.create_default_context()
        self._context.minimum_version = ssl.TLSVersion.TLSv1_2

    @classmethod
    def from_env(cls, *, default_from: str) -> "SMTPMailer":
        return cls(load_smtp_settings(default_from=default_from))

    def _deliver(self, message: EmailMessage, *, via_ssl: bool) -> None:
        settings = self.settings
        host = settings.host or ""
        server: smtplib.SMTP
        if via_ssl:
            server = smtplib.SMTP_SSL(
                host, settings.port, context=self._context, timeout=settings.timeout
            )
        else:
            server = smtplib.SMTP(host, settings.port, timeout=settings.timeout)
        with server:
            _safe_ehlo(server)
            if not via_ssl and server.has_extn("starttls"):
                server.starttls(context=self._context)
                _safe_ehlo(server)
            if settings.user and settings.password:
                server.login(settings.user, settings.password)
            server.send_message(message)

    def send(self, to: str, subject: str, body: str) -> bool:
        if not self.settings.host:
            logger.error(
                "Email service misconfigured; SMTP_HOST is not set",
                extra={"event_dataset": "authcore.email", "event_action": "email_misconfigured"},
            )
            return False

        message = build_email(
            subject=subject,
            from_addr=self.settings.from_addr,
            to_addr=to,
            body=body,
        )
        attempts = ["ssl" if self.settings.use_ssl else "starttls"]
        try:
            self._deliver(message, via_ssl=self.settings.use_ssl)
            return True
        except smtplib.SMTPAuthenticationError:
            logger.error(
                "SMTP authentication failed",
                extra={"event_dataset": "authcore.email", "event_action": "email_auth_failed"},
                exc_info=True,
            )
            return False
        except (smtplib.SMTPException, OSError) as exc:
            if not self.settings.use_ssl:
                raise MailDeliveryError(str(exc)) from exc
            logger.warning(
                "SMTP SSL delivery failed, retrying with STARTTLS",
                extra={"event_dataset": "authcore.email", "event_action": "email_ssl_retry"},
                exc_info=True,
            )

        attempts.append("starttls")
        try:
            self._deliver(message, via_ssl=False)
            return True
        except smtplib.SMTPAuthenticationError:
            logger.error(
                "SMTP authentication failed",
                extra={"event_dataset": "authcore.email", "event_action": "email_auth_failed"},
                exc_info=True,
            )
            return False
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"delivery failed via {','.join(attempts)}: {exc}") from exc
