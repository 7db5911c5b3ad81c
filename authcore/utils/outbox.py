"""Per-request queue of side-effect emails delivered after commit.

Flows only *queue* messages. The API layer hands the queue to FastAPI's
background tasks once the primary mutation has committed, so a slow or
failing relay never changes the response a caller sees.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fastapi import BackgroundTasks
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .email_sender import MailDeliveryError, Mailer

logger = logging.getLogger("authcore.outbox")


@dataclass(frozen=True, slots=True)
class OutgoingEmail:
    to: str
    subject: str
    body: str
    # Short label used in logs, e.g. "password_reset".
    kind: str


@dataclass
class EmailOutbox:
    mailer: Mailer | None
    max_attempts: int = 3
    wait: wait_base = field(default_factory=lambda: wait_exponential(multiplier=1, min=1, max=10))
    pending: list[OutgoingEmail] = field(default_factory=list)

    def queue(self, message: OutgoingEmail) -> None:
        self.pending.append(message)

    def discard(self) -> None:
        self.pending.clear()

    def deliver(self, message: OutgoingEmail) -> bool:
        """Send one message, retrying transient relay failures."""

        extra = {"event_dataset": "authcore.email", "email_kind": message.kind}
        if self.mailer is None:
            logger.error(
                "No mailer configured; dropping %s email",
                message.kind,
                extra={**extra, "event_action": "email_dropped"},
            )
            return False

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(MailDeliveryError),
        )
        try:
            delivered = retrying(self.mailer.send, message.to, message.subject, message.body)
        except RetryError as exc:
            logger.error(
                "Giving up on %s email",
                message.kind,
                extra={
                    **extra,
                    "event_action": "email_failed",
                    "email_attempts": exc.last_attempt.attempt_number,
                },
                exc_info=exc.last_attempt.exception(),
            )
            return False
        except Exception:
            logger.exception(
                "Unexpected failure sending %s email",
                message.kind,
                extra={**extra, "event_action": "email_failed"},
            )
            return False

        logger.info(
            "Delivered %s email" if delivered else "Could not deliver %s email",
            message.kind,
            extra={**extra, "event_action": "email_sent" if delivered else "email_failed"},
        )
        return delivered

    def flush(self) -> int:
        """Deliver everything queued; returns the number accepted by the relay."""

        messages, self.pending = self.pending, []
        return sum(1 for message in messages if self.deliver(message))

    def dispatch(self, background_tasks: BackgroundTasks) -> None:
        """Schedule delivery after the response has been sent."""

        if self.pending:
            background_tasks.add_task(self.flush)
