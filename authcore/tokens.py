"""Issue, resolve and consume single-use secrets.

Raw token values leave this module exactly once, in the ``IssuedToken``
returned by :meth:`SecureTokenService.issue`. Only an HMAC-SHA256 digest keyed
with the service pepper is persisted, and log records carry a short
fingerprint of that digest rather than the value itself.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import models
from .config import Settings

logger = logging.getLogger("authcore.tokens")

# 32 random bytes, hex encoded.
TOKEN_BYTES = 32

TokenEffect = Callable[[models.User, models.TokenRecord], None]


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """A freshly minted token; ``raw`` is never retrievable again."""

    raw: str
    expires_at: datetime


def default_ttls(settings: Settings) -> dict[models.TokenPurpose, timedelta]:
    return {
        models.TokenPurpose.EMAIL_VERIFICATION: timedelta(
            minutes=settings.email_verification_ttl_minutes
        ),
        models.TokenPurpose.PASSWORD_RESET: timedelta(
            minutes=settings.password_reset_ttl_minutes
        ),
        models.TokenPurpose.MAGIC_LINK: timedelta(minutes=settings.magic_link_ttl_minutes),
    }


class SecureTokenService:
    """Token lifecycle bound to one database session."""

    def __init__(
        self,
        db: Session,
        *,
        pepper: str,
        ttls: dict[models.TokenPurpose, timedelta],
        clock: Callable[[], datetime] = _now,
    ) -> None:
        if not pepper:
            raise ValueError("a non-empty token pepper is required")
        self.db = db
        self._pepper = pepper.encode("utf-8")
        self._ttls = ttls
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        db: Session,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> "SecureTokenService":
        return cls(db, pepper=settings.token_pepper, ttls=default_ttls(settings), clock=clock)

    def now(self) -> datetime:
        return self._clock()

    def hash_secret(self, raw: str) -> str:
        """Return an HMAC-SHA256 hash of ``raw`` using the configured pepper."""

        digest = hmac.new(self._pepper, raw.encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()

    @staticmethod
    def fingerprint(token_hash: str) -> str:
        return token_hash[:12]

    def issue(
        self,
        owner: models.User,
        purpose: models.TokenPurpose,
        *,
        email: str | None = None,
    ) -> IssuedToken:
        """Persist a new token for ``owner`` and retire every other live one.

        The caller owns the transaction: nothing is committed here so the
        token and whatever prompted it land together. The owner row stays
        locked until that commit, so concurrent issues for the same account
        queue up and the last one to commit holds the only live token.
        """

        self._lock_owner(owner)
        model = models.TOKEN_MODELS[purpose]
        current = self._clock()
        raw = secrets.token_hex(TOKEN_BYTES)
        token_hash = self.hash_secret(raw)
        expires_at = current + self._ttls[purpose]

        consumed_col = getattr(model, model.consumed_field)
        superseded = (
            self.db.query(model)
            .filter(
                model.user_id == owner.id,
                consumed_col.is_(None),
                model.expires_at > current,
            )
            .update({model.expires_at: current}, synchronize_session="fetch")
        )

        fields = {
            "user_id": owner.id,
            "token_hash": token_hash,
            "expires_at": expires_at,
            "created_at": current,
        }
        if purpose is models.TokenPurpose.EMAIL_VERIFICATION:
            fields["email"] = models.normalize_email(email or owner.email)
        self.db.add(model(**fields))
        self.db.flush()

        logger.info(
            "Issued %s token",
            purpose.value,
            extra={
                "event_dataset": "authcore.tokens",
                "event_action": "token_issued",
                "token_purpose": purpose.value,
                "token_fingerprint": self.fingerprint(token_hash),
                "user_id": str(owner.id),
                "superseded_count": superseded,
            },
        )
        return IssuedToken(raw=raw, expires_at=expires_at)

    def _lock_owner(self, owner: models.User) -> None:
        (
            self.db.query(models.User.id)
            .filter(models.User.id == owner.id)
            .with_for_update()
            .one()
        )

    def _lookup(self, raw: str | None, purpose: models.TokenPurpose) -> models.TokenRecord | None:
        if not raw:
            return None
        model = models.TOKEN_MODELS[purpose]
        return (
            self.db.query(model)
            .filter(model.token_hash == self.hash_secret(raw))
            .one_or_none()
        )

    def _rejection_reason(self, record: models.TokenRecord | None) -> str | None:
        if record is None:
            return "unknown"
        if record.consumed_at is not None:
            return "consumed"
        if record.expires_at <= self._clock():
            return "expired"
        return None

    def _log_rejection(self, raw: str | None, purpose: models.TokenPurpose, reason: str) -> None:
        logger.info(
            "Rejected %s token",
            purpose.value,
            extra={
                "event_dataset": "authcore.tokens",
                "event_action": "token_rejected",
                "token_purpose": purpose.value,
                "token_fingerprint": self.fingerprint(self.hash_secret(raw)) if raw else None,
                "auth_failure_reason": reason,
            },
        )

    def resolve(self, raw: str | None, purpose: models.TokenPurpose) -> uuid.UUID | None:
        """Return the owner of a live token without consuming it."""

        record = self._lookup(raw, purpose)
        reason = self._rejection_reason(record)
        if reason is not None:
            self._log_rejection(raw, purpose, reason)
            return None
        return record.user_id

    def load(self, raw: str | None, purpose: models.TokenPurpose) -> models.TokenRecord | None:
        """Return the live record for ``raw`` (read-only use by the flows)."""

        record = self._lookup(raw, purpose)
        if self._rejection_reason(record) is not None:
            return None
        return record

    def spent_owner(self, raw: str | None, purpose: models.TokenPurpose) -> uuid.UUID | None:
        """Return the owner of a token that exists but is no longer live."""

        record = self._lookup(raw, purpose)
        if record is None or self._rejection_reason(record) is None:
            return None
        return record.user_id

    def consume(
        self,
        raw: str | None,
        purpose: models.TokenPurpose,
        effect: TokenEffect | None = None,
    ) -> uuid.UUID | None:
        """Atomically mark the token used and apply ``effect`` in one transaction.

        The state change is a compare-and-set on the consumption column, so
        only one caller can observe the live token. ``effect`` runs before
        commit; if it raises, the consumption is rolled back as well and the
        exception propagates.
        """

        record = self._lookup(raw, purpose)
        reason = self._rejection_reason(record)
        if reason is not None:
            self._log_rejection(raw, purpose, reason)
            return None

        model = models.TOKEN_MODELS[purpose]
        consumed_col = getattr(model, model.consumed_field)
        current = self._clock()
        try:
            claimed = (
                self.db.query(model)
                .filter(
                    model.id == record.id,
                    consumed_col.is_(None),
                    model.expires_at > current,
                )
                .update({consumed_col: current}, synchronize_session="fetch")
            )
            if claimed != 1:
                self.db.rollback()
                self._log_rejection(raw, purpose, "lost_race")
                return None
            if effect is not None:
                user = self.db.get(models.User, record.user_id)
                if user is None:
                    raise LookupError("token owner no longer exists")
                effect(user, record)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Consumed %s token",
            purpose.value,
            extra={
                "event_dataset": "authcore.tokens",
                "event_action": "token_consumed",
                "token_purpose": purpose.value,
                "token_fingerprint": self.fingerprint(record.token_hash),
                "user_id": str(record.user_id),
            },
        )
        return record.user_id

    def revoke_live(self, owner_id: uuid.UUID, purpose: models.TokenPurpose) -> int:
        """Expire every live token of ``purpose`` for the owner; the caller commits."""

        model = models.TOKEN_MODELS[purpose]
        consumed_col = getattr(model, model.consumed_field)
        current = self._clock()
        return (
            self.db.query(model)
            .filter(
                model.user_id == owner_id,
                consumed_col.is_(None),
                model.expires_at > current,
            )
            .update({model.expires_at: current}, synchronize_session="fetch")
        )

    def latest_issued_at(
        self, owner_id: uuid.UUID, purpose: models.TokenPurpose
    ) -> datetime | None:
        model = models.TOKEN_MODELS[purpose]
        return (
            self.db.query(func.max(model.created_at))
            .filter(model.user_id == owner_id)
            .scalar()
        )

    def issued_since(
        self, owner_id: uuid.UUID, purpose: models.TokenPurpose, since: datetime
    ) -> int:
        model = models.TOKEN_MODELS[purpose]
        return (
            self.db.query(model)
            .filter(model.user_id == owner_id, model.created_at >= since)
            .count()
        )

    def purge_expired(self, before: datetime | None = None) -> int:
        """Delete tokens of every purpose that expired or were consumed before ``before``.

        Returns the number of rows removed. The caller commits.
        """

        cutoff = before or self._clock()
        removed = 0
        for purpose, model in models.TOKEN_MODELS.items():
            consumed_col = getattr(model, model.consumed_field)
            count = (
                self.db.query(model)
                .filter(or_(model.expires_at < cutoff, consumed_col < cutoff))
                .delete(synchronize_session=False)
            )
            removed += count
            logger.info(
                "Purged %d dead %s tokens",
                count,
                purpose.value,
                extra={
                    "event_dataset": "authcore.tokens",
                    "event_action": "token_purge",
                    "token_purpose": purpose.value,
                },
            )
        return removed
