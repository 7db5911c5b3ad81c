"""Tests for the single-use token service."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from authcore import models
from authcore.tokens import SecureTokenService, default_ttls

from .conftest import create_user


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(db, settings, clock):
    return SecureTokenService.from_settings(db, settings, clock=clock)


RESET = models.TokenPurpose.PASSWORD_RESET
VERIFY = models.TokenPurpose.EMAIL_VERIFICATION


def test_issue_returns_hex_token_and_stores_only_hash(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    assert len(issued.raw) == 64
    int(issued.raw, 16)
    stored = db.query(models.PasswordResetToken).one()
    assert stored.token_hash == tokens.hash_secret(issued.raw)
    assert stored.token_hash != issued.raw
    assert issued.raw not in stored.token_hash


def test_issue_uses_configured_ttl(db, tokens, settings, clock):
    user = create_user(db)
    issued = tokens.issue(user, RESET)

    assert issued.expires_at == clock.current + default_ttls(settings)[RESET]


def test_empty_pepper_is_rejected(db, settings):
    with pytest.raises(ValueError):
        SecureTokenService(db, pepper="", ttls=default_ttls(settings))


def test_resolve_does_not_consume(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    assert tokens.resolve(issued.raw, RESET) == user.id
    assert tokens.resolve(issued.raw, RESET) == user.id
    assert tokens.consume(issued.raw, RESET) == user.id


def test_consume_is_single_use(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    assert tokens.consume(issued.raw, RESET) == user.id
    assert tokens.consume(issued.raw, RESET) is None
    assert tokens.resolve(issued.raw, RESET) is None


def test_purposes_are_isolated(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, VERIFY)
    db.commit()

    assert tokens.resolve(issued.raw, RESET) is None
    assert tokens.consume(issued.raw, RESET) is None
    assert tokens.consume(issued.raw, VERIFY) == user.id


def test_expired_token_is_rejected(db, tokens, clock):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    clock.advance(minutes=61)
    assert tokens.resolve(issued.raw, RESET) is None
    assert tokens.consume(issued.raw, RESET) is None


def test_unknown_and_empty_tokens_are_rejected(db, tokens):
    create_user(db)
    assert tokens.resolve("0" * 64, RESET) is None
    assert tokens.resolve("", RESET) is None
    assert tokens.consume(None, RESET) is None


def test_new_token_supersedes_older_live_tokens(db, tokens):
    user = create_user(db)
    first = tokens.issue(user, RESET)
    db.commit()
    second = tokens.issue(user, RESET)
    db.commit()

    assert tokens.resolve(first.raw, RESET) is None
    assert tokens.resolve(second.raw, RESET) == user.id


def test_superseding_leaves_other_purposes_alone(db, tokens):
    user = create_user(db)
    verify = tokens.issue(user, VERIFY)
    tokens.issue(user, RESET)
    db.commit()

    assert tokens.resolve(verify.raw, VERIFY) == user.id


def test_effect_failure_rolls_back_consumption(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    def _explode(owner, record):
        owner.first_name = "Changed"
        raise RuntimeError("effect failed")

    with pytest.raises(RuntimeError):
        tokens.consume(issued.raw, RESET, _explode)

    db.expire_all()
    assert tokens.resolve(issued.raw, RESET) == user.id
    assert db.get(models.User, user.id).first_name == "Alice"


def test_effect_is_committed_with_consumption(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    def _rename(owner, record):
        owner.first_name = "Renamed"

    assert tokens.consume(issued.raw, RESET, _rename) == user.id
    db.expire_all()
    assert db.get(models.User, user.id).first_name == "Renamed"
    record = db.query(models.PasswordResetToken).one()
    assert record.used_at is not None


def test_consume_loses_race_against_another_session(app, db, settings, clock):
    user = create_user(db)
    tokens = SecureTokenService.from_settings(db, settings, clock=clock)
    issued = tokens.issue(user, RESET)
    db.commit()
    # Load the record first so this session believes the token is live.
    assert tokens.load(issued.raw, RESET) is not None

    other = app.state.session_factory()
    try:
        rival = SecureTokenService.from_settings(other, settings, clock=clock)
        assert rival.consume(issued.raw, RESET) == user.id
    finally:
        other.close()

    claimed: list[str] = []
    assert tokens.consume(issued.raw, RESET, lambda owner, record: claimed.append("x")) is None
    assert claimed == []


def test_verification_token_records_target_email(db, tokens):
    user = create_user(db, "Mixed.Case@Example.com")
    tokens.issue(user, VERIFY, email="Other@Example.com")
    db.commit()

    record = db.query(models.EmailVerificationToken).one()
    assert record.email == "other@example.com"
    assert record.consumed_at is None


def test_revoke_live_expires_outstanding_tokens(db, tokens):
    user = create_user(db)
    issued = tokens.issue(user, RESET)
    db.commit()

    assert tokens.revoke_live(user.id, RESET) == 1
    db.commit()
    assert tokens.resolve(issued.raw, RESET) is None


def test_issue_counters(db, tokens, clock):
    user = create_user(db)
    tokens.issue(user, VERIFY)
    clock.advance(minutes=5)
    tokens.issue(user, VERIFY)
    db.commit()

    assert tokens.latest_issued_at(user.id, VERIFY) == clock.current
    assert tokens.issued_since(user.id, VERIFY, clock.current - timedelta(minutes=1)) == 1
    assert tokens.issued_since(user.id, VERIFY, clock.current - timedelta(hours=1)) == 2


def test_purge_expired_removes_only_old_rows(db, tokens, clock):
    user = create_user(db)
    tokens.issue(user, models.TokenPurpose.MAGIC_LINK)
    db.commit()
    clock.advance(days=2)
    fresh = tokens.issue(user, models.TokenPurpose.MAGIC_LINK)
    db.commit()

    removed = tokens.purge_expired()
    db.commit()

    assert removed == 1
    assert tokens.resolve(fresh.raw, models.TokenPurpose.MAGIC_LINK) == user.id


def test_purge_removes_consumed_tokens_that_have_not_expired(db, tokens, clock):
    user = create_user(db)
    used = tokens.issue(user, VERIFY)
    db.commit()
    assert tokens.consume(used.raw, VERIFY) == user.id
    clock.advance(hours=1)
    live = tokens.issue(user, RESET)
    db.commit()

    removed = tokens.purge_expired(clock.current - timedelta(minutes=30))
    db.commit()

    assert removed == 1
    assert db.query(models.EmailVerificationToken).count() == 0
    assert tokens.resolve(live.raw, RESET) == user.id


def test_issue_locks_the_owner_row(db, tokens):
    user = create_user(db)
    locking: list[str] = []

    @event.listens_for(db, "do_orm_execute")
    def _capture(state):
        compiled = str(state.statement.compile(dialect=postgresql.dialect()))
        if "FOR UPDATE" in compiled:
            locking.append(compiled)

    try:
        tokens.issue(user, RESET)
    finally:
        event.remove(db, "do_orm_execute", _capture)

    assert len(locking) == 1
    assert "FROM users" in locking[0]


def test_issues_from_two_sessions_leave_one_live_token(app, db, settings, clock):
    user = create_user(db)
    first = SecureTokenService.from_settings(db, settings, clock=clock).issue(user, RESET)
    db.commit()

    other = app.state.session_factory()
    try:
        owner = other.get(models.User, user.id)
        second = SecureTokenService.from_settings(other, settings, clock=clock).issue(owner, RESET)
        other.commit()
    finally:
        other.close()

    tokens = SecureTokenService.from_settings(db, settings, clock=clock)
    assert tokens.resolve(first.raw, RESET) is None
    assert tokens.resolve(second.raw, RESET) == user.id
    live = (
        db.query(models.PasswordResetToken)
        .filter(models.PasswordResetToken.expires_at > clock.current)
        .count()
    )
    assert live == 1
