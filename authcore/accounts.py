"""Account operations: registration, login, password change, federated sign-in."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import Settings
from .credentials import (
    hash_password,
    password_policy_violations,
    verify_password,
    verify_password_or_dummy,
)
from .tokens import SecureTokenService
from .utils.account_notifications import (
    existing_signup_notice,
    password_changed_email,
    welcome_email,
)
from .utils.email_verification import EmailVerificationFlow
from .utils.outbox import EmailOutbox
from .utils.password_reset import find_user_by_email

logger = logging.getLogger("authcore.accounts")
audit_logger = logging.getLogger("authcore.audit")


@dataclass(frozen=True)
class Registration:
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None


class RegistrationOutcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    WEAK_PASSWORD = "weak_password"


@dataclass(frozen=True)
class RegistrationResult:
    outcome: RegistrationOutcome
    violations: list[str] = field(default_factory=list)


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    user: models.User | None = None


class PasswordChangeOutcome(str, Enum):
    CHANGED = "changed"
    INVALID_CREDENTIALS = "invalid_credentials"
    PASSWORD_MISMATCH = "password_mismatch"
    WEAK_PASSWORD = "weak_password"


@dataclass(frozen=True)
class PasswordChangeResult:
    outcome: PasswordChangeOutcome
    violations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FederatedIdentity:
    """Identity asserted by an external provider after its own protocol ran."""

    email: str
    email_verified: bool
    provider: str
    first_name: str | None = None
    last_name: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def register_user(
    db: Session,
    registration: Registration,
    *,
    verification: EmailVerificationFlow,
    outbox: EmailOutbox,
    settings: Settings,
) -> RegistrationResult:
    """Create an account and queue its first verification link.

    A registered address gets a notice email instead of a second account and
    the caller reports the same outcome as for a new one.
    """

    violations = password_policy_violations(registration.password)
    if violations:
        return RegistrationResult(RegistrationOutcome.WEAK_PASSWORD, violations)

    # Hash before the lookup so both branches cost the same.
    password_hash = hash_password(registration.password)
    email = models.normalize_email(registration.email)
    existing = find_user_by_email(db, email)
    if existing is not None:
        outbox.queue(existing_signup_notice(settings, existing))
        logger.info(
            "Signup attempted for existing account",
            extra={
                "event_dataset": "authcore.auth",
                "event_action": "signup_existing",
                "user_id": str(existing.id),
            },
        )
        return RegistrationResult(RegistrationOutcome.EXISTING)

    user = models.User(
        email=email,
        password_hash=password_hash,
        first_name=_clean(registration.first_name),
        last_name=_clean(registration.last_name),
        company_name=_clean(registration.company_name),
        role=models.UserRole.CUSTOMER.value,
        created_at=verification.tokens.now(),
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        # Lost a race against a concurrent signup for the same address.
        db.rollback()
        existing = find_user_by_email(db, email)
        if existing is not None:
            outbox.queue(existing_signup_notice(settings, existing))
        return RegistrationResult(RegistrationOutcome.EXISTING)

    verification.request_verification(user)
    outbox.queue(welcome_email(settings, user))
    audit_logger.info(
        "Account registered",
        extra={
            "event_dataset": "authcore.audit",
            "event_action": "account_registered",
            "user_id": str(user.id),
        },
    )
    return RegistrationResult(RegistrationOutcome.CREATED)


def authenticate(
    db: Session,
    email: str,
    password: str,
    *,
    tokens: SecureTokenService,
    settings: Settings,
) -> LoginResult:
    """Check credentials; unknown address and wrong password are indistinguishable."""

    user = find_user_by_email(db, email)
    valid = verify_password_or_dummy(password, user.password_hash if user else None)
    if user is None or not valid:
        logger.info(
            "Login failed",
            extra={
                "event_dataset": "authcore.auth",
                "event_action": "login_failed",
                "auth_method": "password",
                "auth_failure_reason": "invalid_credentials",
            },
        )
        return LoginResult(LoginOutcome.INVALID_CREDENTIALS)

    if settings.require_verified_email and user.email_verified_at is None:
        return LoginResult(LoginOutcome.EMAIL_NOT_VERIFIED, user)

    user.last_login_at = tokens.now()
    db.commit()
    logger.info(
        "Login succeeded",
        extra={
            "event_dataset": "authcore.auth",
            "event_action": "login_succeeded",
            "auth_method": "password",
            "user_id": str(user.id),
        },
    )
    return LoginResult(LoginOutcome.SUCCESS, user)


def change_password(
    db: Session,
    user: models.User,
    *,
    current_password: str,
    new_password: str,
    confirm_password: str,
    tokens: SecureTokenService,
    outbox: EmailOutbox,
    settings: Settings,
) -> PasswordChangeResult:
    if not verify_password(current_password, user.password_hash):
        return PasswordChangeResult(PasswordChangeOutcome.INVALID_CREDENTIALS)
    if new_password != confirm_password:
        return PasswordChangeResult(PasswordChangeOutcome.PASSWORD_MISMATCH)
    violations = password_policy_violations(new_password)
    if violations:
        return PasswordChangeResult(PasswordChangeOutcome.WEAK_PASSWORD, violations)

    user.password_hash = hash_password(new_password)
    # Outstanding reset links were requested for the old password.
    tokens.revoke_live(user.id, models.TokenPurpose.PASSWORD_RESET)
    db.commit()
    outbox.queue(password_changed_email(settings, user))
    audit_logger.info(
        "Password changed",
        extra={
            "event_dataset": "authcore.audit",
            "event_action": "password_changed",
            "user_id": str(user.id),
        },
    )
    return PasswordChangeResult(PasswordChangeOutcome.CHANGED)


def establish_federated_principal(
    db: Session,
    identity: FederatedIdentity,
    *,
    tokens: SecureTokenService,
) -> models.User | None:
    """Link a federated login to the account owning its verified email.

    Unknown addresses get a password-less customer account. Identities whose
    provider did not verify the email are refused.
    """

    if not identity.email_verified:
        logger.warning(
            "Federated identity without a verified email",
            extra={
                "event_dataset": "authcore.auth",
                "event_action": "federated_refused",
                "auth_method": identity.provider,
            },
        )
        return None

    now = tokens.now()
    email = models.normalize_email(identity.email)
    user = find_user_by_email(db, email)
    if user is None:
        user = models.User(
            email=email,
            password_hash=None,
            first_name=_clean(identity.first_name),
            last_name=_clean(identity.last_name),
            role=models.UserRole.CUSTOMER.value,
            email_verified_at=now,
            created_at=now,
        )
        db.add(user)
    elif user.email_verified_at is None:
        user.email_verified_at = now
    user.last_login_at = now
    db.commit()
    logger.info(
        "Federated login established",
        extra={
            "event_dataset": "authcore.auth",
            "event_action": "federated_login",
            "auth_method": identity.provider,
            "user_id": str(user.id),
        },
    )
    return user
