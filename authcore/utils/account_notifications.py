"""Plain-text bodies for every account email the service sends."""

from __future__ import annotations

from urllib.parse import quote, urlencode

from .. import models
from ..config import Settings
from .outbox import OutgoingEmail


def _base_url(settings: Settings) -> str:
    return settings.app_base_url.rstrip("/") or "http://localhost:3000"


def _link(settings: Settings, path: str, token: str) -> str:
    return f"{_base_url(settings)}{path}?{urlencode({'token': token})}"


def _signature(settings: Settings) -> str:
    return f"The {settings.app_name} team"


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


def verification_email(
    settings: Settings, user: models.User, *, token: str, email: str
) -> OutgoingEmail:
    verify_url = _link(settings, "/verify-email", token)
    ttl = _describe_minutes(settings.email_verification_ttl_minutes)
    body = (
        f"Hi {user.display_name},\n\n"
        f"Please confirm that {email} is your email address by opening this link:\n\n"
        f"{verify_url}\n\n"
        f"The link expires in {ttl}. If you did not create an account, "
        "you can safely ignore this email.\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=email,
        subject=f"Verify Your Email - {settings.app_name}",
        body=body,
        kind="email_verification",
    )


def password_reset_email(settings: Settings, user: models.User, *, token: str) -> OutgoingEmail:
    reset_url = _link(settings, "/reset-password", token)
    ttl = _describe_minutes(settings.password_reset_ttl_minutes)
    body = (
        f"Hi {user.display_name},\n\n"
        "We received a request to reset the password for your account. "
        "Choose a new password here:\n\n"
        f"{reset_url}\n\n"
        f"The link expires in {ttl} and can be used once. If you did not ask "
        "for a reset, ignore this email; your password stays unchanged.\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=user.email,
        subject=f"Password Reset Request - {settings.app_name}",
        body=body,
        kind="password_reset",
    )


def magic_link_email(settings: Settings, user: models.User, *, token: str) -> OutgoingEmail:
    login_url = _link(settings, "/auth/magic-link", token)
    ttl = _describe_minutes(settings.magic_link_ttl_minutes)
    body = (
        f"Hi {user.display_name},\n\n"
        f"Use this link to sign in to {settings.app_name}:\n\n"
        f"{login_url}\n\n"
        f"It expires in {ttl} and works once. If you did not try to sign in, "
        "you can ignore this email.\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=user.email,
        subject=f"Sign in to {settings.app_name}",
        body=body,
        kind="magic_link",
    )


def welcome_email(settings: Settings, user: models.User) -> OutgoingEmail:
    body = (
        f"Hi {user.display_name},\n\n"
        f"Welcome to {settings.app_name}! Your account is ready.\n\n"
        f"Sign in any time at {_base_url(settings)}/login\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=user.email,
        subject=f"Welcome to {settings.app_name}!",
        body=body,
        kind="welcome",
    )


def existing_signup_notice(settings: Settings, user: models.User) -> OutgoingEmail:
    """Sent instead of a new account when a signup reuses a registered address."""

    login_url = f"{_base_url(settings)}/login"
    reset_url = f"{_base_url(settings)}/forgot-password?email={quote(user.email)}"
    body = (
        f"Hi {user.display_name},\n\n"
        f"Someone just tried to create a {settings.app_name} account with this email address.\n\n"
        "If that was you, you can sign in using your existing account:\n"
        f"{login_url}\n\n"
        f"Forgot your password? Start a reset here:\n{reset_url}\n\n"
        "If you didn't start this request, no action is needed and no new account "
        "was created.\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=user.email,
        subject=f"You already have a {settings.app_name} account",
        body=body,
        kind="existing_signup",
    )


def password_changed_email(settings: Settings, user: models.User) -> OutgoingEmail:
    body = (
        f"Hi {user.display_name},\n\n"
        "The password for your account was just changed.\n\n"
        "If this was you, no further action is needed. If it wasn't, reset your "
        f"password immediately at {_base_url(settings)}/forgot-password and "
        "contact support.\n\n"
        f"{_signature(settings)}"
    )
    return OutgoingEmail(
        to=user.email,
        subject=f"Password Changed - {settings.app_name}",
        body=body,
        kind="password_changed",
    )
