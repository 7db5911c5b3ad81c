"""Authentication API endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import ORJSONResponse
from sqlalchemy.orm import Session

from .. import models, schemas
from ..accounts import (
    LoginOutcome,
    PasswordChangeOutcome,
    Registration,
    RegistrationOutcome,
    authenticate,
    change_password,
    register_user,
)
from ..auth import (
    AuthMethod,
    SessionClaims,
    SessionIssuer,
    get_current_user,
    get_optional_principal,
)
from ..config import SESSION_COOKIE_NAME, Settings
from ..database import get_db
from ..errors import APIError, ErrorCode, invalid_token, success_body
from ..logging import set_user_context
from ..rate_limit import rate_limited
from ..tokens import SecureTokenService
from ..utils.email_verification import (
    EmailVerificationFlow,
    VerificationOutcome,
    VerificationRequestOutcome,
)
from ..utils.magic_link import MagicLinkFlow
from ..utils.mailbox_requests import MailboxRequest, MailboxRequestRunner
from ..utils.outbox import EmailOutbox
from ..utils.password_reset import PasswordResetFlow, ResetOutcome
from .deps import (
    get_app_settings,
    get_magic_link_flow,
    get_mailbox_runner,
    get_outbox,
    get_reset_flow,
    get_token_service,
    get_verification_flow,
)

router = APIRouter(prefix="/auth", tags=["auth"])

auth_logger = logging.getLogger("authcore.api.auth")

_db_dependency = Depends(get_db)
_settings_dependency = Depends(get_app_settings)
_outbox_dependency = Depends(get_outbox)
_auth_rate_limit = Depends(rate_limited("auth"))
_mailbox_runner_dependency = Depends(get_mailbox_runner)

_GENERIC_REGISTER_MESSAGE = (
    "Thanks for signing up! Check your inbox to verify your email address."
)
_GENERIC_RESET_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)
_GENERIC_MAGIC_LINK_MESSAGE = (
    "If an account exists for that email, a sign-in link has been sent."
)
_GENERIC_RESEND_MESSAGE = (
    "If an account exists and still needs verification, a new email has been sent."
)
_INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."

_CACHE_BUSTER_HEADER_VALUES = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _respond(
    request: Request,
    payload: dict[str, Any],
    *,
    status_code: int = status.HTTP_200_OK,
    outbox: EmailOutbox | None = None,
    background_tasks: BackgroundTasks | None = None,
) -> ORJSONResponse:
    """Build a non-cacheable JSON response and hand queued email to the background."""

    response = ORJSONResponse(payload, status_code=status_code)
    response.headers.update(_CACHE_BUSTER_HEADER_VALUES)
    rate_limit = getattr(request.state, "rate_limit", None)
    if rate_limit is not None:
        response.headers.update(rate_limit.headers())
    if outbox is not None and background_tasks is not None:
        outbox.dispatch(background_tasks)
    return response


def _set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite.lower(),
        max_age=settings.session_ttl,
        path="/",
        domain=settings.cookie_domain,
    )


def _session_response(
    request: Request,
    user: models.User,
    *,
    method: AuthMethod,
    message: str,
    settings: Settings,
) -> ORJSONResponse:
    issuer: SessionIssuer = request.app.state.session_issuer
    session = issuer.issue(user, method=method)
    set_user_context(str(user.id))
    request.state.user_id = str(user.id)
    body = schemas.SessionResponse(
        message=message,
        token=session.token,
        expires_at=session.expires_at,
        user=schemas.PrincipalRead.from_user(user),
    ).model_dump(mode="json", by_alias=True)
    response = _respond(request, body)
    _set_session_cookie(response, settings, session.token)
    auth_logger.info(
        "Session issued",
        extra={
            "event_dataset": "authcore.auth",
            "event_action": "session_issued",
            "auth_method": method.value,
            "user_id": str(user.id),
        },
    )
    return response


def _weak_password(violations: list[str], field: str = "password") -> APIError:
    return APIError(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.WEAK_PASSWORD,
        "Password does not meet the strength requirements.",
        fields={field: violations},
    )


def _password_mismatch() -> APIError:
    return APIError(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.PASSWORD_MISMATCH,
        "Passwords do not match.",
        fields={"confirmPassword": ["Passwords do not match"]},
    )


@router.post(
    "/register",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.MessageResponse,
    dependencies=[_auth_rate_limit],
)
def register(
    request: Request,
    payload: schemas.RegisterRequest,
    background_tasks: BackgroundTasks,
    db: Session = _db_dependency,
    verification: EmailVerificationFlow = Depends(get_verification_flow),
    outbox: EmailOutbox = _outbox_dependency,
    settings: Settings = _settings_dependency,
) -> ORJSONResponse:
    """Create an account; the response never reveals whether the email was taken."""

    result = register_user(
        db,
        Registration(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            company_name=payload.company_name,
        ),
        verification=verification,
        outbox=outbox,
        settings=settings,
    )
    if result.outcome is RegistrationOutcome.WEAK_PASSWORD:
        raise _weak_password(result.violations)
    return _respond(
        request,
        success_body(_GENERIC_REGISTER_MESSAGE),
        status_code=status.HTTP_202_ACCEPTED,
        outbox=outbox,
        background_tasks=background_tasks,
    )


@router.post("/login", response_model=schemas.SessionResponse, dependencies=[_auth_rate_limit])
def login(
    request: Request,
    payload: schemas.LoginRequest,
    db: Session = _db_dependency,
    tokens: SecureTokenService = Depends(get_token_service),
    settings: Settings = _settings_dependency,
) -> ORJSONResponse:
    result = authenticate(db, payload.email, payload.password, tokens=tokens, settings=settings)
    if result.outcome is LoginOutcome.INVALID_CREDENTIALS or result.user is None:
        raise APIError(
            status.HTTP_401_UNAUTHORIZED,
            ErrorCode.INVALID_CREDENTIALS,
            _INVALID_CREDENTIALS_MESSAGE,
        )
    if result.outcome is LoginOutcome.EMAIL_NOT_VERIFIED:
        raise APIError(
            status.HTTP_403_FORBIDDEN,
            ErrorCode.EMAIL_NOT_VERIFIED,
            "Please verify your email address before signing in.",
        )
    return _session_response(
        request,
        result.user,
        method=AuthMethod.PASSWORD,
        message="Signed in successfully.",
        settings=settings,
    )


@router.post(
    "/magic-link",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.MessageResponse,
    dependencies=[_auth_rate_limit],
)
def request_magic_link(
    request: Request,
    payload: schemas.EmailRequest,
    background_tasks: BackgroundTasks,
    runner: MailboxRequestRunner = _mailbox_runner_dependency,
) -> ORJSONResponse:
    runner.schedule(background_tasks, MailboxRequest.MAGIC_LINK, payload.email)
    return _respond(
        request,
        success_body(_GENERIC_MAGIC_LINK_MESSAGE),
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.post(
    "/magic-link/verify",
    response_model=schemas.SessionResponse,
    dependencies=[_auth_rate_limit],
)
def redeem_magic_link(
    request: Request,
    payload: schemas.TokenRequest,
    flow: MagicLinkFlow = Depends(get_magic_link_flow),
    settings: Settings = _settings_dependency,
) -> ORJSONResponse:
    user = flow.redeem(payload.token)
    if user is None:
        raise invalid_token()
    return _session_response(
        request,
        user,
        method=AuthMethod.MAGIC_LINK,
        message="Signed in successfully.",
        settings=settings,
    )


@router.post("/verify-email", response_model=schemas.MessageResponse, dependencies=[_auth_rate_limit])
def verify_email(
    request: Request,
    payload: schemas.TokenRequest,
    flow: EmailVerificationFlow = Depends(get_verification_flow),
) -> ORJSONResponse:
    outcome = flow.confirm_verification(payload.token)
    if outcome is VerificationOutcome.ALREADY_VERIFIED:
        raise APIError(
            status.HTTP_409_CONFLICT,
            ErrorCode.ALREADY_VERIFIED,
            "This email address has already been verified.",
        )
    if outcome is VerificationOutcome.INVALID_TOKEN:
        raise invalid_token()
    return _respond(request, success_body("Email verified successfully. You can now log in."))


@router.post(
    "/resend-verification",
    response_model=schemas.MessageResponse,
    dependencies=[_auth_rate_limit],
)
def resend_verification(
    request: Request,
    payload: schemas.ResendVerificationRequest,
    background_tasks: BackgroundTasks,
    db: Session = _db_dependency,
    claims: SessionClaims | None = Depends(get_optional_principal),
    flow: EmailVerificationFlow = Depends(get_verification_flow),
    runner: MailboxRequestRunner = _mailbox_runner_dependency,
    outbox: EmailOutbox = _outbox_dependency,
) -> ORJSONResponse:
    """Send another verification email.

    Anonymous callers always get the same accepted response. A signed-in
    caller asking about their own account learns the actual outcome.
    """

    user = db.get(models.User, claims.subject) if claims is not None else None
    if user is None:
        if payload.email is None:
            raise APIError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                ErrorCode.VALIDATION_ERROR,
                "An email address is required.",
                fields={"email": ["Field required"]},
            )
        runner.schedule(background_tasks, MailboxRequest.EMAIL_VERIFICATION, payload.email)
        return _respond(
            request,
            success_body(_GENERIC_RESEND_MESSAGE),
            status_code=status.HTTP_202_ACCEPTED,
        )

    outcome = flow.request_verification(user)
    if outcome is VerificationRequestOutcome.ALREADY_VERIFIED:
        raise APIError(
            status.HTTP_409_CONFLICT,
            ErrorCode.ALREADY_VERIFIED,
            "This email address has already been verified.",
        )
    if outcome is VerificationRequestOutcome.COOLDOWN:
        raise APIError(
            status.HTTP_429_TOO_MANY_REQUESTS,
            ErrorCode.VERIFICATION_COOLDOWN,
            "Please wait before requesting another verification email.",
            headers={"Retry-After": str(max(1, flow.cooldown_remaining(user)))},
        )
    if outcome is VerificationRequestOutcome.DAILY_LIMIT:
        raise APIError(
            status.HTTP_429_TOO_MANY_REQUESTS,
            ErrorCode.VERIFICATION_COOLDOWN,
            "Too many verification emails today. Please try again tomorrow.",
            headers={"Retry-After": str(24 * 60 * 60)},
        )
    return _respond(
        request,
        success_body("Verification email sent. Please check your inbox."),
        outbox=outbox,
        background_tasks=background_tasks,
    )


@router.post(
    "/forgot-password",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.MessageResponse,
    dependencies=[_auth_rate_limit],
)
def forgot_password(
    request: Request,
    payload: schemas.EmailRequest,
    background_tasks: BackgroundTasks,
    runner: MailboxRequestRunner = _mailbox_runner_dependency,
) -> ORJSONResponse:
    runner.schedule(background_tasks, MailboxRequest.PASSWORD_RESET, payload.email)
    return _respond(
        request,
        success_body(_GENERIC_RESET_MESSAGE),
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.post(
    "/validate-reset-token",
    response_model=schemas.ResetTokenStatus,
    dependencies=[_auth_rate_limit],
)
def validate_reset_token(
    request: Request,
    payload: schemas.TokenRequest,
    flow: PasswordResetFlow = Depends(get_reset_flow),
) -> ORJSONResponse:
    email = flow.check_token(payload.token)
    if email is None:
        raise invalid_token()
    return _respond(request, success_body("Reset link is valid.", email=email))


@router.post("/reset-password", response_model=schemas.MessageResponse, dependencies=[_auth_rate_limit])
def reset_password(
    request: Request,
    payload: schemas.ResetPasswordRequest,
    background_tasks: BackgroundTasks,
    flow: PasswordResetFlow = Depends(get_reset_flow),
    outbox: EmailOutbox = _outbox_dependency,
) -> ORJSONResponse:
    result = flow.complete_reset(payload.token, payload.password, payload.confirm_password)
    if result.outcome is ResetOutcome.PASSWORD_MISMATCH:
        raise _password_mismatch()
    if result.outcome is ResetOutcome.WEAK_PASSWORD:
        raise _weak_password(result.violations)
    if result.outcome is ResetOutcome.INVALID_TOKEN:
        raise invalid_token()
    return _respond(
        request,
        success_body("Your password has been reset. You can now sign in."),
        outbox=outbox,
        background_tasks=background_tasks,
    )


@router.post(
    "/change-password",
    response_model=schemas.MessageResponse,
    dependencies=[_auth_rate_limit],
)
def change_password_endpoint(
    request: Request,
    payload: schemas.ChangePasswordRequest,
    background_tasks: BackgroundTasks,
    user: models.User = Depends(get_current_user),
    db: Session = _db_dependency,
    tokens: SecureTokenService = Depends(get_token_service),
    outbox: EmailOutbox = _outbox_dependency,
    settings: Settings = _settings_dependency,
) -> ORJSONResponse:
    result = change_password(
        db,
        user,
        current_password=payload.current_password,
        new_password=payload.new_password,
        confirm_password=payload.confirm_password,
        tokens=tokens,
        outbox=outbox,
        settings=settings,
    )
    if result.outcome is PasswordChangeOutcome.INVALID_CREDENTIALS:
        raise APIError(
            status.HTTP_400_BAD_REQUEST,
            ErrorCode.INVALID_CREDENTIALS,
            "Current password is incorrect.",
            fields={"currentPassword": ["Current password is incorrect"]},
        )
    if result.outcome is PasswordChangeOutcome.PASSWORD_MISMATCH:
        raise _password_mismatch()
    if result.outcome is PasswordChangeOutcome.WEAK_PASSWORD:
        raise _weak_password(result.violations, field="newPassword")
    return _respond(
        request,
        success_body("Your password has been changed."),
        outbox=outbox,
        background_tasks=background_tasks,
    )


@router.post("/logout", response_model=schemas.MessageResponse)
def logout(request: Request, settings: Settings = _settings_dependency) -> ORJSONResponse:
    """Drop the session cookie; bearer tokens simply expire."""

    response = _respond(request, success_body("Signed out."))
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/", domain=settings.cookie_domain)
    return response
