"""Signed session issuing and the principal dependencies built on it."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, cast

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from . import models
from .config import JWT_ALGORITHM, SESSION_COOKIE_NAME, Settings
from .database import get_db
from .errors import not_authenticated
from .logging import set_user_context

logger = logging.getLogger("authcore.auth")

optional_oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="auth/login",
    description="Session token; the session cookie is accepted as well",
    auto_error=False,
)


class AuthMethod(str, Enum):
    """Recorded in the ``amr`` claim."""

    PASSWORD = "password"
    MAGIC_LINK = "magic_link"
    FEDERATED = "federated"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class SessionClaims:
    """Verified contents of a session token."""

    subject: uuid.UUID
    role: str
    method: AuthMethod
    issued_at: datetime
    expires_at: datetime
    session_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == models.UserRole.ADMIN.value


@dataclass(frozen=True, slots=True)
class IssuedSession:
    token: str
    expires_at: datetime
    claims: SessionClaims


class SessionIssuer:
    """Mint and verify stateless session tokens.

    Verification needs only the signing key, so the route gate can run it on
    every request without touching the database.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        algorithm: str = JWT_ALGORITHM,
        ttl: int,
        leeway: int = 0,
        kid: str | None = None,
    ) -> None:
        if not signing_key:
            raise ValueError("a signing key is required")
        self._key = signing_key
        self.algorithm = algorithm
        self.ttl = ttl
        self.leeway = leeway
        self._kid = kid

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionIssuer":
        return cls(
            settings.jwt_secret,
            ttl=settings.session_ttl,
            leeway=settings.session_leeway,
            kid=settings.jwt_kid,
        )

    def issue(
        self,
        user: models.User,
        *,
        method: AuthMethod,
        now: datetime | None = None,
    ) -> IssuedSession:
        issued_at = (now or _now()).replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=self.ttl)
        session_id = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "sub": str(user.id),
            "role": user.role,
            "amr": method.value,
            "jti": session_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        headers: dict[str, Any] = {}
        if self._kid:
            headers["kid"] = self._kid
        token = jwt.encode(
            payload,
            self._key,
            algorithm=self.algorithm,
            headers=headers or None,
        )
        claims = SessionClaims(
            subject=user.id,
            role=user.role,
            method=method,
            issued_at=issued_at,
            expires_at=expires_at,
            session_id=session_id,
        )
        return IssuedSession(token=token, expires_at=expires_at, claims=claims)

    def verify(self, token: str | None) -> SessionClaims | None:
        """Return the claims of a valid, unexpired token or ``None``."""

        if not token:
            return None
        try:
            payload = cast(
                dict[str, Any],
                jwt.decode(
                    token,
                    self._key,
                    algorithms=[self.algorithm],
                    options={"verify_aud": False, "leeway": self.leeway},
                ),
            )
        except JWTError as exc:
            logger.info(
                "Rejected session token",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "session_rejected",
                    "auth_failure_reason": type(exc).__name__,
                },
            )
            return None

        try:
            subject = uuid.UUID(str(payload["sub"]))
            role = models.UserRole(payload["role"]).value
            method = AuthMethod(payload.get("amr", AuthMethod.PASSWORD.value))
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=UTC)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=UTC)
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "Session token carried malformed claims",
                extra={
                    "event_dataset": "authcore.auth",
                    "event_action": "session_rejected",
                    "auth_failure_reason": "malformed_claims",
                },
            )
            return None
        return SessionClaims(
            subject=subject,
            role=role,
            method=method,
            issued_at=issued_at,
            expires_at=expires_at,
            session_id=str(payload.get("jti", "")),
        )


def extract_session_token(request: Request) -> str | None:
    """Return the bearer token, falling back to the session cookie."""

    header = request.headers.get("Authorization")
    if header:
        scheme, _, credentials = header.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    return cookie or None


def get_optional_principal(
    request: Request,
    _bearer: str | None = Depends(optional_oauth2_scheme),
) -> SessionClaims | None:
    """Return the caller's verified session claims when one is presented."""

    issuer: SessionIssuer = request.app.state.session_issuer
    claims = issuer.verify(extract_session_token(request))
    if claims is not None:
        set_user_context(str(claims.subject))
        request.state.user_id = str(claims.subject)
    return claims


def get_current_principal(
    claims: SessionClaims | None = Depends(get_optional_principal),
) -> SessionClaims:
    if claims is None:
        raise not_authenticated()
    return claims


def get_current_user(
    claims: SessionClaims = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> models.User:
    """Return the account behind the session; a vanished account is unauthenticated."""

    user = cast(models.User | None, db.get(models.User, claims.subject))
    if user is None:
        raise not_authenticated()
    return user
