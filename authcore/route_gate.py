"""Page-level authorization decisions.

``decide`` is pure: it looks only at the request path and the already
verified session claims, so it can run for every request without I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from .auth import SessionClaims

LOGIN_PATH = "/login"
REGISTER_PATH = "/register"
UNAUTHORIZED_PATH = "/unauthorized"
ACCOUNT_HOME = "/account"
ADMIN_HOME = "/admin"


class GateAction(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"


@dataclass(frozen=True, slots=True)
class GateDecision:
    action: GateAction
    location: str | None = None

    @property
    def allowed(self) -> bool:
        return self.action is GateAction.ALLOW


ALLOW = GateDecision(GateAction.ALLOW)


def _redirect(location: str) -> GateDecision:
    return GateDecision(GateAction.REDIRECT, location)


def _login_redirect(original: str) -> GateDecision:
    return _redirect(f"{LOGIN_PATH}?{urlencode({'next': original})}")


def _in_namespace(path: str, prefix: str) -> bool:
    # "/admin" and "/admin/..." match; "/administrator" does not.
    return path == prefix or path.startswith(prefix + "/")


def _normalise(path: str) -> str:
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path or "/"


def decide(path: str, claims: SessionClaims | None, *, query: str = "") -> GateDecision:
    """Return whether a request for ``path`` proceeds or where it is sent instead."""

    normalised = _normalise(path)
    original = f"{path}?{query}" if query else path

    if _in_namespace(normalised, ADMIN_HOME):
        if claims is None:
            return _login_redirect(original)
        if not claims.is_admin:
            return _redirect(UNAUTHORIZED_PATH)
        return ALLOW

    if _in_namespace(normalised, ACCOUNT_HOME):
        if claims is None:
            return _login_redirect(original)
        return ALLOW

    if normalised in (LOGIN_PATH, REGISTER_PATH):
        if claims is None:
            return ALLOW
        return _redirect(ADMIN_HOME if claims.is_admin else ACCOUNT_HOME)

    return ALLOW
