"""Password hashing, verification and strength policy."""

from __future__ import annotations

import re
from functools import lru_cache
from types import SimpleNamespace
from typing import cast

import bcrypt
from passlib.context import CryptContext
from passlib.handlers.bcrypt import _BcryptBackend

if not hasattr(bcrypt, "__about__"):
    bcrypt.__about__ = SimpleNamespace(__version__=bcrypt.__version__)

# Skip passlib's bcrypt backend self-tests that assume passwords >72 bytes
# silently truncate instead of raising ValueError under bcrypt>=5.
_BcryptBackend._workrounds_initialized = True

DEFAULT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8

pwd_context = CryptContext(
    schemes=["bcrypt_sha256"],
    deprecated="auto",
    bcrypt_sha256__rounds=DEFAULT_ROUNDS,
)

_DUMMY_PASSWORD = "authcore-timing-equaliser"


def configure_password_hashing(rounds: int) -> None:
    """Set the bcrypt cost factor used for new hashes."""

    pwd_context.update(bcrypt_sha256__rounds=rounds)
    _dummy_hash.cache_clear()


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return cast(str, pwd_context.hash(_DUMMY_PASSWORD))


def hash_password(password: str) -> str:
    """Return a hashed password for storage using bcrypt with SHA-256 pre-hashing."""

    return cast(str, pwd_context.hash(password))


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verify a password against the stored hash using bcrypt with SHA-256 pre-hashing.

    Missing or unrecognised hashes never match.
    """

    if not hashed_password:
        return False
    try:
        return cast(bool, pwd_context.verify(plain_password, hashed_password))
    except (ValueError, TypeError):
        return False


def verify_password_or_dummy(plain_password: str, hashed_password: str | None) -> bool:
    """Like :func:`verify_password` but spends the same work when no hash exists.

    Used on login so an unknown address or a password-less account costs as
    much as a wrong password.
    """

    if hashed_password:
        return verify_password(plain_password, hashed_password)
    pwd_context.verify(plain_password, _dummy_hash())
    return False


_POLICY_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
)


def password_policy_violations(password: str) -> list[str]:
    """Return human readable reasons why ``password`` is rejected."""

    problems: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    for pattern, message in _POLICY_RULES:
        if not pattern.search(password):
            problems.append(message)
    return problems


def enforce_strength(password: str) -> bool:
    return not password_policy_violations(password)
