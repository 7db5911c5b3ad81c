"""Environment-driven configuration for the authentication service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Final


def _get_env(name: str, *, default: str | None = None, required: bool = False) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        if required:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return default
    return value.strip()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


JWT_ALGORITHM: Final[str] = "HS256"
SESSION_COOKIE_NAME: Final[str] = "session"

# (limit, window seconds) per operation class; each is overridable through
# RATE_LIMIT_<CLASS>_LIMIT / RATE_LIMIT_<CLASS>_PERIOD.
DEFAULT_RATE_LIMITS: Final[dict[str, tuple[int, int]]] = {
    "auth": (5, 15 * 60),
    "api": (10, 10),
    "rfq": (3, 60 * 60),
    "newsletter": (5, 60 * 60),
}


DEFAULT_TRUSTED_PROXIES: Final[tuple[str, ...]] = (
    "127.0.0.0/8",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "::1/128",
    "fc00::/7",
)


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Sliding-window allowance for one operation class."""

    limit: int
    period: int


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved once at start-up."""

    database_url: str
    jwt_secret: str
    token_pepper: str
    app_env: str = "production"
    app_base_url: str = "http://localhost:3000"
    app_name: str = "Storefront"
    jwt_kid: str | None = None
    session_ttl: int = 30 * 24 * 60 * 60
    session_leeway: int = 60
    cookie_secure: bool = True
    cookie_domain: str | None = None
    cookie_samesite: str = "Lax"
    bcrypt_rounds: int = 12
    email_verification_ttl_minutes: int = 24 * 60
    email_verification_resend_cooldown: int = 60
    email_verification_daily_limit: int = 5
    password_reset_ttl_minutes: int = 60
    password_reset_daily_limit: int = 10
    magic_link_ttl_minutes: int = 10
    require_verified_email: bool = False
    redis_url: str | None = None
    rate_limit_backend: str = "memory"
    rate_limit_fail_open: bool = True
    rate_limit_timeout: float = 0.5
    rate_limits: dict[str, RateLimitPolicy] = field(
        default_factory=lambda: {
            name: RateLimitPolicy(limit, period)
            for name, (limit, period) in DEFAULT_RATE_LIMITS.items()
        }
    )
    db_pool_timeout: float = 10.0
    db_statement_timeout_ms: int = 5000
    mail_from: str = "accounts@storefront.example"
    mail_max_attempts: int = 3
    trusted_proxies: tuple[str, ...] = DEFAULT_TRUSTED_PROXIES

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, failing fast on missing secrets."""

        jwt_secret = _get_env("JWT_SECRET") or _get_env("SECRET_KEY")
        if not jwt_secret:
            raise RuntimeError("JWT_SECRET (or legacy SECRET_KEY) is required for HS256 sessions")
        app_env = (_get_env("APP_ENV", default="production") or "production").lower()
        if app_env == "production" and len(jwt_secret) < 32:
            raise RuntimeError("JWT_SECRET must be at least 32 characters long")

        samesite = (_get_env("COOKIE_SAMESITE", default="Lax") or "Lax").capitalize()
        if samesite not in {"Lax", "Strict", "None"}:
            raise RuntimeError("COOKIE_SAMESITE must be one of: Lax, Strict, None")

        redis_url = _get_env("REDIS_URL")
        backend = (
            _get_env("RATE_LIMIT_BACKEND", default="redis" if redis_url else "memory")
            or "memory"
        ).lower()
        if backend not in {"redis", "memory", "disabled"}:
            raise RuntimeError("RATE_LIMIT_BACKEND must be one of: redis, memory, disabled")

        rate_limits = {}
        for name, (limit, period) in DEFAULT_RATE_LIMITS.items():
            prefix = f"RATE_LIMIT_{name.upper()}"
            rate_limits[name] = RateLimitPolicy(
                limit=_get_int(f"{prefix}_LIMIT", limit),
                period=_get_int(f"{prefix}_PERIOD", period),
            )

        proxies_raw = _get_env("TRUSTED_PROXIES")
        proxies = (
            tuple(item.strip() for item in proxies_raw.split(",") if item.strip())
            if proxies_raw
            else DEFAULT_TRUSTED_PROXIES
        )

        return cls(
            database_url=_get_env("DATABASE_URL", required=True) or "",
            jwt_secret=jwt_secret,
            token_pepper=_get_env("TOKEN_PEPPER", required=True) or "",
            app_env=app_env,
            app_base_url=_get_env("APP_BASE_URL", default="http://localhost:3000")
            or "http://localhost:3000",
            app_name=_get_env("APP_NAME", default="Storefront") or "Storefront",
            jwt_kid=_get_env("JWT_KID"),
            session_ttl=_get_int("SESSION_TTL", 30 * 24 * 60 * 60),
            session_leeway=_get_int("SESSION_LEEWAY", 60),
            cookie_secure=_get_bool("COOKIE_SECURE", True),
            cookie_domain=_get_env("COOKIE_DOMAIN"),
            cookie_samesite=samesite,
            bcrypt_rounds=_get_int("BCRYPT_ROUNDS", 12),
            email_verification_ttl_minutes=_get_int("EMAIL_VERIFICATION_TTL_MINUTES", 24 * 60),
            email_verification_resend_cooldown=_get_int(
                "EMAIL_VERIFICATION_RESEND_COOLDOWN", 60
            ),
            email_verification_daily_limit=_get_int("EMAIL_VERIFICATION_DAILY_LIMIT", 5),
            password_reset_ttl_minutes=_get_int("PASSWORD_RESET_TTL_MINUTES", 60),
            password_reset_daily_limit=_get_int("PASSWORD_RESET_DAILY_LIMIT", 10),
            magic_link_ttl_minutes=_get_int("MAGIC_LINK_TTL_MINUTES", 10),
            require_verified_email=_get_bool("REQUIRE_VERIFIED_EMAIL", False),
            redis_url=redis_url,
            rate_limit_backend=backend,
            rate_limit_fail_open=_get_bool("RATE_LIMIT_FAIL_OPEN", True),
            rate_limit_timeout=_get_float("RATE_LIMIT_TIMEOUT", 0.5),
            rate_limits=rate_limits,
            db_pool_timeout=_get_float("DB_POOL_TIMEOUT", 10.0),
            db_statement_timeout_ms=_get_int("DB_STATEMENT_TIMEOUT_MS", 5000),
            mail_from=_get_env("SMTP_FROM", default="accounts@storefront.example")
            or "accounts@storefront.example",
            mail_max_attempts=max(1, _get_int("MAIL_MAX_ATTEMPTS", 3)),
            trusted_proxies=proxies,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return process-wide settings loaded from the environment."""

    return Settings.from_env()
