"""Utilities for removing secrets from log records."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import parse_qsl, urlencode

SENSITIVE_KEYWORDS = {
    "authorization",
    "cookie",
    "password",
    "passwd",
    "secret",
    "token",
    "pepper",
    "apikey",
    "api_key",
    "set-cookie",
    "x-api-key",
    "proxy-authorization",
}
# Header-like credentials keep a short prefix/suffix so operators can tell
# them apart; everything else sensitive is replaced outright.
PARTIAL_MASK_KEYWORDS = {"authorization", "apikey", "api_key", "x-api-key"}
# Structured fields that merely describe a token and never hold one.
SAFE_KEYS = {"token_purpose", "token_fingerprint", "superseded_count"}
MASKED_VALUE = "<redacted>"
MAX_FIELD_LENGTH = 1024

QUERY_STRING_KEYS = {"url_query", "query_string"}

# ``token=...`` style pairs inside free text or URLs.
_INLINE_SECRET_PATTERN = re.compile(
    r"(?i)\b(token|password|secret|code)=([^&\s\"']+)"
)
# Bare 256-bit hex values, the shape of every issued token.
_RAW_TOKEN_PATTERN = re.compile(r"\b[0-9a-fA-F]{64}\b")
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")


def _mask_partial(value: str) -> str:
    value = value.strip()
    if not value:
        return MASKED_VALUE
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}…{value[-4:]}"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in SAFE_KEYS:
        return False
    return any(keyword in lowered for keyword in SENSITIVE_KEYWORDS)


def scrub_text(text: str) -> str:
    """Mask token-shaped values embedded in free text."""

    text = _INLINE_SECRET_PATTERN.sub(lambda m: f"{m.group(1)}={MASKED_VALUE}", text)
    text = _BEARER_PATTERN.sub(f"Bearer {MASKED_VALUE}", text)
    return _RAW_TOKEN_PATTERN.sub(MASKED_VALUE, text)


def sanitize_query_string(query: str) -> str:
    """Redact sensitive parameters from a URL query string."""

    try:
        pairs = parse_qsl(query, keep_blank_values=True)
    except ValueError:
        return scrub_text(query)

    changed = False
    sanitized: list[tuple[str, str]] = []
    for key, value in pairs:
        if _is_sensitive(key) or key.lower() == "code":
            sanitized.append((key, MASKED_VALUE))
            changed = True
        else:
            cleaned = scrub_text(value)
            changed = changed or cleaned != value
            sanitized.append((key, cleaned))
    if not changed:
        return query
    return urlencode(sanitized, doseq=True)


def sanitize_value(key: Any, value: Any) -> Any:
    """Redact sensitive information and limit field size."""

    if isinstance(key, bytes):
        key_text: str | None = key.decode("utf-8", "ignore")
    elif isinstance(key, str):
        key_text = key
    else:
        key_text = None

    if isinstance(value, str):
        if key_text is not None and key_text.lower() in QUERY_STRING_KEYS:
            return sanitize_query_string(value)
        if key_text is not None and _is_sensitive(key_text):
            lowered = key_text.lower()
            if any(keyword in lowered for keyword in PARTIAL_MASK_KEYWORDS):
                return _mask_partial(value)
            return MASKED_VALUE
        value = scrub_text(value)
        if len(value) > MAX_FIELD_LENGTH:
            return value[:MAX_FIELD_LENGTH] + "…[truncated]"
        return value
    if isinstance(value, dict):
        return {k: sanitize_value(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        container = type(value)
        sanitized = [sanitize_value(key, item) for item in value]
        if container is tuple:
            return tuple(sanitized)
        if container is set:
            return set(sanitized)
        return sanitized
    return value
