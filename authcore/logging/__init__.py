"""Structured logging for the service."""

from .config import configure_logging
from .context import (
    RequestLogContext,
    bind_request_context,
    current_context,
    reset_request_context,
    set_user_context,
)
from .filters import IPOverrideFilter, PrivacyFilter, RequestContextFilter
from .formatter import ECSJsonFormatter, FIELD_MAP, SERVICE_NAME
from .handlers import SecureWatchedFileHandler
from .ip_utils import anonymize_ip
from .privacy import sanitize_value, scrub_text

__all__ = [
    "configure_logging",
    "RequestLogContext",
    "bind_request_context",
    "current_context",
    "reset_request_context",
    "set_user_context",
    "IPOverrideFilter",
    "PrivacyFilter",
    "RequestContextFilter",
    "ECSJsonFormatter",
    "FIELD_MAP",
    "SERVICE_NAME",
    "SecureWatchedFileHandler",
    "anonymize_ip",
    "sanitize_value",
    "scrub_text",
]
