"""Logging filters that enrich and sanitise records."""

from __future__ import annotations

import logging

from .context import current_context
from .ip_utils import anonymize_ip
from .privacy import sanitize_value, scrub_text

_SKIPPED_ATTRS = {"exc_info", "exc_text", "stack_info", "msg", "args"}


class PrivacyFilter(logging.Filter):
    """Ensure credentials and token values never hit the logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        for key in list(record.__dict__.keys()):
            if key in _SKIPPED_ATTRS:
                continue
            record.__dict__[key] = sanitize_value(key, record.__dict__[key])
        if isinstance(record.msg, str):
            record.msg = scrub_text(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(sanitize_value("arg", arg) for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: sanitize_value(k, v) for k, v in record.args.items()}
        return True


class RequestContextFilter(logging.Filter):
    """Copy the bound request context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        context = current_context()
        if context.request_id:
            record.request_id = context.request_id
        if context.user_id and not getattr(record, "user_id", None):
            record.user_id = context.user_id
        if context.client_ip and not getattr(record, "client_ip", None):
            record.client_ip = context.client_ip
        return True


class IPOverrideFilter(logging.Filter):
    """Rewrite ``client_ip`` for one handler, either raw or reduced to a network."""

    def __init__(self, mode: str) -> None:
        super().__init__()
        if mode not in {"raw", "anonymized"}:
            raise ValueError(f"Unsupported IP override mode: {mode}")
        self.mode = mode

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        context = current_context()
        original = getattr(record, "client_ip", None)
        raw_ip = getattr(record, "client_ip_raw", None) or context.client_ip_raw
        if self.mode == "raw":
            record.client_ip = raw_ip or original
            return True

        anonymized = getattr(record, "client_ip_anonymized", None) or context.client_ip_anonymized
        if anonymized is None and raw_ip:
            anonymized = anonymize_ip(raw_ip, mode="anonymized")
        record.client_ip = anonymized if anonymized is not None else original
        for attr in ("client_ip_raw", "client_ip_anonymized"):
            if hasattr(record, attr):
                delattr(record, attr)
        return True
