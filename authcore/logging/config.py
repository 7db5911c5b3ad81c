"""Public entry point for configuring service logging."""

from __future__ import annotations

import logging
import logging.config
import os
from typing import Any

from .formatter import SERVICE_NAME

_FILTERS = "authcore.logging.filters"
_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

# Third-party loggers that are too chatty at INFO for an auth service.
_QUIET_LOGGERS = ("passlib", "sqlalchemy.engine", "multipart", "httpx")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _file_handler(path: str, *, level: str, formatter: str, ip_filter: str) -> dict[str, Any]:
    abs_path = os.path.abspath(path)
    os.makedirs(os.path.dirname(abs_path) or ".", exist_ok=True)
    return {
        "class": "authcore.logging.handlers.SecureWatchedFileHandler",
        "level": level,
        "formatter": formatter,
        "filters": ["context", "privacy", ip_filter],
        "filename": abs_path,
        "delay": True,
    }


def configure_logging() -> None:
    """Configure structured logging from ``LOG_*`` environment variables.

    Records always go to stdout with anonymised client addresses.
    ``LOG_FILE`` (or ``LOG_FILE_ANON``) adds an anonymised file copy and
    ``LOG_FILE_RAW`` a copy with full addresses. ``LOG_AUDIT_FILE`` receives
    only the ``authcore.audit`` stream (sign-ins, token use, password
    changes) with full addresses, for incident response.
    """

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if level not in _LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(_LEVELS)}, got {level!r}")
    formatter = "json" if _env_flag("LOG_JSON", "true") else "plain"

    anon_path = os.getenv("LOG_FILE_ANON") or os.getenv("LOG_FILE")
    raw_path = os.getenv("LOG_FILE_RAW")
    audit_path = os.getenv("LOG_AUDIT_FILE")
    paths = [os.path.abspath(p) for p in (anon_path, raw_path, audit_path) if p]
    if len(paths) != len(set(paths)):
        raise ValueError("LOG_FILE_ANON, LOG_FILE_RAW and LOG_AUDIT_FILE must be distinct files")

    handlers: dict[str, dict[str, Any]] = {
        "stdout": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "filters": ["context", "privacy", "ip_anonymized"],
            "stream": "ext://sys.stdout",
        }
    }
    if anon_path:
        handlers["file_anon"] = _file_handler(
            anon_path, level=level, formatter=formatter, ip_filter="ip_anonymized"
        )
    if raw_path:
        handlers["file_raw"] = _file_handler(
            raw_path, level=level, formatter=formatter, ip_filter="ip_raw"
        )

    audit_logger: dict[str, Any] = {"level": "INFO", "handlers": [], "propagate": True}
    if audit_path:
        handlers["file_audit"] = _file_handler(
            audit_path, level="INFO", formatter=formatter, ip_filter="ip_raw"
        )
        audit_logger["handlers"] = ["file_audit"]

    loggers: dict[str, dict[str, Any]] = {
        name: {"level": "INFO", "handlers": [], "propagate": True}
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
    }
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})
    loggers["authcore.audit"] = audit_logger

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": "authcore.logging.formatter.ECSJsonFormatter",
                    "service_name": SERVICE_NAME,
                },
                "plain": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"},
            },
            "filters": {
                "context": {"()": f"{_FILTERS}.RequestContextFilter"},
                "privacy": {"()": f"{_FILTERS}.PrivacyFilter"},
                "ip_anonymized": {"()": f"{_FILTERS}.IPOverrideFilter", "mode": "anonymized"},
                "ip_raw": {"()": f"{_FILTERS}.IPOverrideFilter", "mode": "raw"},
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": [name for name in handlers if name != "file_audit"]},
            "loggers": loggers,
        }
    )
    logging.captureWarnings(True)
