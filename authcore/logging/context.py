"""Per-request values copied onto every log record."""

from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass, replace

from .ip_utils import anonymize_ip


@dataclass(frozen=True, slots=True)
class RequestLogContext:
    request_id: str | None = None
    # ``client_ip`` is already reduced according to LOG_IP_MODE.
    client_ip: str | None = None
    client_ip_raw: str | None = None
    client_ip_anonymized: str | None = None
    user_id: str | None = None


_EMPTY = RequestLogContext()
_current: ContextVar[RequestLogContext] = ContextVar("authcore_log_context", default=_EMPTY)


def current_context() -> RequestLogContext:
    return _current.get()


def bind_request_context(
    request_id: str,
    client_ip: str | None = None,
    *,
    client_ip_raw: str | None = None,
    client_ip_anonymized: str | None = None,
) -> Token[RequestLogContext]:
    """Start a fresh context for one request and return its reset token."""

    raw = client_ip_raw or client_ip
    if client_ip_anonymized is None and raw:
        client_ip_anonymized = anonymize_ip(raw, mode="anonymized")
    return _current.set(
        RequestLogContext(
            request_id=request_id,
            client_ip=client_ip,
            client_ip_raw=raw,
            client_ip_anonymized=client_ip_anonymized,
        )
    )


def reset_request_context(token: Token[RequestLogContext]) -> None:
    _current.reset(token)


def set_user_context(user_id: str | None) -> None:
    """Attach the authenticated principal to subsequent records of this request."""

    _current.set(replace(_current.get(), user_id=user_id))
