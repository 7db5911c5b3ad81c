"""Access logging for the authentication endpoints."""

from __future__ import annotations

import logging
import os
import random
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from ..logging import anonymize_ip, bind_request_context, current_context, reset_request_context
from ..utils.network import get_client_ip

_QUIET_PATHS = frozenset({"/health", "/healthz", "/ready", "/live"})


def _env_fraction(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw is not None else default
    except ValueError:
        return default
    return value if value >= 0 else default


@dataclass
class AccessLogPolicy:
    """Which requests reach the access log.

    Failures and slow requests are always logged. Successful requests are
    sampled at ``sample_rate`` and probes are skipped entirely.
    """

    sample_rate: float = 1.0
    slow_ms: float = 500.0
    rng: random.Random = field(default_factory=random.SystemRandom)

    @classmethod
    def from_env(cls) -> "AccessLogPolicy":
        return cls(
            sample_rate=min(1.0, _env_fraction("ACCESS_LOG_SAMPLE", 1.0)),
            slow_ms=_env_fraction("SLOW_REQUEST_MS", 500.0),
        )

    def is_slow(self, duration_ns: int) -> bool:
        return duration_ns >= self.slow_ms * 1_000_000

    def wants(self, path: str, status_code: int, duration_ns: int) -> bool:
        if status_code >= 400 or self.is_slow(duration_ns):
            return True
        if path in _QUIET_PATHS:
            return False
        return self.sample_rate >= 1.0 or self.rng.random() < self.sample_rate


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class LoggingMiddleware(BaseHTTPMiddleware):
    """Bind the request log context and emit one ECS access record per request."""

    def __init__(self, app: ASGIApp, policy: AccessLogPolicy | None = None) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("authcore.access")
        self.policy = policy or AccessLogPolicy.from_env()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter_ns()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        client_ip = get_client_ip(request)
        token = bind_request_context(
            request_id=request_id,
            client_ip=anonymize_ip(client_ip),
            client_ip_raw=client_ip,
        )

        status_code = 500
        error: dict[str, Any] = {}
        try:
            response = await call_next(request)
        except HTTPException as exc:
            status_code = exc.status_code
            error = {"error_type": type(exc).__name__}
            raise
        except Exception as exc:  # noqa: BLE001
            error = {
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "error_stack": "".join(traceback.format_exception(exc)),
            }
            raise
        else:
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            duration = time.perf_counter_ns() - started
            if self.policy.wants(request.url.path, status_code, duration):
                self._emit(request, status_code, duration, error)
            reset_request_context(token)

    def _emit(
        self, request: Request, status_code: int, duration: int, error: dict[str, Any]
    ) -> None:
        extra: dict[str, Any] = {
            "event_dataset": "authcore.access",
            "http_request_method": request.method,
            "url_path": request.url.path,
            "url_query": request.url.query or None,
            "http_status_code": status_code,
            "event_duration": duration,
            "user_agent": request.headers.get("User-Agent") or None,
            **error,
        }
        if self.policy.is_slow(duration):
            extra["event_action"] = "slow_request"
        rate_limit_class = getattr(request.state, "rate_limit_class", None)
        if rate_limit_class:
            extra["rate_limit_class"] = rate_limit_class
            extra["rate_limit_remaining"] = request.state.rate_limit.remaining
        # Sync endpoints run in a copied context, so the principal is read from state.
        user_id = getattr(request.state, "user_id", None) or current_context().user_id
        if user_id:
            extra["user_id"] = user_id

        self.logger.log(
            _level_for(status_code),
            "%s %s -> %s",
            request.method,
            request.url.path,
            status_code,
            extra=extra,
        )
