"""FastAPI application providing the authentication service.

Run with ``uvicorn --factory authcore.main:create_app``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from .auth import SessionIssuer
from .config import Settings, get_settings
from .credentials import configure_password_hashing
from .database import make_engine, make_session_factory
from .errors import APIError, ErrorCode, code_for_status, error_body
from .logging import configure_logging
from .middleware.logging import LoggingMiddleware
from .middleware.route_gate import RouteGateMiddleware
from .rate_limit import RateLimiter, build_rate_limiter
from .utils.email_sender import Mailer, SMTPMailer

logger = logging.getLogger("authcore.main")

_DB_RETRY_AFTER_SECONDS = "30"

# Errors raised by model-level validators carry no field location.
_MODEL_ERROR_FIELDS = {"name_required": "firstName"}


def _finish_error_response(response: Response, request: Request) -> Response:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    rate_limit = getattr(request.state, "rate_limit", None)
    if rate_limit is not None:
        for name, value in rate_limit.headers().items():
            response.headers.setdefault(name, value)
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return response


def _validation_fields(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    fields: dict[str, list[str]] = {}
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        name = loc[0] if loc else _MODEL_ERROR_FIELDS.get(err.get("type", ""), "body")
        fields.setdefault(name, []).append(str(err.get("msg", "Invalid value")))
    return fields


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> Response:
    """Log validation errors and return them in the error envelope."""

    errors = list(exc.errors())
    error_types = sorted({err.get("type", "unknown") for err in errors})
    logger.warning(
        "Request validation failed",
        extra={
            "event_dataset": "authcore.app",
            "event_action": "validation_failed",
            "http_status_code": status.HTTP_422_UNPROCESSABLE_ENTITY,
            "http_request_method": request.method,
            "url_path": request.url.path,
            "error_type": "RequestValidationError",
            "error_message": ",".join(error_types)[:128],
            "validation_error_count": len(errors),
        },
    )
    response = ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "The request could not be validated.",
            fields=_validation_fields(errors),
        ),
    )
    return _finish_error_response(response, request)


async def http_exception_handler_logged(request: Request, exc: HTTPException) -> Response:
    """Render HTTP errors in the envelope, logging the path and code."""

    if isinstance(exc, APIError):
        code, message, fields = exc.code, exc.message, exc.fields
    else:
        code = code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        fields = None

    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "HTTP exception raised",
        extra={
            "event_dataset": "authcore.app",
            "event_action": "http_exception",
            "http_status_code": exc.status_code,
            "http_request_method": request.method,
            "url_path": request.url.path,
            "error_type": type(exc).__name__,
            "error_code": code.value,
            "error_message": message[:256],
        },
    )
    response = ORJSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message, fields=fields),
        headers=exc.headers,
    )
    return _finish_error_response(response, request)


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> Response:
    """Convert database errors into a retryable 503 response."""

    logger.exception(
        "Database error while handling request",
        extra={
            "event_dataset": "authcore.app",
            "event_action": "database_error",
            "http_status_code": status.HTTP_503_SERVICE_UNAVAILABLE,
            "http_request_method": request.method,
            "url_path": request.url.path,
            "error_type": type(exc).__name__,
        },
    )
    response = ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=error_body(
            ErrorCode.SERVICE_UNAVAILABLE,
            "Temporary database issue. Please retry later.",
        ),
        headers={"Retry-After": _DB_RETRY_AFTER_SECONDS},
    )
    return _finish_error_response(response, request)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    """Ensure unexpected failures still use the envelope and request id."""

    logger.error(
        "Unhandled error while handling request",
        exc_info=exc,
        extra={
            "event_dataset": "authcore.app",
            "event_action": "unhandled_exception",
            "http_status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "url_path": request.url.path,
            "error_type": type(exc).__name__,
        },
    )
    response = ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(ErrorCode.INTERNAL_ERROR, "Internal Server Error"),
    )
    return _finish_error_response(response, request)


def create_app(
    settings: Settings | None = None,
    *,
    rate_limiter: RateLimiter | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    """Build the application around ``settings`` (read from the environment by default)."""

    settings = settings or get_settings()
    configure_logging()
    configure_password_hashing(settings.bcrypt_rounds)

    engine = make_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await app.state.rate_limiter.aclose()
            engine.dispose()

    app = FastAPI(
        title="Authentication Service",
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.session_issuer = SessionIssuer.from_settings(settings)
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)
    app.state.mailer = mailer or SMTPMailer.from_env(default_from=settings.mail_from)

    app.add_middleware(RouteGateMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler_logged)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "ok"}

    from .api import account_router, auth_router

    app.include_router(auth_router)
    app.include_router(account_router)

    logger.info(
        "Application configured",
        extra={
            "event_dataset": "authcore.app",
            "event_action": "app_configured",
            "rate_limit_backend": settings.rate_limit_backend,
        },
    )
    return app
