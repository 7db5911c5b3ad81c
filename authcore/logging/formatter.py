"""JSON formatter emitting Elastic Common Schema field names."""

from __future__ import annotations

import logging
import os
import traceback
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

SERVICE_NAME = os.getenv("SERVICE_NAME", "authcore")

FIELD_MAP = {
    "request_id": "http.request.id",
    "user_id": "user.id",
    "client_ip": "client.ip",
    "http_request_method": "http.request.method",
    "url_path": "url.path",
    "url_query": "url.query",
    "http_status_code": "http.response.status_code",
    "event_duration": "event.duration",
    "user_agent": "user_agent.original",
    "event_dataset": "event.dataset",
    "event_action": "event.action",
    "event_kind": "event.kind",
    "event_outcome": "event.outcome",
    "error_stack": "error.stack",
    "error_type": "error.type",
    "error_message": "error.message",
    "error_code": "error.code",
    "auth_method": "authentication.method",
    "auth_failure_reason": "authentication.outcome.reason",
    "validation_error_count": "validation.error.count",
    "token_purpose": "authcore.token.purpose",
    "token_fingerprint": "authcore.token.fingerprint",
    "superseded_count": "authcore.token.superseded",
    "rate_limit_class": "authcore.rate_limit.class",
    "rate_limit_backend": "authcore.rate_limit.backend",
    "rate_limit_remaining": "authcore.rate_limit.remaining",
    "email_kind": "email.kind",
    "email_attempts": "email.attempts",
}


class ECSJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that emits ECS aligned fields."""

    def __init__(self, *args: Any, service_name: str = SERVICE_NAME, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(
        self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if "@timestamp" not in log_record:
            log_record["@timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        log_record.setdefault("log.level", record.levelname)
        log_record.setdefault("log.logger", record.name)
        log_record.setdefault("message", record.getMessage())

        dataset = getattr(record, "event_dataset", None) or log_record.get("event.dataset")
        log_record["event.dataset"] = dataset or f"{self.service_name}.app"

        service_name = getattr(record, "service_name", None) or log_record.get("service.name")
        log_record["service.name"] = service_name or self.service_name

        for attr, ecs_name in FIELD_MAP.items():
            value = log_record.pop(attr, getattr(record, attr, None))
            if value is not None:
                log_record[ecs_name] = value

        for transient in ("client_ip_raw", "client_ip_anonymized"):
            log_record.pop(transient, None)

        if record.exc_info and "error.stack" not in log_record:
            log_record["error.stack"] = "".join(
                traceback.format_exception(*record.exc_info)
            ).strip()

        for key in [key for key, value in log_record.items() if value is None]:
            log_record.pop(key, None)
        for key, value in log_record.items():
            if isinstance(value, (set, bytes)):
                log_record[key] = str(value)
