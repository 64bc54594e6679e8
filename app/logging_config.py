from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Any

from app.logging_context import get_request_id, get_sync_state_id

REDACTED = "[REDACTED]"
DEFAULT_REDACT_FIELDS = {
    "admin_secret",
    "authorization",
    "cookie",
    "cron_token",
    "token",
    "x-admin-secret",
    "x-cron-token",
}

_BASE_RECORD = logging.makeLogRecord({})
_SKIPPED_RECORD_FIELDS = (
    set(_BASE_RECORD.__dict__.keys()) | {"message", "asctime", "color_message"}
)
_CONTEXT_FIELDS = ("request_id", "state_id")

_FRAMEWORK_LOGGERS = ("uvicorn", "uvicorn.error")
# httpx logs every upstream request at INFO.
_CHATTY_CLIENT_LOGGERS = ("httpx", "httpcore")

_LEVEL_ABBREVIATIONS = {
    "debug": "DBG",
    "info": "INF",
    "warning": "WRN",
    "error": "ERR",
    "critical": "CRT",
}
_CONSOLE_SHORT_KEYS = {
    "external_id": "md",
    "manga_id": "manga",
    "worker_run_id": "run",
    "run_id": "run",
}


def parse_redact_fields(raw: str | None) -> set[str]:
    extra = {field.strip().lower() for field in (raw or "").split(",") if field.strip()}
    return DEFAULT_REDACT_FIELDS | extra


def configure_logging(
    *,
    level: str,
    log_format: str,
    redact_fields: set[str],
    include_uvicorn_access: bool,
) -> None:
    root_level = _level_number(level)
    formatter_class = JsonLogFormatter if log_format.strip().lower() == "json" else ConsoleLogFormatter

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(root_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(formatter_class(redact_fields=redact_fields))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    root_logger.addHandler(handler)

    for name in _FRAMEWORK_LOGGERS:
        _propagate_to_root(name, root_level)
    _propagate_to_root(
        "uvicorn.access",
        root_level if include_uvicorn_access else logging.WARNING,
    )
    for name in _CHATTY_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def _propagate_to_root(name: str, level: int) -> None:
    framework_logger = logging.getLogger(name)
    framework_logger.handlers.clear()
    framework_logger.propagate = True
    framework_logger.setLevel(level)


class RequestContextFilter(logging.Filter):
    """Copy the request id and the active crawl state id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field, getter in (("request_id", get_request_id), ("state_id", get_sync_state_id)):
            if getattr(record, field, None):
                continue
            value = getter()
            if value:
                setattr(record, field, value)
        return True


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redact_fields = {field.lower() for field in redact_fields}

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.build_payload(record), ensure_ascii=True, default=str)

    def build_payload(self, record: logging.LogRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": _format_timestamp(record.created),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": getattr(record, "event", record.getMessage()),
        }
        extras = _extra_fields(record)
        for field in _CONTEXT_FIELDS:
            value = extras.pop(field, None)
            if value:
                payload[field] = value
        payload.update({key: self._redact(key, value) for key, value in extras.items()})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return payload

    def _redact(self, key: str, value: Any) -> Any:
        if key.lower() in self._redact_fields:
            return REDACTED
        if isinstance(value, dict):
            return {nested_key: self._redact(nested_key, item) for nested_key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._redact(key, item) for item in value]
        return value


class ConsoleLogFormatter(logging.Formatter):
    """One line per record: header, request, crawl position, then sorted extras."""

    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._json_formatter = JsonLogFormatter(redact_fields=redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        payload = self._json_formatter.build_payload(record)
        exception = payload.pop("exception", None)
        parts = [
            payload.pop("timestamp", ""),
            _short_level(str(payload.pop("level", "info"))),
            payload.pop("logger", "app"),
            payload.pop("event", ""),
        ]

        request_id = payload.pop("request_id", None)
        if request_id:
            parts.append(f"rid={request_id}")
        state_id = payload.pop("state_id", None)
        if state_id:
            parts.append(f"state={state_id}")
        parts.extend(_request_parts(payload))
        cursor = _cursor_part(payload)
        if cursor:
            parts.append(cursor)

        for key in sorted(payload):
            parts.append(f"{_CONSOLE_SHORT_KEYS.get(key, key)}={payload[key]}")
        if exception:
            parts.append(f"exception={exception}")
        return " | ".join(str(part) for part in parts if part)


def _request_parts(payload: dict[str, Any]) -> list[str]:
    method = payload.pop("method", None)
    path = payload.pop("path", None)
    status_code = payload.pop("status_code", None)
    duration_ms = payload.pop("duration_ms", None)
    parts = []
    if method and path:
        parts.append(f"{method} {path}")
    if status_code is not None:
        parts.append(str(status_code))
    if duration_ms is not None:
        parts.append(f"{duration_ms}ms")
    return parts


def _cursor_part(payload: dict[str, Any]) -> str | None:
    # offset mode -> "offset@300", bucket mode -> "updatedat@2024-05-01T12:00:00+00:00+40"
    mode = payload.get("mode")
    offset = payload.get("offset")
    if mode is None or offset is None:
        return None
    payload.pop("mode")
    payload.pop("offset")
    bucket = payload.pop("bucket", None)
    if bucket:
        return f"cursor={mode}@{bucket}+{offset}"
    return f"cursor={mode}@{offset}"


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _SKIPPED_RECORD_FIELDS and not key.startswith("_")
    }


def _level_number(level: str) -> int:
    return logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)


def _format_timestamp(created_ts: float) -> str:
    return datetime.fromtimestamp(created_ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def _short_level(level: str) -> str:
    return _LEVEL_ABBREVIATIONS.get(level, level[:3].upper())
