from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_STANDARD_RECORD_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}

_HTTP_FIELDS = ("path", "method", "status_code", "duration_ms")
_MAX_TEXT = 2000
_MAX_ITEMS = 100


class RequestIdFilter(logging.Filter):
    """Attach request_id from contextvars to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not getattr(record, "request_id", None):
            record.request_id = request_id_ctx_var.get() or "-"
        return True


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        return value[:_MAX_TEXT]
    if isinstance(value, dict):
        items = list(value.items())[:_MAX_ITEMS]
        return {str(key): _json_safe(item) for key, item in items}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in list(value)[:_MAX_ITEMS]]
    return str(value)[:_MAX_TEXT]


def build_log_payload(record: logging.LogRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "request_id": getattr(record, "request_id", "-"),
    }
    for field in _HTTP_FIELDS:
        value = getattr(record, field, None)
        if value is not None:
            payload[field] = value
    for key, value in vars(record).items():
        if key in _STANDARD_RECORD_KEYS or key in payload or key.startswith("_"):
            continue
        payload[key] = _json_safe(value)
    return payload


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with ``extra`` fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = build_log_payload(record)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Configure root logger with request-id aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s")
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)
