from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import IO, Any

from chainmirror.logging_context import current_log_context
from chainmirror.security.redaction import redact_data

# Third-party loggers that are noisy at INFO, with the env var that overrides each.
_HTTP_LOGGER_ENV = {"httpx": "HTTPX_LOG_LEVEL", "httpcore": "HTTPCORE_LOG_LEVEL"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: context ids first, then the ``extra`` payload."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_log_context().as_dict(),
        }
        structured = getattr(record, "extra", None)
        if isinstance(structured, dict):
            payload.update(structured)
        payload.update(self._exception_fields(record))
        return json.dumps(redact_data(payload), default=str)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, str]:
        if record.exc_info:
            exc_type, exc_value, _tb = record.exc_info
            return {
                "error_type": exc_type.__name__ if exc_type else "Exception",
                "error_message": "" if exc_value is None else str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        if record.exc_text:
            return {"traceback": record.exc_text}
        return {}


def _level_from_name(raw: str | None, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    resolved = logging.getLevelName(raw.strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None, *, stream: IO[str] | None = None) -> None:
    if isinstance(level, int):
        root_level = level
    else:
        root_level = _level_from_name(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    http_default = logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    for logger_name, env_name in _HTTP_LOGGER_ENV.items():
        logging.getLogger(logger_name).setLevel(_level_from_name(os.getenv(env_name), http_default))
