from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from resolver.common import sanitize_text, sanitize_value

LOGGER_NAME = "order_resolver"

# attributes every LogRecord carries; anything else arrived through ``extra``
RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, event, message, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None),
            "message": sanitize_text(record.getMessage()),
        }
        payload.update(
            (key, sanitize_value(value))
            for key, value in vars(record).items()
            if key not in RECORD_ATTRIBUTES and key not in payload and not key.startswith("_")
        )

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))
        if record.stack_info:
            payload["stack"] = sanitize_text(self.formatStack(record.stack_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    level_no = logging.getLevelName(level_name)
    logger.setLevel(level_no if isinstance(level_no, int) else logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger
