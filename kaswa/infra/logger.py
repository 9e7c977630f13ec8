"""Structured logger utilities."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

LOG_LEVEL_ENV = "KASWA_LOG_LEVEL"

# attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    if isinstance(value, int):
        return value
    if not value:
        return default
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else default


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """Attach a single JSON stream handler to ``name``.

    Without an explicit ``level`` the ``KASWA_LOG_LEVEL`` environment
    variable is honoured, falling back to INFO.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level if level is not None else parse_level(os.getenv(LOG_LEVEL_ENV)))
    if not any(isinstance(h.formatter, JsonFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    return logger
