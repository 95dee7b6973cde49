"""Logging setup for the andromeda gateway.

Request-scoped context is passed through `extra=`, e.g.
`LOG.info("...", extra={"session_id": sid})`. The JSON formatter copies those
keys into each line; the plain formatter ignores them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

THIRD_PARTY_LOGGERS = ("httpcore", "httpx", "uvicorn", "watchdog")

CONTEXT_FIELDS = ("session_id", "client", "model")


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name)) for name in CONTEXT_FIELDS if getattr(record, name, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_handler(cfg: LoggingConfig) -> logging.Handler:
    """Return a stderr handler with the configured formatter."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(PLAIN_FORMAT))
    return handler


def align_third_party_loggers(level: int) -> None:
    """Reset library logger trees so they propagate to root at `level`.

    Loggers created by libraries before a reload may still carry an older
    level or their own handlers.
    """
    existing = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in THIRD_PARTY_LOGGERS:
        for name in (prefix, *(n for n in existing if n.startswith(f"{prefix}."))):
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger; safe to call again on config reload."""
    level = logging.getLevelName(cfg.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(build_handler(cfg))
    align_third_party_loggers(level)
