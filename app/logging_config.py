"""JSON logging for the reply pipeline.

Every record carries an optional ``context`` dict (passed via
``extra={"context": {...}}`` or an :class:`EventLoggerAdapter`). Correlation
fields found in the context are lifted to the top level so log search can
filter one event or merchant across modules.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

CORRELATION_FIELDS = ("event_id", "merchant_id", "bot_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for key in CORRELATION_FIELDS:
                if context.get(key) is not None:
                    log_data[key] = context[key]
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable single-line output for local runs (LOG_JSON=false)."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:<8} {record.name}: {record.getMessage()}"
        context = getattr(record, "context", None)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"replydesk.{name}")


class EventLoggerAdapter(logging.LoggerAdapter):
    """Merges bound event fields with the per-call ``context=`` kwarg."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def event_logger(logger: logging.Logger, **fields: Any) -> EventLoggerAdapter:
    """Logger bound to one event; None-valued fields are dropped."""
    return EventLoggerAdapter(logger, {k: v for k, v in fields.items() if v is not None})
