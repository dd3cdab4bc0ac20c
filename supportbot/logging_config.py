"""JSON logging configuration for the support bot."""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Callable


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "context") and record.context:
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"supportbot.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to log records."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            combined_context = {**self.extra, **(context or {})}
            kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


def log_handoff_change(
    logger: logging.Logger,
    *,
    user_id: str,
    enabled: bool,
    reason: str | None = None,
    updated_by: str | None = None,
) -> None:
    """Log a suspension flag change in a uniform shape."""
    logger.info(
        f"Handoff {'enabled' if enabled else 'disabled'} for user",
        extra={
            "context": {
                "event": "HANDOFF_CHANGE",
                "user_id": user_id,
                "enabled": enabled,
                "reason": reason,
                "updated_by": updated_by,
            }
        },
    )


def start_timer() -> Callable[[], int]:
    """Return a callable giving elapsed milliseconds since the call."""
    started = time.monotonic()
    return lambda: int((time.monotonic() - started) * 1000)
