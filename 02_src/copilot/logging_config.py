"""Structured logging configuration for the field copilot."""

import json
import logging
import logging.config
import logging.handlers
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from .config import DEFAULT_LOG_PATH

# SDK loggers that log every request at INFO, including signed URLs
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "google", "urllib3")

SIGNATURE_MARKERS = ("X-Goog-Signature=", "Signature=", "sig=")


def redact_url(url: str) -> str:
    """Strip the query string (signature) from a URL before logging it."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def redact_context(value: Any) -> Any:
    """Redact signed URLs anywhere inside a log context value."""
    if isinstance(value, str):
        if value.startswith(("http://", "https://")) and any(
            marker in value for marker in SIGNATURE_MARKERS
        ):
            return redact_url(value)
        return value
    if isinstance(value, dict):
        return {k: redact_context(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_context(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields under "context"."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = redact_context(context)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line console output for local runs (LOG_FORMAT=text)."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in redact_context(context).items())
            line = f"{line} [{pairs}]"
        return line


def setup_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    console_format: str | None = None,
) -> None:
    """
    Setup structured logging for the application.

    Args:
        log_level: Log level name. Defaults to LOG_LEVEL env var or INFO.
        log_file: Path to the rotating JSON log. Defaults to 04_logs/app.log.
        console_format: "json" or "text". Defaults to LOG_FORMAT env var or json.
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_path = Path(log_file) if log_file else DEFAULT_LOG_PATH
    log_path.parent.mkdir(parents=True, exist_ok=True)
    console_format = (console_format or os.getenv("LOG_FORMAT", "json")).lower()

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": "copilot.logging_config.JSONFormatter"},
            "text": {"()": "copilot.logging_config.ConsoleFormatter"},
        },
        "handlers": {
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "filename": str(log_path),
                "maxBytes": 10 * 1024 * 1024,  # 10 MB
                "backupCount": 5,
                "formatter": "json",
                "encoding": "utf-8",
            },
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "text" if console_format == "text" else "json",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            name: {"level": "WARNING"} for name in NOISY_LOGGERS
        },
        "root": {
            "level": log_level,
            "handlers": ["file", "console"],
        },
    }

    logging.config.dictConfig(logging_config)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; pass __name__."""
    return logging.getLogger(name)
