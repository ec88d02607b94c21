"""
Structured logging for the knowledge service.

JSON lines in production, a readable single-line format in development.
Every record carries the correlation id of the HTTP request, indexing job
or scheduler tick that produced it.

Usage:
    from app.shared.logging_config import setup_logging

    # main.py, once at startup
    setup_logging(service_name="chatbot-knowledge-service")

    # modules
    logger = logging.getLogger("Chatbot.Indexing.Orchestrator")
    logger.info("Job finished", extra={"job_id": job_id, "status": "partial"})

JSON output (one line per record):
    {"timestamp": "...", "level": "INFO", "logger": "Chatbot.Indexing.Orchestrator",
     "message": "Job finished", "service": "chatbot-knowledge-service",
     "correlation_id": "job-3f2a", "job_id": "...", "status": "partial"}
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

# LogRecord attributes that are not user-supplied `extra` fields
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "correlation_id", "message", "taskName",
})

_NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "asyncio", "anthropic", "openai", "postgrest")


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class CorrelationIdFilter(logging.Filter):
    """Copies the current correlation id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            from app.shared.correlation import get_correlation_id
            record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extras flattened into the top level."""

    def __init__(self, service_name: str = "chatbot-knowledge-service"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id and correlation_id != "-":
            log_entry["correlation_id"] = correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in _extra_fields(record).items():
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """Local development format: `time [LEVEL] [cid] logger: message | k=v`."""

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = getattr(record, "correlation_id", "-")
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        extras = ", ".join(f"{key}={value}" for key, value in _extra_fields(record).items())
        formatted = f"{timestamp} [{record.levelname}] [{correlation_id}] {record.name}: {record.getMessage()}"
        if extras:
            formatted += f" | {extras}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logging(
    service_name: str,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """
    Configure the root logger once at startup.

    Args:
        service_name: Reported in every JSON record
        level: Defaults to LOG_LEVEL or INFO
        json_output: Defaults to True unless ENVIRONMENT=development
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, level, logging.INFO)

    if json_output is None:
        json_output = os.getenv("ENVIRONMENT", "production").lower() != "development"

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter(service_name=service_name) if json_output else HumanReadableFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger("Chatbot.Startup").info(
        "Logging configured",
        extra={
            "log_level": level,
            "json_output": json_output,
            "environment": os.getenv("ENVIRONMENT", "production"),
        },
    )
