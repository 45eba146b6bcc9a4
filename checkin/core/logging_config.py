"""Structured JSON logging.

Every record carries:
- @timestamp (ISO8601, UTC)
- level and logger
- service name, version and environment
- event_type, defaulting to log.<logger name>
- request_id of the HTTP request being served, when there is one

Records from the security.* loggers (authentication failures, signature
mismatches) are tagged is_security_event and, when LOG_DIR is set, also
written to a rotating security.log for log shipping.
"""

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

from checkin.core.config import settings

# Set by RequestIDMiddleware for the lifetime of a request
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

SECURITY_LOGGER_PREFIX = "security."


class CheckinJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service metadata and request correlation."""

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "@timestamp",
                "levelname": "level",
                "name": "logger",
            },
            **kwargs,
        )

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["@timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record["service"] = {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }
        log_record.setdefault("event_type", f"log.{record.name}")

        request_id = request_id_var.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


class SecurityEventFilter(logging.Filter):
    """Tag records emitted on the security.* loggers."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "is_security_event", False):
            record.is_security_event = record.name.startswith(SECURITY_LOGGER_PREFIX)
        return True


class _SecurityOnlyFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "is_security_event", False)


def configure_logging(level: str | None = None) -> None:
    """Install JSON logging on the root and uvicorn loggers.

    Call once at application startup. Safe to call again; existing root
    handlers are replaced.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.LOG_LEVEL).upper())
    root_logger.handlers.clear()

    formatter = CheckinJsonFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecurityEventFilter())
    root_logger.addHandler(console_handler)

    log_dir = Path(settings.LOG_DIR) if settings.LOG_DIR else None
    if log_dir is not None and log_dir.is_dir():
        security_handler = logging.handlers.TimedRotatingFileHandler(
            log_dir / "security.log",
            when="midnight",
            backupCount=365,
            encoding="utf-8",
        )
        security_handler.setFormatter(formatter)
        security_handler.addFilter(SecurityEventFilter())
        security_handler.addFilter(_SecurityOnlyFilter())
        root_logger.addHandler(security_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.propagate = True

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "event_type": "system.startup.logging_configured",
            "log_level": logging.getLevelName(root_logger.level),
            "security_log": bool(log_dir and log_dir.is_dir()),
        },
    )


def format_security_event(
    event_type: str,
    severity: str,
    description: str,
    actor_id: str | None = None,
    ip_address: str | None = None,
    participant_id: str | None = None,
    session_id: str | None = None,
    token_id: str | None = None,
    metadata: dict | None = None,
) -> dict:
    """Build the ``extra`` dict for a security log record.

    Usage:
        security_logger.warning(
            "QR signature mismatch",
            extra=format_security_event(
                event_type="checkin.scan.scan_invalid_signature",
                severity="warning",
                description="Presented signature did not match",
                actor_id=context.actor_id,
                participant_id=payload.participant_id,
            ),
        )
    """
    event = {
        "event_type": event_type,
        "severity": severity,
        "description": description,
        "is_security_event": True,
    }
    optional = {
        "actor_id": actor_id,
        "ip_address": ip_address,
        "participant_id": participant_id,
        "session_id": session_id,
        "token_id": token_id,
        "metadata": metadata,
    }
    event.update({key: value for key, value in optional.items() if value})
    return event
