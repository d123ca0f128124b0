"""
Structured logging configuration with transport audit trail for Parley.

Provides JSON-formatted logging with OpenTelemetry correlation and a
dedicated audit logger for connection mode changes and delivery failures.
"""

import json
import logging
import logging.config
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from opentelemetry import trace


_RESERVED_RECORD_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with OpenTelemetry trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add trace context if available
        if self.include_trace:
            current_span = trace.get_current_span()
            if current_span and current_span.is_recording():
                span_context = current_span.get_span_context()
                log_entry.update({
                    "trace_id": format(span_context.trace_id, "032x"),
                    "span_id": format(span_context.span_id, "016x")
                })

        # Add exception information
        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_entry[key] = value

        # Add configured extra fields
        log_entry.update(self.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class TransportAuditLogger:
    """Specialized logger for connection and delivery audit events."""

    def __init__(self, logger_name: str = "parley.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_mode_change(
        self,
        session_id: str,
        from_mode: str,
        to_mode: str,
        kind: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a transport mode change (fallback, recovery, manual)."""
        self.logger.info(
            f"Mode change: {from_mode} -> {to_mode} ({kind})",
            extra={
                "audit_type": "mode_change",
                "session_id": session_id,
                "from_mode": from_mode,
                "to_mode": to_mode,
                "kind": kind,
                "reason": reason,
                "metadata": metadata or {}
            }
        )

    def log_connection_event(
        self,
        event_type: str,
        session_id: str,
        transport: str,
        result: str,
        latency_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a connection lifecycle event."""
        self.logger.info(
            f"Connection event: {event_type} via {transport} - {result}",
            extra={
                "audit_type": "connection",
                "event_type": event_type,
                "session_id": session_id,
                "transport": transport,
                "result": result,
                "latency_ms": latency_ms,
                "metadata": metadata or {}
            }
        )

    def log_delivery_failure(
        self,
        session_id: str,
        message_key: str,
        attempts: int,
        error: str
    ) -> None:
        """Log a message that exhausted its delivery attempts."""
        self.logger.warning(
            f"Delivery failed for {message_key} after {attempts} attempts",
            extra={
                "audit_type": "delivery",
                "session_id": session_id,
                "message_key": message_key,
                "attempts": attempts,
                "error": error
            }
        )

    def log_authentication_failure(
        self,
        session_id: str,
        transport: str,
        detail: str
    ) -> None:
        """Log a non-retryable credential rejection."""
        self.logger.error(
            f"Authentication rejected on {transport}: {detail}",
            extra={
                "audit_type": "authentication",
                "session_id": session_id,
                "transport": transport,
                "detail": detail
            }
        )


def setup_logging(config: Dict[str, Any]) -> None:
    """Setup structured logging configuration."""
    log_level = config.get("level", "INFO").upper()
    log_format = config.get("format", "structured")
    file_logging = config.get("file_logging", True)

    log_dir = Path(config.get("directory", "~/.parley/logs")).expanduser()
    if file_logging:
        log_dir.mkdir(parents=True, exist_ok=True)

    console_formatter = "structured" if log_format == "structured" else "simple"
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": console_formatter,
            "stream": sys.stderr
        }
    }
    app_handlers = ["console"]
    audit_handlers = ["console"]

    if file_logging:
        handlers["application_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "structured",
            "filename": str(log_dir / "parley.log"),
            "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),  # 10MB
            "backupCount": config.get("backup_count", 5)
        }
        handlers["audit_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "INFO",
            "formatter": "structured",
            "filename": str(log_dir / "audit.jsonl"),
            "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),  # 10MB
            "backupCount": config.get("backup_count", 10)
        }
        app_handlers = ["console", "application_file"]
        audit_handlers = ["audit_file"]

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "parley-chat-client",
                    "environment": config.get("environment", "development")
                }
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": handlers,
        "loggers": {
            "parley": {
                "level": log_level,
                "handlers": app_handlers,
                "propagate": False
            },
            "parley.audit": {
                "level": "INFO",
                "handlers": audit_handlers,
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": app_handlers,
                "propagate": False
            },
            "websockets": {
                "level": "WARNING",
                "handlers": app_handlers,
                "propagate": False
            },
            "opentelemetry": {
                "level": "WARNING",
                "handlers": app_handlers,
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"]
        }
    }

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger("parley.logging")
    logger.info("Structured logging initialized", extra={
        "config": {
            "level": log_level,
            "format": log_format,
            "directory": str(log_dir) if file_logging else None
        }
    })


def get_audit_logger() -> TransportAuditLogger:
    """Get the configured audit logger instance."""
    return TransportAuditLogger()
