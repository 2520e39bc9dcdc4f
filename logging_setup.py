"""
Shared logging infrastructure for humline.

This module provides a unified logging setup for the call control side and the
generation side, so webhook handling and background jobs log in one format.

Features:
- JSON-formatted structured logs
- Configurable log levels
- Call ID / Job ID correlation across all logs
- Component and severity tagging
- PII-aware logging helpers (phone numbers, never PIN digits)
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """System components for log tagging."""
    CALL_CONTROL = "call_control"
    WEBHOOK_SERVER = "webhook_server"
    AUTHENTICATOR = "authenticator"
    JOB_QUEUE = "job_queue"
    PIPELINE = "pipeline"
    GENERATION_BACKEND = "generation_backend"
    NOTIFICATIONS = "notifications"
    CLIENTS = "clients"
    CONTROL_API = "control_api"


_RESERVED_RECORD_KEYS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "component", "call_id", "job_id", "message",
}


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Outputs one JSON object per line:
    - ISO8601 timestamp
    - Severity level
    - Component identifier
    - call_id / job_id (if available in extra)
    - Message and additional fields

    Latency values (latency_ms) get an "ms" suffix and are highlighted in
    orange unless NO_COLOR is set.
    """

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }

        if hasattr(record, "call_id"):
            log_data["call_id"] = record.call_id
        if hasattr(record, "job_id"):
            log_data["job_id"] = record.job_id

        latency_ms = None
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value
                if key == "latency_ms":
                    latency_ms = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        json_output = json.dumps(log_data, ensure_ascii=False, default=str)

        if latency_ms is not None:
            no_color = os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes')
            pattern = r'("latency_ms"\s*:\s*)(\d+)'
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = re.sub(pattern, replacement, json_output)

        return json_output


class StructuredLogger:
    """
    Wrapper around Python's logging with structured JSON output.

    Usage:
        logger = StructuredLogger("job_queue", job_id="job_123")
        logger.info("Job started", attempt=1)
        logger.error("Stage failed", stage="download", error="details")
        logger.info_pii("Caller identified", phone="+15551234567")
    """

    def __init__(
        self,
        component: str | Component,
        call_id: Optional[str] = None,
        job_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.call_id = call_id
        self.job_id = job_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(
        self,
        level: int,
        message: str,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {
            "component": self.component,
            **kwargs
        }

        if self.call_id:
            extra["call_id"] = self.call_id
        if self.job_id:
            extra["job_id"] = self.job_id

        if pii:
            extra["pii"] = pii

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with exception info (mirrors logging.Logger.exception)."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def debug_pii(self, message: str, **pii_fields):
        """
        Log debug with PII fields explicitly marked.

        Example:
            logger.debug_pii("Caller number", phone="+15551234567")
        """
        self._log(logging.DEBUG, message, pii=pii_fields)

    def info_pii(self, message: str, **pii_fields):
        """Log info with PII fields explicitly marked."""
        self._log(logging.INFO, message, pii=pii_fields)

    def with_call(self, call_id: str) -> "StructuredLogger":
        """Create a new logger instance correlated to a call."""
        return StructuredLogger(
            self.component,
            call_id=call_id,
            job_id=self.job_id,
            logger_name=self.logger.name
        )

    def with_job(self, job_id: str) -> "StructuredLogger":
        """Create a new logger instance correlated to a job."""
        return StructuredLogger(
            self.component,
            call_id=self.call_id,
            job_id=job_id,
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure root logger for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in text logs

    This should be called once at application startup.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    call_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.JOB_QUEUE, job_id="job_123")
        logger.info("Job queued")
    """
    return StructuredLogger(component, call_id=call_id, job_id=job_id)
