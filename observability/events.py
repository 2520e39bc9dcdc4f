"""
Structured JSON audit event emission (shared).

This module is shared by call control and the generation side.
It implements the audit event envelope and a small taxonomy of components.

Every event is written to stdout as one JSON line (for log aggregation) and
kept in the in-memory event store so the control API can query the call
audit trail and job history.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    CALL_CONTROL = "call_control"
    JOB_QUEUE = "job_queue"
    PIPELINE = "pipeline"
    NOTIFICATIONS = "notifications"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


class EventEmitter:
    """Emits structured JSON audit events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        trace_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit a structured event.

        Args:
            event_type: Stable event type string (e.g., "call.pin_accepted")
            trace_id: Call id for call events, job id for job events
            severity: Event severity level
            correlation_id: Links a job back to the call that produced it
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "trace_id": trace_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or trace_id,
            "pii": pii or DEFAULT_PII,
        }

        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
