"""
Notification fan-out.

Job lifecycle transitions are published to every realtime subscriber on the
job owner's channel, and terminal outcomes may trigger an SMS. Publishing is
fire-and-forget: a full subscriber queue drops the event for that subscriber
only, and nothing here can change a job's outcome.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .clients import SmsClient
from .jobs import Job
from .templates import sms_text


logger = get_logger(LogComponent.NOTIFICATIONS)
emitter = EventEmitter(ObsComponent.NOTIFICATIONS)

JOB_STARTED = "job_started"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RealtimeHub:
    """
    Per-user channels of subscriber queues.

    The WebSocket endpoint subscribes one queue per connection and forwards
    whatever arrives on it.
    """

    def __init__(self, max_queue_size: int = 100):
        self._channels: Dict[str, List[asyncio.Queue]] = {}
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()

    def subscribe(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._channels.setdefault(user_id, []).append(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            subscribers = self._channels.get(user_id)
            if not subscribers:
                return
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                del self._channels[user_id]

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._channels.get(user_id, []))
            return sum(len(s) for s in self._channels.values())

    def publish(self, user_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """Deliver one event to each subscriber of user_id without blocking. Returns deliveries."""
        with self._lock:
            subscribers = list(self._channels.get(user_id, []))

        message = {"type": event_type, "data": data}
        delivered = 0
        for queue in subscribers:
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping event", event_type=event_type, user_id=user_id)
        return delivered


class NotificationFanout:
    """Realtime events for job transitions plus SMS on terminal outcomes."""

    def __init__(
        self,
        hub: RealtimeHub,
        sms: Optional[SmsClient] = None,
        download_base_url: str = "http://localhost:8000/downloads",
    ):
        self.hub = hub
        self.sms = sms
        self.download_base_url = download_base_url.rstrip("/")

    def _publish(self, user_id: Optional[str], event_type: str, data: Dict[str, Any]) -> int:
        if not user_id:
            return 0
        try:
            return self.hub.publish(user_id, event_type, data)
        except Exception as e:
            logger.error("Realtime publish failed", event_type=event_type, error=str(e), error_type=type(e).__name__)
            return 0

    def job_started(self, job: Job) -> int:
        return self._publish(job.user_id, JOB_STARTED, {
            "jobId": job.id,
            "type": job.type.value,
            "sessionId": job.subject_id,
            "attempt": job.attempts,
            "timestamp": _now(),
        })

    def job_completed(self, job: Job, files: Optional[Dict[str, Any]] = None) -> int:
        return self._publish(job.user_id, JOB_COMPLETED, {
            "jobId": job.id,
            "type": job.type.value,
            "sessionId": job.subject_id,
            "files": files or {},
            "timestamp": _now(),
        })

    def job_failed(self, job: Job, error: str) -> int:
        return self._publish(job.user_id, JOB_FAILED, {
            "jobId": job.id,
            "type": job.type.value,
            "sessionId": job.subject_id,
            "error": error,
            "timestamp": _now(),
        })

    def recording_failed(self, user_id: Optional[str], call_id: str, error: str) -> int:
        return self._publish(user_id, JOB_FAILED, {
            "jobId": None,
            "callId": call_id,
            "sessionId": call_id,
            "error": error,
            "timestamp": _now(),
        })

    def download_url(self, files: Dict[str, Any]) -> str:
        return f"{self.download_base_url}/{files.get('downloadPackage', '')}"

    async def send_download_links(self, phone: Optional[str], session_id: str, files: Dict[str, Any]) -> str:
        """
        Text the caller a download link.

        Returns the SMS status ("sent" or "skipped"); raises NotificationError
        when the gateway rejects the message.
        """
        if not phone or self.sms is None:
            return SmsClient.SKIPPED
        status = await self.sms.send(phone, sms_text("download_links", download_url=self.download_url(files)))
        emitter.emit("notification.sms", session_id, kind="download_links", status=status)
        return status

    async def send_apology(self, phone: Optional[str], trace_id: str) -> str:
        """Best-effort apology SMS after a terminal failure. Never raises."""
        if not phone or self.sms is None:
            return SmsClient.SKIPPED
        try:
            status = await self.sms.send(phone, sms_text("apology"))
        except Exception as e:
            # NotificationError or anything unexpected from the transport
            logger.error("Apology SMS failed", error=str(e), error_type=type(e).__name__)
            emitter.emit("notification.sms", trace_id, severity=Severity.WARN, kind="apology", status="failed")
            return "failed"
        emitter.emit("notification.sms", trace_id, kind="apology", status=status)
        return status
