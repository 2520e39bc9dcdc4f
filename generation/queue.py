"""
Job queue processor.

A single-consumer FIFO of generation jobs. One worker task drains the queue
and runs the pipeline for one job at a time; it exits when the queue is
empty and the next enqueue starts a new one. The queue, the worker handle
and the pending delayed retries are only touched under one lock, and no
await happens while it is held.

Failed attempts are re-appended to the tail (so a newer job can overtake a
retrying one) until the retry policy says stop; then the job fails terminally,
its ProcessingSession is marked failed, subscribers get job_failed and the
caller may get a best-effort apology SMS.
"""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, Optional, Set

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .errors import StageError
from .jobs import Job, JobType, RecordingPayload, RegenerationPayload
from .notifications import NotificationFanout
from .pipeline import GenerationPipeline
from .retry import RetryPolicy
from .storage import InMemorySessionStore


logger = get_logger(LogComponent.JOB_QUEUE)
emitter = EventEmitter(ObsComponent.JOB_QUEUE)

MAX_TRACKED_JOBS = 1000


def error_summary(error: BaseException) -> str:
    """Subscriber-facing failure text: the failing stage, never collaborator detail."""
    if isinstance(error, StageError):
        return error.summary
    return "processing failed"


class JobQueueProcessor:
    """Owns the job queue and its single worker."""

    def __init__(
        self,
        pipeline: GenerationPipeline,
        notifier: NotificationFanout,
        store: InMemorySessionStore,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.pipeline = pipeline
        self.notifier = notifier
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

        self._lock = threading.Lock()
        self._queue: Deque[Job] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[Job] = None
        self._delayed: Set[asyncio.TimerHandle] = set()
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()

    # --- enqueue ---

    def enqueue(self, job: Job) -> Job:
        """Append a job to the tail and make sure a worker is running."""
        with self._lock:
            self._track(job)
            self._queue.append(job)
            queue_length = len(self._queue)
            self._ensure_worker()

        emitter.emit(
            "job.enqueued",
            job.id,
            correlation_id=job.call_id or job.session_id,
            job_type=job.type.value,
            user_id=job.user_id,
            queue_length=queue_length,
        )
        logger.with_job(job.id).info("Job queued", job_type=job.type.value, queue_length=queue_length)
        return job

    def enqueue_recording(self, payload: RecordingPayload) -> Job:
        return self.enqueue(Job.create(JobType.PROCESS_RECORDING, payload, max_attempts=self.retry_policy.max_attempts))

    def enqueue_regeneration(
        self,
        session_id: str,
        user_id: str,
        original_audio_ref: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        payload = RegenerationPayload(
            session_id=session_id,
            user_id=user_id,
            original_audio_url=original_audio_ref,
            options=dict(options or {}),
        )
        return self.enqueue(Job.create(JobType.REGENERATE_SESSION, payload, max_attempts=self.retry_policy.max_attempts))

    def _ensure_worker(self) -> None:
        # Caller holds the lock
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def _track(self, job: Job) -> None:
        self._jobs[job.id] = job
        self._jobs.move_to_end(job.id)
        while len(self._jobs) > MAX_TRACKED_JOBS:
            self._jobs.popitem(last=False)

    # --- worker ---

    async def _run(self) -> None:
        me = asyncio.current_task()
        while True:
            with self._lock:
                if self._worker is not me:
                    return
                if not self._queue:
                    self._worker = None
                    self._current = None
                    return
                job = self._queue.popleft()
                self._current = job

            await self._process(job)

            with self._lock:
                if self._current is job:
                    self._current = None

    async def _process(self, job: Job) -> None:
        log = logger.with_job(job.id)
        job.mark_processing()
        emitter.emit(
            "job.started",
            job.id,
            correlation_id=job.call_id or job.session_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        self.notifier.job_started(job)

        try:
            result = await self.pipeline.run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(
                "Job attempt failed",
                attempt=job.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._handle_failure(job, e)
            return

        job.mark_completed()
        emitter.emit(
            "job.completed",
            job.id,
            correlation_id=job.call_id or job.session_id,
            session_id=result.session_id,
            attempts=job.attempts,
            source=result.source,
        )
        log.info("Job completed", session_id=result.session_id)
        self.notifier.job_completed(job, result.files)

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        attempts = job.record_failure(f"{type(error).__name__}: {error}")

        if self.retry_policy.should_retry(attempts, job.max_attempts, error):
            job.mark_retrying()
            delay = self.retry_policy.delay_for(attempts)
            emitter.emit(
                "job.retrying",
                job.id,
                severity=Severity.WARN,
                correlation_id=job.call_id or job.session_id,
                attempt=attempts,
                max_attempts=job.max_attempts,
                delay_seconds=delay,
            )
            if delay > 0:
                self._schedule_retry(job, delay)
            else:
                with self._lock:
                    job.mark_requeued()
                    self._queue.append(job)
            return

        job.mark_failed()
        emitter.emit(
            "job.failed",
            job.id,
            severity=Severity.ERROR,
            correlation_id=job.call_id or job.session_id,
            attempts=attempts,
            max_attempts=job.max_attempts,
            error_type=type(error).__name__,
            retryable=self.retry_policy.retryable(error),
        )
        logger.with_job(job.id).error("Job permanently failed", attempts=attempts, last_error=job.last_error)
        await self._on_terminal_failure(job, error_summary(error))

    def _schedule_retry(self, job: Job, delay: float) -> None:
        loop = asyncio.get_running_loop()

        def _requeue() -> None:
            with self._lock:
                self._delayed.discard(handle)
                job.mark_requeued()
                self._queue.append(job)
                self._ensure_worker()

        with self._lock:
            handle = loop.call_later(delay, _requeue)
            self._delayed.add(handle)

    async def _on_terminal_failure(self, job: Job, summary: str) -> None:
        try:
            if job.session_id:
                await self.store.mark_failed(job.session_id)
            elif job.call_id:
                await self.store.mark_failed_for_call(job.call_id, job.user_id)
        except Exception as e:
            logger.with_job(job.id).error("Failed to mark session failed", error=str(e))

        self.notifier.job_failed(job, summary)

        phone = job.payload.phone_number if isinstance(job.payload, RecordingPayload) else None
        await self.notifier.send_apology(phone, job.id)

    # --- status / administration ---

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_queue_status(self) -> Dict[str, Any]:
        """Observational snapshot; never mutates."""
        with self._lock:
            return {
                "queueLength": len(self._queue),
                "isProcessing": self._current is not None,
                "currentJob": self._current.summary() if self._current else None,
                "pendingRetries": len(self._delayed),
                "jobs": [job.summary() for job in self._queue],
            }

    def clear_queue(self) -> int:
        """
        Drop every queued job, cancel pending retries and stop the worker.

        Abandoned jobs keep whatever status they had. Returns how many jobs
        were dropped (including the one being processed, if any).
        """
        with self._lock:
            dropped = len(self._queue) + len(self._delayed) + (1 if self._current else 0)
            self._queue.clear()
            for handle in self._delayed:
                handle.cancel()
            self._delayed.clear()
            worker, self._worker = self._worker, None
            self._current = None

        if worker is not None:
            worker.cancel()
        emitter.emit("queue.cleared", "queue", severity=Severity.WARN, dropped=dropped)
        logger.warning("Processing queue cleared", dropped=dropped)
        return dropped

    @property
    def is_idle(self) -> bool:
        with self._lock:
            return self._worker is None and not self._queue and not self._delayed

    async def join(self, poll_interval: float = 0.01) -> None:
        """Wait until the queue is empty, no worker runs and no retry is pending."""
        while True:
            with self._lock:
                worker = self._worker
                pending = bool(self._delayed) or bool(self._queue)
            if worker is not None:
                await asyncio.wait([worker])
            elif pending:
                await asyncio.sleep(poll_interval)
            else:
                return

    async def shutdown(self) -> None:
        with self._lock:
            worker = self._worker
        self.clear_queue()
        if worker is not None:
            try:
                await worker
            except asyncio.CancelledError:
                pass
