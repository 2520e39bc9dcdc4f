"""
JobQueueProcessor tests.
Covers retry accounting, terminal failure handling, single-worker
processing, tail requeue, queue administration and subscriber fan-out.
"""
import asyncio

import pytest

from generation.errors import NotificationError, PermanentStageError, TransientStageError
from generation.jobs import Job, JobStateError, JobStatus, JobType, RecordingPayload
from generation.notifications import NotificationFanout, RealtimeHub
from generation.pipeline import PipelineResult
from generation.queue import JobQueueProcessor, error_summary
from generation.retry import RetryPolicy
from generation.storage import InMemorySessionStore, SessionStatus
from observability.event_store import event_store


class ScriptedPipeline:
    """Runs per-call behaviours in order; the last one repeats."""

    def __init__(self, *behaviours, store=None, delay=0.0):
        self.behaviours = list(behaviours) or ["ok"]
        self.store = store
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def run(self, job):
        self.calls.append(job.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            behaviour = self.behaviours[min(len(self.calls), len(self.behaviours)) - 1]
            if self.store is not None and job.session_id is None:
                session = await self.store.create(user_id=job.user_id, call_id=job.call_id)
                job.session_id = session.id
            if isinstance(behaviour, Exception):
                raise behaviour
            if isinstance(behaviour, asyncio.Event):
                await behaviour.wait()
            return PipelineResult(session_id=job.session_id or "s1", files={"downloadPackage": "s1/package.zip"})
        finally:
            self.active -= 1


class FakeSms:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send(self, to, body):
        self.sent.append((to, body))
        if self.error:
            raise self.error
        return "sent"


def _payload(user_id="u1", call_id="CA1", phone="+15551230000"):
    return RecordingPayload(
        user_id=user_id,
        call_id=call_id,
        recording_url="https://api.twilio.com/rec/RE1",
        recording_sid="RE1",
        duration=12,
        phone_number=phone,
    )


def _drain(queue: asyncio.Queue) -> list:
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def store():
    return InMemorySessionStore()


def _processor(pipeline, hub, sms, store, **policy):
    notifier = NotificationFanout(hub, sms=sms, download_base_url="https://files.example.com")
    return JobQueueProcessor(pipeline, notifier, store, retry_policy=RetryPolicy(**policy))


@pytest.mark.asyncio
async def test_succeeds_on_third_attempt(hub, sms, store):
    transient = TransientStageError("download", "connection failed")
    pipeline = ScriptedPipeline(transient, transient, "ok")
    processor = _processor(pipeline, hub, sms, store, max_attempts=3)

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3
    assert len(pipeline.calls) == 3
    assert sms.sent == []


@pytest.mark.asyncio
async def test_terminal_failure_after_max_attempts(hub, sms, store):
    pipeline = ScriptedPipeline(TransientStageError("transcribe", "timed out"), store=store)
    processor = _processor(pipeline, hub, sms, store, max_attempts=3)
    channel = hub.subscribe("u1")

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert job.status == JobStatus.FAILED
    assert job.attempts == job.max_attempts == 3
    assert len(pipeline.calls) == 3

    session = await store.get(job.session_id)
    assert session.status == SessionStatus.FAILED

    messages = _drain(channel)
    assert [m["type"] for m in messages] == ["job_started"] * 3 + ["job_failed"]
    assert messages[-1]["data"]["error"] == "transcribe failed"
    assert messages[-1]["data"]["sessionId"] == job.session_id
    assert [to for to, _ in sms.sent] == ["+15551230000"]


@pytest.mark.asyncio
async def test_permanent_error_short_circuits(hub, sms, store):
    pipeline = ScriptedPipeline(PermanentStageError("validate", "audio file too large"))
    processor = _processor(pipeline, hub, sms, store, max_attempts=3)

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert len(pipeline.calls) == 1


@pytest.mark.asyncio
async def test_terminal_job_is_never_requeued(hub, sms, store):
    pipeline = ScriptedPipeline(PermanentStageError("validate", "audio file too small"))
    processor = _processor(pipeline, hub, sms, store, max_attempts=1)

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert job.status == JobStatus.FAILED
    assert processor.get_queue_status()["queueLength"] == 0
    assert processor.is_idle


@pytest.mark.asyncio
async def test_only_one_job_processing_at_a_time(hub, sms, store):
    pipeline = ScriptedPipeline("ok", delay=0.005)
    processor = _processor(pipeline, hub, sms, store)

    jobs = [processor.enqueue_recording(_payload(call_id=f"CA{i}")) for i in range(5)]
    await processor.join()

    assert pipeline.max_active == 1
    assert pipeline.calls == [job.id for job in jobs]
    assert all(job.status == JobStatus.COMPLETED for job in jobs)


@pytest.mark.asyncio
async def test_retry_goes_to_tail(hub, sms, store):
    pipeline = ScriptedPipeline(TransientStageError("download", "timed out"), "ok")
    processor = _processor(pipeline, hub, sms, store)

    first = processor.enqueue_recording(_payload(call_id="CA1"))
    second = processor.enqueue_recording(_payload(call_id="CA2"))
    await processor.join()

    assert pipeline.calls == [first.id, second.id, first.id]
    assert first.status == second.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_attempt_is_requeued_as_queued(hub, sms, store):
    gate = asyncio.Event()
    pipeline = ScriptedPipeline(TransientStageError("download", "timed out"), gate)
    processor = _processor(pipeline, hub, sms, store)

    failing = processor.enqueue_recording(_payload(call_id="CA1"))
    blocker = processor.enqueue_recording(_payload(call_id="CA2"))
    await _wait_until(lambda: len(pipeline.calls) == 2)

    status = processor.get_queue_status()
    assert status["currentJob"]["id"] == blocker.id
    assert [j["id"] for j in status["jobs"]] == [failing.id]
    assert status["jobs"][0]["status"] == "queued"
    assert status["jobs"][0]["attempts"] == 1
    assert event_store.query(trace_id=failing.id, event_type="job.retrying")

    gate.set()
    await processor.join()
    assert failing.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_backoff_schedules_delayed_retry(hub, sms, store):
    pipeline = ScriptedPipeline(TransientStageError("download", "timed out"), "ok")
    processor = _processor(pipeline, hub, sms, store, backoff=lambda attempt: 0.02)

    job = processor.enqueue_recording(_payload())
    await _wait_until(lambda: job.status == JobStatus.RETRYING)
    assert processor.get_queue_status()["pendingRetries"] == 1

    await processor.join()
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_status_snapshot_does_not_mutate(hub, sms, store):
    gate = asyncio.Event()
    pipeline = ScriptedPipeline(gate)
    processor = _processor(pipeline, hub, sms, store)

    processor.enqueue_recording(_payload(call_id="CA1"))
    processor.enqueue_recording(_payload(call_id="CA2"))
    await _wait_until(lambda: len(pipeline.calls) == 1)

    first = processor.get_queue_status()
    second = processor.get_queue_status()
    assert first == second
    assert first["isProcessing"] is True
    assert first["queueLength"] == 1
    assert first["currentJob"]["status"] == "processing"

    gate.set()
    await processor.join()
    assert processor.get_queue_status() == {
        "queueLength": 0,
        "isProcessing": False,
        "currentJob": None,
        "pendingRetries": 0,
        "jobs": [],
    }


@pytest.mark.asyncio
async def test_clear_queue_drops_everything(hub, sms, store):
    gate = asyncio.Event()
    pipeline = ScriptedPipeline(gate)
    processor = _processor(pipeline, hub, sms, store)

    for i in range(3):
        processor.enqueue_recording(_payload(call_id=f"CA{i}"))
    await _wait_until(lambda: len(pipeline.calls) == 1)

    assert processor.clear_queue() == 3
    assert processor.is_idle
    assert processor.get_queue_status()["queueLength"] == 0

    # A new enqueue starts a fresh worker
    gate.set()
    job = processor.enqueue_recording(_payload(call_id="CA9"))
    await processor.join()
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_each_subscriber_gets_exactly_one_terminal_event(hub, sms, store):
    pipeline = ScriptedPipeline(TransientStageError("download", "timed out"), "ok")
    processor = _processor(pipeline, hub, sms, store)
    tabs = [hub.subscribe("u1"), hub.subscribe("u1")]
    other_user = hub.subscribe("u2")

    job = processor.enqueue_recording(_payload())
    await processor.join()

    for tab in tabs:
        types = [m["type"] for m in _drain(tab)]
        assert types == ["job_started", "job_started", "job_completed"]
    assert other_user.empty()
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_apology_failure_is_swallowed(hub, store):
    sms = FakeSms(error=NotificationError("SMS rejected with status 400"))
    pipeline = ScriptedPipeline(PermanentStageError("validate", "audio file too large"))
    processor = _processor(pipeline, hub, sms, store)

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert job.status == JobStatus.FAILED
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_failure_without_session_marks_call_sessions(hub, sms, store):
    existing = await store.create(user_id="u1", call_id="CA1")
    pipeline = ScriptedPipeline(PermanentStageError("download", "not found"))
    processor = _processor(pipeline, hub, sms, store)

    processor.enqueue_recording(_payload(call_id="CA1"))
    await processor.join()

    assert (await store.get(existing.id)).status == SessionStatus.FAILED


@pytest.mark.asyncio
async def test_regeneration_job(hub, sms, store):
    pipeline = ScriptedPipeline("ok")
    processor = _processor(pipeline, hub, sms, store)

    job = processor.enqueue_regeneration("sess-1", "u1", options={"tempo": 90})
    await processor.join()

    assert job.id.startswith("regen_")
    assert job.session_id == "sess-1"
    assert job.payload.options == {"tempo": 90}
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_get_job(hub, sms, store):
    processor = _processor(ScriptedPipeline("ok"), hub, sms, store)

    job = processor.enqueue_recording(_payload())
    await processor.join()

    assert processor.get_job(job.id) is job
    assert processor.get_job("job_missing") is None


def test_error_summary_hides_detail():
    assert error_summary(TransientStageError("download", "https://secret-host timed out")) == "download failed"
    assert error_summary(ValueError("boom")) == "processing failed"


class TestJobStateMachine:

    def _job(self):
        return Job.create(JobType.PROCESS_RECORDING, _payload())

    def test_retry_passes_through_queued(self):
        job = self._job()
        job.mark_processing()
        job.record_failure("TransientStageError: download timed out")
        job.mark_retrying()

        with pytest.raises(JobStateError):
            job.mark_processing()

        job.mark_requeued()
        assert job.status == JobStatus.QUEUED
        job.mark_processing()
        assert job.attempts == 2

    def test_only_retrying_jobs_can_be_requeued(self):
        job = self._job()

        with pytest.raises(JobStateError):
            job.mark_requeued()

        job.mark_processing()
        job.mark_completed()
        with pytest.raises(JobStateError):
            job.mark_requeued()
