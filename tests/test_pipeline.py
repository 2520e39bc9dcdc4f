"""
GenerationPipeline tests.
Collaborators that would hit the network are replaced with fakes; the
generation chain, materializer and session store are the real ones.
"""
import asyncio
import os
import zipfile

import pytest

from generation.backend import DEFAULT_CHORDS, FeatureAnalyzer, GenerationBackend, SOURCE_FALLBACK, SOURCE_MODEL
from generation.clients import DownloadedAudio, Transcript
from generation.errors import NotificationError, PermanentStageError, TransientStageError
from generation.jobs import Job, JobType, RecordingPayload, RegenerationPayload
from generation.materializer import FileMaterializer
from generation.notifications import NotificationFanout, RealtimeHub
from generation.pipeline import GenerationPipeline, apply_overrides
from generation.storage import InMemorySessionStore, SessionStatus


ANALYSIS = {"tempo": 96, "key": "D", "mood": ["happy"], "genres": ["rock"]}
CHAIN_OK = [
    ANALYSIS,
    {**ANALYSIS, "scale": "major"},
    {"primaryProgression": ["D", "G", "A"]},
    {"primaryGenre": "rock", "instrumentation": {"drums": "kit"}},
    {"finalInstrumentation": {"drums": "kit"}, "mixLevels": {"drums": 0.9}},
]


class ScriptedModel:
    """Answers complete_json calls in order: analyze, analyst, composer, specialist, director."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    async def complete_json(self, system, prompt, temperature=0.7):
        response = self.responses[self.calls]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return response


class SlowModel(ScriptedModel):
    """Sleeps before each answer; a None response never returns."""

    def __init__(self, responses, delay=0.0):
        super().__init__(responses)
        self.delay = delay

    async def complete_json(self, system, prompt, temperature=0.7):
        if self.responses[self.calls] is None:
            self.calls += 1
            await asyncio.Event().wait()
        await asyncio.sleep(self.delay)
        return await super().complete_json(system, prompt, temperature)


class FakeDownloader:
    def __init__(self, directory, size=4096, error=None):
        self.directory = directory
        self.size = size
        self.error = error
        self.calls = 0
        self.paths = []

    async def download(self, recording_url):
        self.calls += 1
        if self.error:
            raise self.error
        path = os.path.join(self.directory, f"rec_{self.calls}.wav")
        with open(path, "wb") as f:
            f.write(b"\0" * self.size)
        self.paths.append(path)
        return DownloadedAudio(path=path, size=self.size, filename=os.path.basename(path))


class FakeTranscriber:
    def __init__(self, text="la la la sunshine", delay=0.0):
        self.text = text
        self.delay = delay

    async def transcribe(self, path):
        if self.delay:
            await asyncio.sleep(self.delay)
        return Transcript(text=self.text, duration=8.0, segments=[{"avg_logprob": -0.1}], confidence=0.9)


class FlakyMaterializer(FileMaterializer):
    def __init__(self, generated_dir, failures=1):
        super().__init__(generated_dir)
        self.failures = failures

    async def materialize(self, session_id, description):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        return await super().materialize(session_id, description)


class FakeSms:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send(self, to, body):
        if self.error:
            raise self.error
        self.sent.append((to, body))
        return "sent"


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def sms():
    return FakeSms()


def _pipeline(tmp_path, store, sms, model=None, downloader=None, transcriber=None, materializer=None, model_timeout=None, **kwargs):
    notifier = NotificationFanout(RealtimeHub(), sms=sms, download_base_url="https://files.example.com")
    return GenerationPipeline(
        downloader=downloader or FakeDownloader(str(tmp_path)),
        transcriber=transcriber or FakeTranscriber(),
        analyzer=FeatureAnalyzer(model, call_timeout=model_timeout),
        backend=GenerationBackend(model, stage_timeout=model_timeout),
        materializer=materializer or FileMaterializer(str(tmp_path / "generated")),
        store=store,
        notifier=notifier,
        **kwargs,
    )


def _recording_job(phone="+15551230000"):
    return Job.create(JobType.PROCESS_RECORDING, RecordingPayload(
        user_id="u1",
        call_id="CA1",
        recording_url="https://api.twilio.com/rec/RE1",
        recording_sid="RE1",
        duration=8,
        phone_number=phone,
    ))


@pytest.mark.asyncio
async def test_process_recording_happy_path(tmp_path, store, sms):
    downloader = FakeDownloader(str(tmp_path))
    pipeline = _pipeline(tmp_path, store, sms, model=ScriptedModel(CHAIN_OK), downloader=downloader)
    job = _recording_job()

    result = await pipeline.run(job)

    assert result.source == SOURCE_MODEL
    assert result.sms_status == "sent"
    assert job.session_id == result.session_id

    session = await store.get(result.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.transcript == "la la la sunshine"
    assert session.features["tempo"] == 96
    assert session.generation["chords"]["primaryProgression"] == ["D", "G", "A"]

    package = tmp_path / "generated" / result.files["downloadPackage"]
    with zipfile.ZipFile(package) as zf:
        assert sorted(zf.namelist()) == ["arrangement.json", "lyrics.txt"]

    assert not os.path.exists(downloader.paths[0])
    to, body = sms.sent[0]
    assert to == "+15551230000"
    assert f"https://files.example.com/{result.session_id}/package.zip" in body


@pytest.mark.asyncio
async def test_composer_failure_degrades_to_fallback(tmp_path, store, sms):
    responses = list(CHAIN_OK)
    responses[2] = TimeoutError("model timed out")
    pipeline = _pipeline(tmp_path, store, sms, model=ScriptedModel(responses))

    result = await pipeline.run(_recording_job())

    assert result.source == SOURCE_FALLBACK
    session = await store.get(result.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.generation["degradedStages"] == ["composer"]
    assert session.generation["chords"] == DEFAULT_CHORDS
    # Later stages still used the model
    assert session.generation["arrangement"]["mixLevels"] == {"drums": 0.9}


@pytest.mark.asyncio
async def test_hanging_composer_falls_back_and_job_completes(tmp_path, store, sms):
    responses = list(CHAIN_OK)
    responses[2] = None
    pipeline = _pipeline(tmp_path, store, sms, model=SlowModel(responses), model_timeout=0.1, stage_timeout=0.1)

    result = await pipeline.run(_recording_job())

    session = await store.get(result.session_id)
    assert result.source == SOURCE_FALLBACK
    assert session.status == SessionStatus.COMPLETED
    assert session.generation["degradedStages"] == ["composer"]
    assert session.generation["chords"] == DEFAULT_CHORDS


@pytest.mark.asyncio
async def test_chain_may_outlast_a_single_stage_timeout(tmp_path, store, sms):
    # Four calls of 0.1s each: every call fits its own budget, the chain as a whole does not
    pipeline = _pipeline(tmp_path, store, sms, model=SlowModel(CHAIN_OK, delay=0.1), model_timeout=0.3, stage_timeout=0.3)

    result = await pipeline.run(_recording_job())

    assert result.source == SOURCE_MODEL
    assert (await store.get(result.session_id)).generation["degradedStages"] == []


@pytest.mark.asyncio
async def test_mismatched_payload_is_permanent(tmp_path, store, sms):
    pipeline = _pipeline(tmp_path, store, sms)
    job = Job.create(JobType.PROCESS_RECORDING, RegenerationPayload(session_id="s1", user_id="u1"))

    with pytest.raises(PermanentStageError) as exc_info:
        await pipeline.run(job)

    assert exc_info.value.stage == "dispatch"


@pytest.mark.asyncio
async def test_without_model_everything_falls_back(tmp_path, store, sms):
    pipeline = _pipeline(tmp_path, store, sms, model=None)

    result = await pipeline.run(_recording_job())

    session = await store.get(result.session_id)
    assert result.source == SOURCE_FALLBACK
    assert session.generation["degradedStages"] == ["analyst", "composer", "specialist", "director"]
    assert session.features["tempo"] == 120


@pytest.mark.asyncio
async def test_notify_failure_does_not_fail_job(tmp_path, store):
    sms = FakeSms(error=NotificationError("SMS rejected with status 500"))
    pipeline = _pipeline(tmp_path, store, sms, model=ScriptedModel(CHAIN_OK))

    result = await pipeline.run(_recording_job())

    assert result.sms_status == "failed"
    assert (await store.get(result.session_id)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_no_phone_skips_sms(tmp_path, store, sms):
    pipeline = _pipeline(tmp_path, store, sms)

    result = await pipeline.run(_recording_job(phone=None))

    assert result.sms_status == "skipped"
    assert sms.sent == []


@pytest.mark.asyncio
async def test_audio_too_small_is_permanent(tmp_path, store, sms):
    downloader = FakeDownloader(str(tmp_path), size=10)
    pipeline = _pipeline(tmp_path, store, sms, downloader=downloader)

    with pytest.raises(PermanentStageError) as exc_info:
        await pipeline.run(_recording_job())

    assert exc_info.value.stage == "validate"
    assert not os.path.exists(downloader.paths[0])
    assert await store.list_for_user("u1") == []


@pytest.mark.asyncio
async def test_audio_too_large_is_permanent(tmp_path, store, sms):
    pipeline = _pipeline(tmp_path, store, sms, downloader=FakeDownloader(str(tmp_path), size=5000), audio_max_bytes=4000)

    with pytest.raises(PermanentStageError):
        await pipeline.run(_recording_job())


@pytest.mark.asyncio
async def test_stage_timeout_is_transient(tmp_path, store, sms):
    pipeline = _pipeline(tmp_path, store, sms, transcriber=FakeTranscriber(delay=1.0), stage_timeout=0.05)

    with pytest.raises(TransientStageError) as exc_info:
        await pipeline.run(_recording_job())

    assert exc_info.value.stage == "transcribe"


@pytest.mark.asyncio
async def test_download_connection_error_is_transient(tmp_path, store, sms):
    downloader = FakeDownloader(str(tmp_path), error=ConnectionResetError("reset"))
    pipeline = _pipeline(tmp_path, store, sms, downloader=downloader)

    with pytest.raises(TransientStageError) as exc_info:
        await pipeline.run(_recording_job())

    assert exc_info.value.summary == "download failed"


@pytest.mark.asyncio
async def test_retry_reuses_processing_session(tmp_path, store, sms):
    materializer = FlakyMaterializer(str(tmp_path / "generated"), failures=1)
    pipeline = _pipeline(tmp_path, store, sms, materializer=materializer)
    job = _recording_job()

    with pytest.raises(TransientStageError):
        await pipeline.run(job)
    first_session = job.session_id
    assert (await store.get(first_session)).status == SessionStatus.PROCESSING

    result = await pipeline.run(job)

    assert result.session_id == first_session
    sessions = await store.list_for_user("u1")
    assert [s.id for s in sessions] == [first_session]
    assert sessions[0].status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_regenerate_applies_overrides(tmp_path, store, sms):
    session = await store.create(
        user_id="u1",
        call_id="CA1",
        transcript="hum hum",
        audio_duration=5.0,
        features={"tempo": 120, "key": "C", "mood": ["neutral"], "genres": ["pop"]},
    )
    downloader = FakeDownloader(str(tmp_path))
    pipeline = _pipeline(tmp_path, store, sms, downloader=downloader)
    job = Job.create(JobType.REGENERATE_SESSION, RegenerationPayload(
        session_id=session.id,
        user_id="u1",
        options={"tempo": 90, "genre": "jazz"},
    ))

    result = await pipeline.run(job)

    updated = await store.get(session.id)
    assert result.session_id == session.id
    assert updated.features["tempo"] == 90
    assert updated.features["genres"] == ["jazz"]
    assert updated.features["key"] == "C"
    assert updated.regenerations == 1
    assert updated.status == SessionStatus.COMPLETED
    assert downloader.calls == 0
    assert sms.sent == []


@pytest.mark.asyncio
async def test_regenerate_rejects_other_users_session(tmp_path, store, sms):
    session = await store.create(user_id="u1", transcript="hum")
    pipeline = _pipeline(tmp_path, store, sms)
    job = Job.create(JobType.REGENERATE_SESSION, RegenerationPayload(session_id=session.id, user_id="u2"))

    with pytest.raises(PermanentStageError):
        await pipeline.run(job)


def test_apply_overrides():
    features = {"tempo": 120, "key": "C", "mood": ["neutral"], "genres": ["pop"]}

    merged = apply_overrides(features, {"tempo": 140, "key": "", "mood": "dark", "genre": None})

    assert merged == {"tempo": 140, "key": "C", "mood": ["dark"], "genres": ["pop"]}
    assert features["tempo"] == 120
