"""
Generation pipeline.

One run per job attempt, stages in fixed order:

    download -> validate -> transcribe -> analyze -> persist
             -> generate -> materialize -> save -> notify

The whole run is the unit of retry. Any failure in download..save raises a
StageError and the queue decides whether to try again; analyze degrades to
default features instead of failing; notify failures are logged and dropped
because the results are already saved.

Every external call runs under asyncio.wait_for with the stage timeout, and
a timeout surfaces as a TransientStageError. generate gets one stage timeout
per backend stage plus one, since the backend times out each stage itself.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional, TypeVar

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .backend import FeatureAnalyzer, GenerationBackend
from .clients import DownloadedAudio, RecordingDownloader, Transcriber, Transcript
from .errors import PermanentStageError, StageError, TransientStageError, classify_error
from .jobs import Job, JobType, RecordingPayload, RegenerationPayload
from .materializer import FileMaterializer
from .notifications import NotificationFanout
from .storage import InMemorySessionStore


T = TypeVar("T")

logger = get_logger(LogComponent.PIPELINE)
emitter = EventEmitter(ObsComponent.PIPELINE)


class Stage:
    DOWNLOAD = "download"
    VALIDATE = "validate"
    TRANSCRIBE = "transcribe"
    ANALYZE = "analyze"
    PERSIST = "persist"
    GENERATE = "generate"
    MATERIALIZE = "materialize"
    SAVE = "save"
    NOTIFY = "notify"
    DISPATCH = "dispatch"


# Regeneration option name -> feature field
_OVERRIDES = {
    "tempo": "tempo",
    "key": "key",
    "genre": "genres",
    "mood": "mood",
}


def apply_overrides(features: Dict[str, Any], options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overlay regeneration options (tempo, key, genre, mood) onto stored features."""
    merged = dict(features)
    for option, feature in _OVERRIDES.items():
        value = (options or {}).get(option)
        if value is None or value == "":
            continue
        if feature in ("genres", "mood") and not isinstance(value, list):
            value = [value]
        merged[feature] = value
    return merged


@dataclass
class PipelineResult:
    session_id: str
    files: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    sms_status: Optional[str] = None


class GenerationPipeline:
    """Runs the stages for one job attempt."""

    def __init__(
        self,
        downloader: RecordingDownloader,
        transcriber: Transcriber,
        analyzer: FeatureAnalyzer,
        backend: GenerationBackend,
        materializer: FileMaterializer,
        store: InMemorySessionStore,
        notifier: NotificationFanout,
        audio_min_bytes: int = 1000,
        audio_max_bytes: int = 10 * 1024 * 1024,
        stage_timeout: float = 30.0,
    ):
        self.downloader = downloader
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.backend = backend
        self.materializer = materializer
        self.store = store
        self.notifier = notifier
        self.audio_min_bytes = audio_min_bytes
        self.audio_max_bytes = audio_max_bytes
        self.stage_timeout = stage_timeout

    async def run(self, job: Job) -> PipelineResult:
        if job.type == JobType.PROCESS_RECORDING:
            return await self.process_recording(job)
        if job.type == JobType.REGENERATE_SESSION:
            return await self.regenerate_session(job)
        raise PermanentStageError(Stage.DISPATCH, f"unknown job type {job.type}")

    async def _stage(self, job: Job, stage: str, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run one stage under the stage timeout, mapping failures to StageError."""
        correlation_id = job.call_id or job.session_id
        emitter.emit("pipeline.stage_started", job.id, correlation_id=correlation_id, stage=stage, attempt=job.attempts)
        try:
            result = await asyncio.wait_for(awaitable, timeout=timeout or self.stage_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_error(e, stage)
            logger.with_job(job.id).warning(
                "Stage failed",
                stage=stage,
                error=error.message,
                retryable=error.retryable,
            )
            raise error from e
        emitter.emit("pipeline.stage_completed", job.id, correlation_id=correlation_id, stage=stage)
        return result

    def _degraded(self, job: Job, stage: str, detail: Any = None) -> None:
        emitter.emit(
            "pipeline.stage_degraded",
            job.id,
            severity=Severity.WARN,
            correlation_id=job.call_id or job.session_id,
            stage=stage,
            detail=detail,
        )

    async def _validate(self, audio: DownloadedAudio) -> None:
        if audio.size > self.audio_max_bytes:
            raise PermanentStageError(Stage.VALIDATE, "audio file too large")
        if audio.size < self.audio_min_bytes:
            raise PermanentStageError(Stage.VALIDATE, "audio file too small or corrupted")
        if not os.access(audio.path, os.R_OK):
            raise TransientStageError(Stage.VALIDATE, "audio file is not accessible")

    async def _fetch_transcript(self, job: Job, recording_url: str) -> tuple[Transcript, DownloadedAudio]:
        audio = await self._stage(job, Stage.DOWNLOAD, self.downloader.download(recording_url))
        try:
            await self._stage(job, Stage.VALIDATE, self._validate(audio))
            transcript = await self._stage(job, Stage.TRANSCRIBE, self.transcriber.transcribe(audio.path))
        except BaseException:
            await self.cleanup(audio.path)
            raise
        return transcript, audio

    async def _analyze(self, job: Job, transcript: Transcript) -> Dict[str, Any]:
        try:
            features, degraded = await self._stage(job, Stage.ANALYZE, self.analyzer.analyze(transcript))
        except StageError as e:
            # Soft dependency: degrade like any other analysis failure
            features, degraded = await FeatureAnalyzer(None).analyze(transcript)
            degraded = True
            logger.with_job(job.id).warning("Analysis stage failed, using defaults", error=e.message)
        if degraded:
            self._degraded(job, Stage.ANALYZE)
        return features

    def _generate_budget(self) -> float:
        # Each chain stage times out on its own; this only bounds the whole chain
        return self.stage_timeout * (len(self.backend.stages) + 1)

    async def _generate(self, job: Job, features: Dict[str, Any], transcript: Transcript) -> Dict[str, Any]:
        description = await self._stage(
            job,
            Stage.GENERATE,
            self.backend.generate(features, transcript),
            timeout=self._generate_budget(),
        )
        for stage in description.get("degradedStages", []):
            self._degraded(job, Stage.GENERATE, detail=stage)
        return description

    async def process_recording(self, job: Job) -> PipelineResult:
        payload = job.payload
        if not isinstance(payload, RecordingPayload):
            raise PermanentStageError(Stage.DISPATCH, "process_recording job without a recording payload")
        log = logger.with_job(job.id).with_call(payload.call_id)
        log.info("Processing recording", attempt=job.attempts, duration=payload.duration)

        transcript, audio = await self._fetch_transcript(job, payload.recording_url)
        try:
            features = await self._analyze(job, transcript)

            # A retried job reuses the record created by its earlier attempt
            if job.session_id and await self.store.get(job.session_id):
                await self._stage(job, Stage.PERSIST, self._reuse_session(job.session_id, features, transcript))
            else:
                session = await self._stage(job, Stage.PERSIST, self.store.create(
                    user_id=payload.user_id,
                    call_id=payload.call_id,
                    original_audio_url=payload.recording_url,
                    transcript=transcript.text,
                    audio_duration=transcript.duration,
                    features=features,
                ))
                job.session_id = session.id

            description = await self._generate(job, features, transcript)
            files = await self._stage(job, Stage.MATERIALIZE, self.materializer.materialize(job.session_id, description))
            await self._stage(job, Stage.SAVE, self.store.save_results(job.session_id, files, generation=description))
        finally:
            await self.cleanup(audio.path)

        sms_status = await self._notify(job, payload.phone_number, files)
        log.info("Recording processed", session_id=job.session_id, source=description.get("source"))
        return PipelineResult(session_id=job.session_id, files=files, source=description.get("source"), sms_status=sms_status)

    async def _reuse_session(self, session_id: str, features: Dict[str, Any], transcript: Transcript) -> None:
        await self.store.mark_processing(session_id, features=features)
        await self.store.update_transcript(session_id, transcript.text, transcript.duration)

    async def regenerate_session(self, job: Job) -> PipelineResult:
        payload = job.payload
        if not isinstance(payload, RegenerationPayload):
            raise PermanentStageError(Stage.DISPATCH, "regenerate_session job without a regeneration payload")
        log = logger.with_job(job.id)
        log.info("Regenerating session", session_id=payload.session_id, options=payload.options)

        session = await self._stage(job, Stage.PERSIST, self.store.get(payload.session_id))
        if session is None or session.user_id != payload.user_id:
            raise PermanentStageError(Stage.PERSIST, "session not found")

        if session.transcript is not None:
            transcript = Transcript(text=session.transcript, duration=session.audio_duration)
        else:
            audio_url = payload.original_audio_url or session.original_audio_url
            if not audio_url:
                raise PermanentStageError(Stage.DOWNLOAD, "no transcript or original audio to regenerate from")
            transcript, audio = await self._fetch_transcript(job, audio_url)
            await self.cleanup(audio.path)
            await self._stage(job, Stage.PERSIST, self.store.update_transcript(session.id, transcript.text, transcript.duration))

        features = apply_overrides(session.features, payload.options)
        await self._stage(job, Stage.PERSIST, self.store.mark_processing(session.id, features=features))

        description = await self._generate(job, features, transcript)
        files = await self._stage(job, Stage.MATERIALIZE, self.materializer.materialize(session.id, description))
        await self._stage(job, Stage.SAVE, self.store.save_results(session.id, files, generation=description, regenerated=True))

        log.info("Session regenerated", session_id=session.id, source=description.get("source"))
        return PipelineResult(session_id=session.id, files=files, source=description.get("source"))

    async def _notify(self, job: Job, phone: Optional[str], files: Dict[str, Any]) -> Optional[str]:
        """Best-effort SMS; failures never change the job outcome."""
        try:
            return await asyncio.wait_for(
                self.notifier.send_download_links(phone, job.session_id, files),
                timeout=self.stage_timeout,
            )
        except Exception as e:
            logger.with_job(job.id).error("Download link SMS failed", error=str(e), error_type=type(e).__name__)
            self._degraded(job, Stage.NOTIFY, detail=type(e).__name__)
            return "failed"

    async def cleanup(self, path: Optional[str]) -> None:
        if not path:
            return
        try:
            await asyncio.to_thread(os.remove, path)
            logger.debug("Temp file removed", path=path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove temp file", path=path, error=str(e))
