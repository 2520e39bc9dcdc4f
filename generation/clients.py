"""
HTTP clients for the pipeline's external collaborators.

- RecordingDownloader: fetches the gateway's recording as WAV
- Transcriber: OpenAI-compatible speech-to-text (verbose_json segments)
- ChatModelClient: OpenAI-compatible chat completions in JSON mode
- SmsClient: Twilio Messages API through the twilio SDK

Every request carries a timeout so one hung dependency cannot stall the
queue. Errors propagate; the pipeline classifies them.
"""

from __future__ import annotations

import json
import math
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.async_http_client import AsyncTwilioHttpClient
from twilio.rest import Client

from logging_setup import get_logger, Component as LogComponent

from .errors import NotificationError


logger = get_logger(LogComponent.CLIENTS)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class DownloadedAudio:
    path: str
    size: int
    filename: str


@dataclass
class Transcript:
    text: str
    duration: Optional[float] = None
    segments: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.5


def calculate_confidence(segments: Optional[List[Dict[str, Any]]]) -> float:
    """
    Mean of exp(avg_logprob) over segments, clamped to [0.1, 0.95].

    Segments without avg_logprob count as 0.5; no segments at all gives 0.5.
    """
    if not segments:
        return 0.5
    total = 0.0
    for seg in segments:
        logprob = seg.get("avg_logprob")
        total += math.exp(logprob) if logprob is not None else 0.5
    return max(0.1, min(0.95, total / len(segments)))


def _wav_url(recording_url: str) -> str:
    return recording_url if recording_url.endswith(".wav") else f"{recording_url}.wav"


class RecordingDownloader:
    """Downloads gateway recordings into the uploads directory."""

    def __init__(
        self,
        uploads_dir: str,
        account_sid: str = "",
        auth_token: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.uploads_dir = Path(uploads_dir)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def download(self, recording_url: str) -> DownloadedAudio:
        url = _wav_url(recording_url)
        auth = aiohttp.BasicAuth(self.account_sid, self.auth_token) if self.account_sid else None
        start_ts = time.time()

        async with aiohttp.ClientSession(timeout=self.timeout) as s:
            async with s.get(url, auth=auth, raise_for_status=True) as resp:
                data = await resp.read()

        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        filename = f"recording_{int(time.time() * 1000)}_{os.getpid()}.wav"
        path = self.uploads_dir / filename
        path.write_bytes(data)

        logger.info(
            "Recording downloaded",
            size=len(data),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return DownloadedAudio(path=str(path), size=len(data), filename=filename)


class Transcriber:
    """Speech-to-text via an OpenAI-compatible /audio/transcriptions endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        language: str = "en",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.language = language
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def transcribe(self, path: str) -> Transcript:
        form = aiohttp.FormData()
        form.add_field("file", Path(path).read_bytes(), filename="recording.wav", content_type="audio/wav")
        form.add_field("model", self.model)
        form.add_field("language", self.language)
        form.add_field("response_format", "verbose_json")
        form.add_field("temperature", "0")

        start_ts = time.time()
        async with aiohttp.ClientSession(timeout=self.timeout) as s:
            async with s.post(
                f"{self.base_url}/audio/transcriptions",
                data=form,
                headers={"Authorization": f"Bearer {self.api_key}"},
                raise_for_status=True,
            ) as resp:
                body = await resp.json()

        segments = body.get("segments") or []
        transcript = Transcript(
            text=body.get("text", ""),
            duration=body.get("duration"),
            segments=segments,
            confidence=calculate_confidence(segments),
        )
        logger.info(
            "Transcription completed",
            segments=len(segments),
            duration=transcript.duration,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return transcript


class ChatModelClient:
    """Chat completions constrained to a JSON object response."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def complete_json(self, system: Optional[str], prompt: str, temperature: float = 0.7) -> Dict[str, Any]:
        """Return the model's reply parsed as a JSON object. Raises ValueError on malformed output."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        start_ts = time.time()
        async with aiohttp.ClientSession(timeout=self.timeout) as s:
            async with s.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "response_format": {"type": "json_object"},
                    "temperature": temperature,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                raise_for_status=True,
            ) as resp:
                body = await resp.json()

        try:
            content = body["choices"][0]["message"]["content"]
            result = json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed model response: {type(e).__name__}") from e
        if not isinstance(result, dict):
            raise ValueError("Model response is not a JSON object")

        logger.debug("Chat completion received", model=self.model, latency_ms=int((time.time() - start_ts) * 1000))
        return result


class SmsClient:
    """Outbound SMS through the Twilio Messages API, using the SDK's aiohttp transport."""

    SENT = "sent"
    SKIPPED = "skipped"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to: str, body: str) -> str:
        """
        Send one SMS. Returns "skipped" when no sender is configured.

        Raises NotificationError when the gateway rejects the message.
        """
        if not self.enabled:
            logger.info("SMS skipped: no sender number configured")
            return self.SKIPPED

        start_ts = time.time()
        http_client = AsyncTwilioHttpClient(timeout=self.timeout_seconds)
        client = Client(self.account_sid, self.auth_token, http_client=http_client)
        try:
            message = await client.messages.create_async(to=to, from_=self.from_number, body=body)
        except TwilioRestException as e:
            raise NotificationError(f"SMS rejected with status {e.status}") from e
        except (TwilioException, aiohttp.ClientError) as e:
            raise NotificationError(f"SMS request failed: {type(e).__name__}") from e
        finally:
            await http_client.close()

        logger.info_pii("SMS sent", phone=to)
        logger.debug("SMS latency", message_sid=message.sid, latency_ms=int((time.time() - start_ts) * 1000))
        return self.SENT
