"""
Service wiring.

Builds every collaborator from an AppConfig once per application. The
server and the control API reach them through app.state.services; tests
build their own Services with fakes.
"""
from dataclasses import dataclass
from typing import Optional

from logging_setup import get_logger, Component
from generation.backend import FeatureAnalyzer, GenerationBackend
from generation.clients import ChatModelClient, RecordingDownloader, SmsClient, Transcriber
from generation.materializer import FileMaterializer
from generation.notifications import NotificationFanout, RealtimeHub
from generation.pipeline import GenerationPipeline
from generation.queue import JobQueueProcessor
from generation.retry import RetryPolicy
from generation.storage import InMemorySessionStore

from .auth import Authenticator
from .config import AppConfig
from .session import CallSessionManager
from .signature import WebhookSignatureValidator
from .users import InMemoryUserDirectory
from .webhook_handler import CallSessionController


logger = get_logger(Component.WEBHOOK_SERVER)


@dataclass
class Services:
    config: AppConfig
    sessions: CallSessionManager
    users: InMemoryUserDirectory
    authenticator: Authenticator
    signature_validator: WebhookSignatureValidator
    store: InMemorySessionStore
    hub: RealtimeHub
    notifier: NotificationFanout
    queue: JobQueueProcessor
    controller: CallSessionController


def build_services(
    config: AppConfig,
    users: Optional[InMemoryUserDirectory] = None,
    pipeline: Optional[GenerationPipeline] = None,
    sms: Optional[SmsClient] = None,
) -> Services:
    if users is None:
        if config.user_directory_file:
            users = InMemoryUserDirectory.load_yaml(config.user_directory_file)
            logger.info("User directory loaded", users=len(users.list_users()))
        else:
            users = InMemoryUserDirectory()

    store = InMemorySessionStore()
    hub = RealtimeHub()
    if sms is None:
        sms = SmsClient(
            config.twilio_account_sid,
            config.twilio_auth_token,
            config.twilio_phone_number,
            timeout_seconds=config.stage_timeout_seconds,
        )
    notifier = NotificationFanout(hub, sms=sms, download_base_url=config.download_base_url)

    if pipeline is None:
        chat = ChatModelClient(
            config.openai_api_key,
            base_url=config.openai_base_url,
            model=config.openai_model,
            timeout_seconds=config.stage_timeout_seconds,
        ) if config.openai_api_key else None
        pipeline = GenerationPipeline(
            downloader=RecordingDownloader(
                config.uploads_dir,
                account_sid=config.twilio_account_sid,
                auth_token=config.twilio_auth_token,
                timeout_seconds=config.stage_timeout_seconds,
            ),
            transcriber=Transcriber(
                config.openai_api_key,
                base_url=config.openai_base_url,
                model=config.openai_transcription_model,
                timeout_seconds=config.stage_timeout_seconds,
            ),
            analyzer=FeatureAnalyzer(chat, call_timeout=config.stage_timeout_seconds),
            backend=GenerationBackend(chat, stage_timeout=config.stage_timeout_seconds),
            materializer=FileMaterializer(config.generated_dir),
            store=store,
            notifier=notifier,
            audio_min_bytes=config.audio_min_bytes,
            audio_max_bytes=config.audio_max_bytes,
            stage_timeout=config.stage_timeout_seconds,
        )

    queue = JobQueueProcessor(
        pipeline,
        notifier,
        store,
        retry_policy=RetryPolicy.from_seconds(config.job_max_attempts, config.retry_backoff_seconds),
    )
    sessions = CallSessionManager(ttl_seconds=config.call_session_ttl_seconds)
    authenticator = Authenticator(
        users,
        rate_limit_attempts=config.pin_rate_limit_attempts,
        rate_limit_window_seconds=config.pin_rate_limit_window_seconds,
    )
    controller = CallSessionController(
        sessions,
        authenticator,
        queue,
        notifier,
        store,
        public_base_url=config.public_base_url,
        gather_timeout=config.gather_timeout_seconds,
        recording_max_seconds=config.recording_max_seconds,
    )

    return Services(
        config=config,
        sessions=sessions,
        users=users,
        authenticator=authenticator,
        signature_validator=WebhookSignatureValidator(config.twilio_auth_token),
        store=store,
        hub=hub,
        notifier=notifier,
        queue=queue,
        controller=controller,
    )
