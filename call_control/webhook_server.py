"""
Webhook server.

FastAPI application exposing the telephony webhooks, the control and
dashboard APIs, health checks, the realtime WebSocket and generated file
downloads. Every webhook request's X-Twilio-Signature is verified before
anything else happens (except in development mode).
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from logging_setup import get_logger, Component

from . import twiml
from .config import AppConfig, get_config
from .control_api import api_router, register_error_handlers, router as control_router
from .errors import MessageKey, SignatureError
from .events import call_emitter
from .services import Services, build_services
from .signature import SIGNATURE_HEADER


logger = get_logger(Component.WEBHOOK_SERVER)

XML_MEDIA_TYPE = "application/xml"


def _xml(document: str) -> Response:
    return Response(content=document, media_type=XML_MEDIA_TYPE)


def _signed_url(request: Request, public_base_url: str) -> str:
    """The URL the gateway signed: the public base URL when configured, else the request URL."""
    if not public_base_url:
        return str(request.url)
    url = f"{public_base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verified_form(request: Request, endpoint: str) -> Dict[str, str]:
    """
    Read the form body and verify the webhook signature over URL + body.

    Raises HTTPException(403) on a bad signature; nothing is mutated first.
    """
    services: Services = request.app.state.services
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if services.config.is_development:
        return params

    try:
        services.signature_validator.validate(
            _signed_url(request, services.config.public_base_url),
            params,
            request.headers.get(SIGNATURE_HEADER),
        )
    except SignatureError:
        call_id = params.get("CallSid") or request.query_params.get("callSid") or ""
        call_emitter.signature_rejected(call_id, endpoint)
        logger.warning("Webhook signature rejected", endpoint=endpoint)
        raise HTTPException(status_code=403, detail="invalid_signature")
    return params


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application. Uses the environment configuration when none is given."""
    if services is None:
        config = config or get_config()
        config.validate()
        services = build_services(config)
    config = services.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Call control starting", app_env=config.app_env, sms_enabled=config.sms_enabled)
        yield
        await services.queue.shutdown()
        logger.info("Call control stopped")

    app = FastAPI(title="Hum It Out call control", lifespan=lifespan)
    app.state.services = services
    app.include_router(control_router)
    app.include_router(api_router)
    register_error_handlers(app)
    app.mount("/downloads", StaticFiles(directory=config.generated_dir, check_dir=False), name="downloads")

    @app.post("/twilio/voice")
    async def incoming_call(request: Request):
        """Incoming call: create the CallSession and prompt for a PIN."""
        form = await verified_form(request, "voice")
        try:
            return _xml(services.controller.handle_incoming_call(
                form.get("CallSid", ""),
                form.get("From"),
                form.get("To"),
            ))
        except Exception as e:
            logger.error("Incoming call webhook failed", error=str(e), exception_type=type(e).__name__)
            return _xml(twiml.message_and_hangup(MessageKey.TECHNICAL_ISSUE).to_xml())

    @app.post("/twilio/authenticate")
    async def authenticate(request: Request):
        """PIN digits collected."""
        form = await verified_form(request, "authenticate")
        try:
            return _xml(await services.controller.handle_authenticate(
                form.get("CallSid", ""),
                form.get("Digits"),
                form.get("From"),
            ))
        except Exception as e:
            logger.error("Authenticate webhook failed", error=str(e), exception_type=type(e).__name__)
            return _xml(twiml.message_and_hangup(MessageKey.TECHNICAL_ISSUE).to_xml())

    @app.post("/twilio/recording-complete")
    async def recording_complete(request: Request):
        """Recording finished: enqueue processing and thank the caller."""
        form = await verified_form(request, "recording-complete")
        correlation = dict(request.query_params)
        call_id = form.get("CallSid") or correlation.get("callSid", "")
        try:
            return _xml(services.controller.handle_recording_complete(
                call_id,
                correlation,
                recording_url=form.get("RecordingUrl"),
                recording_sid=form.get("RecordingSid"),
                duration=_parse_int(form.get("RecordingDuration")),
                caller=form.get("From"),
            ))
        except Exception as e:
            logger.error("Recording complete webhook failed", error=str(e), exception_type=type(e).__name__)
            return _xml(twiml.message_and_hangup(MessageKey.RECORDING_ISSUE).to_xml())

    @app.post("/twilio/recording-status")
    async def recording_status(request: Request):
        """Recording status side channel. Always 200."""
        form = await verified_form(request, "recording-status")
        correlation = dict(request.query_params)
        call_id = form.get("CallSid") or correlation.get("callSid", "")
        try:
            await services.controller.handle_recording_status_callback(
                call_id,
                correlation,
                status=form.get("RecordingStatus"),
                recording_sid=form.get("RecordingSid"),
            )
        except Exception as e:
            logger.error("Recording status webhook failed", error=str(e), exception_type=type(e).__name__)
        return _xml(twiml.empty().to_xml())

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "component": "call_control"}

    @app.get("/health/apis")
    async def health_apis():
        """Which external integrations are configured (never their values)."""
        return {
            "status": "ok",
            "twilio": bool(config.twilio_account_sid and config.twilio_auth_token),
            "sms": config.sms_enabled,
            "openai": bool(config.openai_api_key),
            "signature_verification": not config.is_development,
        }

    @app.websocket("/ws/{user_id}")
    async def realtime(websocket: WebSocket, user_id: str):
        """Join the user's channel and forward job events as JSON."""
        await websocket.accept()
        queue = services.hub.subscribe(user_id)
        logger.info("Realtime subscriber joined", user_id=user_id)

        async def _forward():
            while True:
                await websocket.send_json(await queue.get())

        async def _until_disconnect():
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return

        tasks = [asyncio.create_task(_forward()), asyncio.create_task(_until_disconnect())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            services.hub.unsubscribe(user_id, queue)
            logger.info("Realtime subscriber left", user_id=user_id)

    return app
