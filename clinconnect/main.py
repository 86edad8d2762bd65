"""
FastAPI server for the ClinConnect Twilio voice bridge.

This module builds the FastAPI application that Twilio talks to:
- turn-based voice webhooks answered with TwiML,
- a streaming-mode webhook that connects the call to a media stream socket,
- the media stream socket itself,
- call-status callbacks that discard finished calls,
- generated speech served back to Twilio, and a small clinical-trials API.

Every collaborator (registry, LLM clients, trial data, TTS) is built once in
``create_app`` and stored on ``app.state.services``; nothing is a module-level
singleton apart from the default ``app`` used by uvicorn.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Form, HTTPException, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response
from openai import AsyncOpenAI

from clinconnect.agents.catalog import entry_agent_for
from clinconnect.agents.supervisor import DelegationProtocol, SupervisorAgent
from clinconnect.bot.realtime_api import RealtimeSessionFactory
from clinconnect.config.constants import (
    AUDIO_PATH_PREFIX,
    AUDIO_STREAM_PATH,
    CALL_STATUS_PATH,
    VOICE_WEBHOOK_PATH,
    VOICE_WEBHOOK_STREAM_PATH,
)
from clinconnect.config.logging_config import configure_logging
from clinconnect.config.settings import Settings
from clinconnect.handlers.turn_handler import TurnHandler
from clinconnect.handlers.webhook_handlers import (
    build_apology_twiml,
    build_stream_twiml,
    handle_call_status,
    handle_voice_turn,
    stream_url_for,
)
from clinconnect.models.call_session import CallSessionRegistry, run_periodic_sweep
from clinconnect.services.audio_cache import AudioCache
from clinconnect.services.clinical_trials import TrialDataSource, create_trial_data_source
from clinconnect.services.llm_client import ChatCompletionClient
from clinconnect.services.speech import SpeechService
from clinconnect.websocket_manager import WebSocketManager

# Configure logging
logger = configure_logging()

TWIML_MEDIA_TYPE = "application/xml"

# WebSocket paths the server is willing to upgrade
WEBSOCKET_PATHS = frozenset({AUDIO_STREAM_PATH})


@dataclass
class AppServices:
    """Everything the routes need, built once per application."""

    settings: Settings
    registry: CallSessionRegistry
    turn_handler: TurnHandler
    trials: TrialDataSource
    audio_cache: AudioCache
    speech: SpeechService
    session_factory: RealtimeSessionFactory
    websocket_manager: WebSocketManager
    openai_client: Optional[AsyncOpenAI] = None


def build_services(
    settings: Settings,
    openai_client: Optional[AsyncOpenAI] = None,
    trials: Optional[TrialDataSource] = None,
    session_factory: Optional[RealtimeSessionFactory] = None,
) -> AppServices:
    """
    Wire the application's collaborators together.

    Args:
        settings: Runtime configuration
        openai_client: Client to use instead of one built from the API key
        trials: Trial data source to use instead of the configured one
        session_factory: Realtime session factory to use instead of the default
    """
    if openai_client is None and settings.openai_api_key:
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
    if openai_client is None:
        logger.warning("OPENAI_API_KEY not set; every model call will answer with an apology")

    registry = CallSessionRegistry(default_agent=entry_agent_for(settings.agent_scenario))
    trials = trials or create_trial_data_source(settings.trial_data_source)

    chat_llm = ChatCompletionClient(openai_client, settings.chat_model, timeout=settings.llm_timeout_seconds)
    supervisor_llm = ChatCompletionClient(
        openai_client, settings.supervisor_model, timeout=settings.llm_timeout_seconds
    )
    delegation = DelegationProtocol(chat_llm, SupervisorAgent(supervisor_llm, registry))
    turn_handler = TurnHandler(chat_llm, trials=trials, delegation=delegation)

    audio_cache = AudioCache()
    speech = SpeechService(openai_client, audio_cache, voice=settings.tts_voice)
    session_factory = session_factory or RealtimeSessionFactory(
        settings.openai_api_key, settings.realtime_model, settings.realtime_voice
    )
    websocket_manager = WebSocketManager(registry, session_factory, settings.stream_buffer_frames)

    return AppServices(
        settings=settings,
        registry=registry,
        turn_handler=turn_handler,
        trials=trials,
        audio_cache=audio_cache,
        speech=speech,
        session_factory=session_factory,
        websocket_manager=websocket_manager,
        openai_client=openai_client,
    )


class WebSocketPathGuard:
    """
    ASGI middleware refusing WebSocket upgrades on unknown paths.

    The connection is closed before any handshake response, so the peer never
    gets an open socket.
    """

    def __init__(self, app, allowed_paths=WEBSOCKET_PATHS):
        self.app = app
        self.allowed_paths = frozenset(allowed_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "websocket" and scope["path"] not in self.allowed_paths:
            logger.warning(f"Rejected WebSocket upgrade on unknown path {scope['path']}")
            await receive()
            await send({"type": "websocket.close", "code": 1008})
            return
        await self.app(scope, receive, send)


def _public_base_url(request: Request, settings: Settings) -> str:
    return (settings.public_base_url or str(request.base_url)).rstrip("/")


def create_app(
    settings: Optional[Settings] = None,
    openai_client: Optional[AsyncOpenAI] = None,
    trials: Optional[TrialDataSource] = None,
    session_factory: Optional[RealtimeSessionFactory] = None,
) -> FastAPI:
    """Create the FastAPI application and its services."""
    settings = settings or Settings.from_env()
    services = build_services(settings, openai_client, trials, session_factory)
    owns_openai_client = openai_client is None and services.openai_client is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(
            run_periodic_sweep(
                services.registry,
                settings.session_sweep_interval_seconds,
                settings.session_staleness_seconds,
            )
        )
        logger.info(f"ClinConnect started (scenario={settings.agent_scenario})")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await services.trials.aclose()
            await services.session_factory.aclose()
            if owns_openai_client:
                await services.openai_client.close()
            logger.info("ClinConnect stopped")

    app = FastAPI(
        title="ClinConnect Voice Bridge",
        description="Twilio phone calls bridged to OpenAI agents for clinical-trial navigation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.get("/")
    async def root():
        """Basic information about the service and its endpoints."""
        return {
            "name": "ClinConnect Voice Bridge",
            "description": "Twilio phone calls bridged to OpenAI agents",
            "version": "1.0.0",
            "scenario": settings.agent_scenario,
            "endpoints": {
                VOICE_WEBHOOK_PATH: "Turn-based Twilio voice webhook",
                VOICE_WEBHOOK_STREAM_PATH: "Streaming-mode Twilio voice webhook",
                CALL_STATUS_PATH: "Twilio call status callback",
                AUDIO_STREAM_PATH: "Twilio Media Streams WebSocket",
                "/api/clinical-trials": "Clinical trial search and details",
                "/health": "Health check endpoint",
            },
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring system status."""
        return {
            "status": "healthy",
            "openai_api_key_configured": bool(settings.openai_api_key),
            "active_calls": len(services.registry),
            "active_streams": len(services.websocket_manager.active_bridges),
            "cached_audio": len(services.audio_cache),
        }

    @app.post(VOICE_WEBHOOK_PATH)
    async def voice_webhook(
        request: Request,
        CallSid: Optional[str] = Form(None),
        SpeechResult: Optional[str] = Form(None),
        AccountSid: Optional[str] = Form(None),
    ):
        """Turn-based mode: one request per caller utterance, answered with TwiML."""
        base_url = _public_base_url(request, settings)
        action_url = base_url + VOICE_WEBHOOK_PATH
        try:
            if not CallSid:
                raise ValueError("CallSid is required")
            twiml = await handle_voice_turn(
                CallSid,
                SpeechResult,
                services.registry,
                services.turn_handler,
                action_url,
                speech=services.speech if settings.use_tts_audio else None,
                base_url=base_url,
            )
        except Exception as e:
            logger.error(f"Voice webhook failed for call {CallSid} (account {AccountSid}): {e}", exc_info=True)
            twiml = build_apology_twiml(action_url if CallSid else None)
        return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)

    @app.post(VOICE_WEBHOOK_STREAM_PATH)
    async def voice_webhook_stream(request: Request, CallSid: Optional[str] = Form(None)):
        """Streaming mode: connect the call to the media stream socket."""
        try:
            if CallSid:
                services.registry.get_or_create(CallSid)
            twiml = build_stream_twiml(stream_url_for(_public_base_url(request, settings)))
        except Exception as e:
            logger.error(f"Streaming webhook failed for call {CallSid}: {e}", exc_info=True)
            twiml = build_apology_twiml()
        return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)

    @app.post(CALL_STATUS_PATH)
    async def call_status(
        CallSid: Optional[str] = Form(None),
        CallStatus: Optional[str] = Form(None),
        StreamStatus: Optional[str] = Form(None),
    ):
        """Call lifecycle callback; terminal statuses discard the session."""
        try:
            handle_call_status(services.registry, CallSid, CallStatus, StreamStatus)
        except Exception as e:
            logger.error(f"Call status handling failed for {CallSid}: {e}", exc_info=True)
        return PlainTextResponse("OK")

    @app.get(AUDIO_PATH_PREFIX + "/{audio_id}")
    async def generated_audio(audio_id: str):
        """Serve generated speech for <Play>."""
        audio = services.audio_cache.get(audio_id)
        if audio is None:
            raise HTTPException(status_code=404, detail="Audio not found")
        return Response(content=audio, media_type="audio/mpeg")

    @app.get("/api/clinical-trials")
    async def clinical_trials(
        action: str = "search",
        condition: Optional[str] = None,
        location: Optional[str] = None,
        phase: Optional[str] = None,
        status: str = "recruiting",
        trialId: Optional[str] = None,
    ):
        """Search trials or fetch one trial's details."""
        if action == "search":
            result = await services.trials.search(condition, location, phase, status)
            return result.model_dump()
        if action == "details":
            if not trialId:
                raise HTTPException(status_code=400, detail="trialId is required")
            trial = await services.trials.detail(trialId)
            if trial is None:
                raise HTTPException(status_code=404, detail="Trial not found")
            return trial.model_dump()
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")

    @app.websocket(AUDIO_STREAM_PATH)
    async def audio_stream(websocket: WebSocket):
        """Twilio Media Streams socket for the streaming mode."""
        await services.websocket_manager.handle_websocket(websocket)

    app.add_middleware(WebSocketPathGuard)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        websocket_ping_interval=5,  # More frequent pings to keep connections alive
        websocket_max_size=16777216,  # 16MB - large enough for audio chunks
        websocket_ping_timeout=20,  # Timeout for pings to detect dead connections
        http="h11",
    )
