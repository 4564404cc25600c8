"""Twilio voice webhook endpoints."""
import logging
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Form, Query, Request, WebSocket
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from voice_agent.core.config import settings
from voice_agent.core.dependencies import (
    get_conversation_memory,
    get_orchestrator,
    get_session_registry,
    get_turn_policy,
    get_twiml_renderer,
)
from voice_agent.db.database import get_db
from voice_agent.services.agent.constants import APOLOGY
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.agent.prompt import get_greeting, get_system_prompt
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.orchestrator import TurnOrchestrator
from voice_agent.services.call_session.registry import SessionRegistry
from voice_agent.services.persistence.calls import CallPersistenceService
from voice_agent.services.streaming.peers import TelephonyPeer, connect_realtime_provider
from voice_agent.services.streaming.relay import StreamingRelay
from voice_agent.services.telephony.twiml import TwimlRenderer

router = APIRouter()
logger = logging.getLogger(__name__)

# Twilio call statuses after which the call is over
TERMINAL_CALL_STATUSES = {"completed", "failed", "busy", "no-answer", "canceled"}


def get_base_url(request: Request) -> str:
    """
    Get the base URL for constructing absolute URLs.

    Uses BASE_URL environment variable if set, otherwise constructs from request.
    """
    if settings.base_url:
        return settings.base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def get_gather_url(base_url: str, call_sid: str) -> str:
    return f"{base_url}/webhooks/voice/gather?CallSid={call_sid}"


def get_stream_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        host = base_url[len("https://"):]
        scheme = "wss"
    else:
        host = base_url.split("://", 1)[-1]
        scheme = "ws"
    return f"{scheme}://{host}/webhooks/voice/media-stream"


def parse_confidence(value: Optional[str]) -> Optional[float]:
    """Parse Twilio's Confidence form field; missing or malformed means unscored."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[GATHER] Ignoring malformed confidence value: {value!r}")
        return None


@router.post("/voice/incoming")
async def handle_incoming_call(
    request: Request,
    CallSid: str = Form(...),
    From: Optional[str] = Form(None),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    renderer: TwimlRenderer = Depends(get_twiml_renderer),
):
    """
    Handle incoming call from Twilio.

    In turns mode this greets the caller and starts gathering speech. In
    stream mode it connects the call to the media-stream websocket.
    """
    logger.info(
        f"[INCOMING CALL] Received incoming call webhook - CallSid: {CallSid}, "
        f"Mode: {settings.transport_mode}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )
    base_url = get_base_url(request)

    if settings.transport_mode == "stream":
        twiml = renderer.render_stream_connect(get_stream_url(base_url), {"caller": From or ""})
        return Response(content=twiml, media_type="application/xml")

    gather_url = get_gather_url(base_url, CallSid)
    try:
        result = await orchestrator.handle_turn(CallSid, caller_id=From)
        twiml = renderer.render_turn(result, gather_url, base_url)
    except Exception as e:
        logger.error(
            f"[INCOMING CALL] Error processing incoming call - CallSid: {CallSid}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        twiml = renderer.render_say(APOLOGY, gather_url)

    logger.info(f"[INCOMING CALL] Responding - CallSid: {CallSid}, TwiML length: {len(twiml)} bytes")
    return Response(content=twiml, media_type="application/xml")


@router.post("/voice/gather")
async def handle_gather(
    request: Request,
    CallSid: str = Query(...),
    SpeechResult: Optional[str] = Form(None),
    Confidence: Optional[str] = Form(None),
    From: Optional[str] = Form(None),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    renderer: TwimlRenderer = Depends(get_twiml_renderer),
):
    """
    Handle gathered speech from Twilio.

    This endpoint is called after Twilio collects user speech, and again via
    Redirect when the caller says nothing.
    """
    confidence = parse_confidence(Confidence)
    logger.info(
        f"[GATHER] Received speech input - CallSid: {CallSid}, "
        f"SpeechResult length: {len(SpeechResult) if SpeechResult else 0}, "
        f"Confidence: {confidence}"
    )
    if SpeechResult:
        logger.debug(
            f"[GATHER] Speech text: '{SpeechResult[:200]}{'...' if len(SpeechResult) > 200 else ''}' - CallSid: {CallSid}"
        )

    base_url = get_base_url(request)
    gather_url = get_gather_url(base_url, CallSid)
    try:
        result = await orchestrator.handle_turn(
            CallSid, speech=SpeechResult, confidence=confidence, caller_id=From
        )
        twiml = renderer.render_turn(result, gather_url, base_url)
    except Exception as e:
        logger.error(
            f"[GATHER] Error processing speech input - CallSid: {CallSid}, "
            f"SpeechResult: '{SpeechResult[:100] if SpeechResult else 'None'}', "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        # Return a graceful spoken response to Twilio
        twiml = renderer.render_say(APOLOGY, gather_url)

    return Response(content=twiml, media_type="application/xml")


@router.post("/voice/status")
async def handle_call_status(
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """
    Handle call status updates from Twilio.

    This endpoint is called when call status changes (completed, failed, etc.).
    """
    logger.info(f"[CALL STATUS] Received status update - CallSid: {CallSid}, CallStatus: {CallStatus}")

    try:
        if CallStatus in TERMINAL_CALL_STATUSES:
            await orchestrator.end_session(CallSid, status=CallStatus)
            logger.info(f"[CALL STATUS] Session ended - CallSid: {CallSid}, Final status: {CallStatus}")
    except Exception as e:
        logger.error(
            f"[CALL STATUS] Error handling call status update - CallSid: {CallSid}, "
            f"CallStatus: {CallStatus}, Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )

    # Always OK so Twilio does not retry
    return Response(content="OK", media_type="text/plain")


@router.websocket("/voice/media-stream")
async def handle_media_stream(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_session_registry),
    memory: ConversationMemory = Depends(get_conversation_memory),
    policy: TurnPolicy = Depends(get_turn_policy),
    db: AsyncSession = Depends(get_db),
):
    """Relay a Twilio media stream to the realtime provider."""
    await websocket.accept()
    logger.info("[MEDIA STREAM] Twilio connected")

    relay = StreamingRelay(
        telephony=TelephonyPeer(websocket),
        connect_provider=partial(
            connect_realtime_provider,
            settings.realtime_url,
            settings.realtime_model,
            settings.openai_api_key,
        ),
        registry=registry,
        memory=memory,
        policy=policy,
        instructions=get_system_prompt(settings.agent_name, settings.agent_region),
        greeting=get_greeting(settings.agent_name),
        voice=settings.realtime_voice,
        max_output_tokens=settings.realtime_max_output_tokens,
        keepalive_interval=settings.keepalive_interval,
        call_log=CallPersistenceService(db),
    )
    await relay.run()
