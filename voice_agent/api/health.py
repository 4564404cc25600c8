"""Health check endpoint."""
import logging
from fastapi import APIRouter, Depends, Request

from voice_agent.core.dependencies import get_audio_cache, get_session_registry
from voice_agent.services.audio.cache import AudioArtifactCache
from voice_agent.services.call_session.registry import SessionRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
    audio_cache: AudioArtifactCache = Depends(get_audio_cache),
):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    return {
        "status": "healthy",
        "active_calls": len(registry),
        "cached_audio": len(audio_cache),
    }
