"""Synthesized audio retrieval endpoint."""
import logging
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from voice_agent.core.dependencies import get_audio_cache
from voice_agent.services.audio.cache import AudioArtifactCache

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/audio/{artifact_id}")
async def get_audio(
    artifact_id: str,
    audio_cache: AudioArtifactCache = Depends(get_audio_cache),
):
    """Serve a synthesized utterance for Twilio to play."""
    artifact = audio_cache.get(artifact_id)
    if artifact is None:
        logger.warning(f"[AUDIO] Artifact not found or expired - Id: {artifact_id}")
        raise HTTPException(status_code=404, detail="Audio not found")
    return Response(
        content=artifact.payload,
        media_type=artifact.content_type,
        headers={"Cache-Control": "no-store"},
    )
