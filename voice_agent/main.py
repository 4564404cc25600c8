"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from voice_agent.core.config import settings
from voice_agent.core.dependencies import get_audio_cache, get_session_registry
from voice_agent.core.logging import setup_logging
from voice_agent.db.database import init_db
from voice_agent.api import audio, health
from voice_agent.api.webhooks import voice as voice_webhooks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    registry = get_session_registry()
    audio_cache = get_audio_cache()
    registry.start()
    audio_cache.start()
    yield
    # Shutdown
    await registry.stop()
    await audio_cache.stop()


app = FastAPI(
    title="AI Voice Agent",
    description="Phone voice agent with turn-based and streaming call handling",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(audio.router, tags=["audio"])
app.include_router(voice_webhooks.router, prefix="/webhooks", tags=["webhooks"])


@app.get("/")
async def root():
    """Describe the service."""
    return {
        "message": f"{settings.agent_name} voice agent is running",
        "version": "0.1.0",
        "transport_mode": settings.transport_mode,
        "incoming_call_webhook": "/webhooks/voice/incoming",
    }
