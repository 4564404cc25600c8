"""FastAPI dependencies."""
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession

from voice_agent.core.config import settings
from voice_agent.db.database import get_db
from voice_agent.services.agent.completion import CompletionAdapter
from voice_agent.services.agent.humanizer import make_humanizer
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.agent.prompt import get_greeting, get_system_prompt
from voice_agent.services.audio.cache import AudioArtifactCache
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.orchestrator import TurnOrchestrator
from voice_agent.services.call_session.registry import SessionRegistry
from voice_agent.services.persistence.calls import CallPersistenceService
from voice_agent.services.speech.tts import (
    ElevenLabsSpeechSynthesizer,
    OpenAISpeechSynthesizer,
    SpeechSynthesizer,
)
from voice_agent.services.telephony.twiml import TwimlRenderer


@lru_cache
def get_session_registry() -> SessionRegistry:
    """Process-wide session registry."""
    return SessionRegistry(
        idle_timeout=settings.session_idle_timeout,
        sweep_interval=settings.session_sweep_interval,
    )


@lru_cache
def get_audio_cache() -> AudioArtifactCache:
    """Process-wide audio artifact cache."""
    return AudioArtifactCache(
        ttl=settings.audio_ttl,
        sweep_interval=settings.audio_sweep_interval,
    )


@lru_cache
def get_openai_client() -> AsyncOpenAI:
    """Shared OpenAI client. SDK retries are off; the adapters own retry policy."""
    return AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)


def get_conversation_memory() -> ConversationMemory:
    """Get conversation memory for the configured persona."""
    return ConversationMemory(
        system_prompt=get_system_prompt(settings.agent_name, settings.agent_region),
        cap=settings.transcript_cap,
    )


def get_turn_policy() -> TurnPolicy:
    """Get the turn policy from settings."""
    return TurnPolicy(
        confidence_threshold=settings.confidence_threshold,
        max_turns=settings.max_turns,
    )


def get_completion_adapter(
    client: AsyncOpenAI = Depends(get_openai_client),
) -> CompletionAdapter:
    """Get the completion adapter."""
    return CompletionAdapter(
        client,
        model=settings.completion_model,
        max_tokens=settings.completion_max_tokens,
        temperature=settings.completion_temperature,
        timeout=settings.completion_timeout,
        max_attempts=settings.completion_max_attempts,
        backoff_base=settings.completion_backoff_base,
    )


def get_speech_synthesizer(
    client: AsyncOpenAI = Depends(get_openai_client),
) -> Optional[SpeechSynthesizer]:
    """Get the configured synthesizer, or None when Twilio speaks every line."""
    if settings.synthesis_provider == "elevenlabs":
        if not settings.elevenlabs_api_key or not settings.elevenlabs_voice_id:
            raise RuntimeError("ELEVENLABS_API_KEY and ELEVENLABS_VOICE_ID are required for elevenlabs synthesis")
        return ElevenLabsSpeechSynthesizer(
            api_key=settings.elevenlabs_api_key,
            voice_id=settings.elevenlabs_voice_id,
            model_id=settings.elevenlabs_model_id,
            timeout=settings.synthesis_timeout,
        )
    if settings.synthesis_provider == "openai":
        return OpenAISpeechSynthesizer(
            client,
            voice=settings.openai_tts_voice,
            model=settings.openai_tts_model,
            timeout=settings.synthesis_timeout,
        )
    return None


def get_text_shaper() -> Optional[Callable[[str], str]]:
    """Get the humanizer when enabled."""
    if not settings.humanizer_enabled:
        return None
    return make_humanizer(mood=settings.humanizer_mood, intensity=settings.humanizer_intensity)


def get_twiml_renderer() -> TwimlRenderer:
    """Get the TwiML renderer."""
    return TwimlRenderer(
        voice=settings.twiml_voice,
        language=settings.speech_language,
        hints=settings.speech_hints,
    )


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
    audio_cache: AudioArtifactCache = Depends(get_audio_cache),
    memory: ConversationMemory = Depends(get_conversation_memory),
    policy: TurnPolicy = Depends(get_turn_policy),
    completion: CompletionAdapter = Depends(get_completion_adapter),
    synthesizer: Optional[SpeechSynthesizer] = Depends(get_speech_synthesizer),
    text_shaper: Optional[Callable[[str], str]] = Depends(get_text_shaper),
) -> TurnOrchestrator:
    """Get the turn orchestrator for one request."""
    return TurnOrchestrator(
        registry=registry,
        memory=memory,
        completion=completion,
        synthesizer=synthesizer,
        audio_cache=audio_cache,
        policy=policy,
        greeting=get_greeting(settings.agent_name),
        text_shaper=text_shaper,
        call_log=CallPersistenceService(db),
    )
