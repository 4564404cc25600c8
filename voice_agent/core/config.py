"""Application configuration."""
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str
    completion_model: str = "gpt-4o-mini"
    completion_max_tokens: int = 120
    completion_temperature: float = 0.7
    completion_timeout: float = 8.0
    completion_max_attempts: int = 3
    completion_backoff_base: float = 0.4  # seconds, doubled per retry

    # Speech synthesis
    synthesis_provider: Literal["openai", "elevenlabs", "twilio"] = "openai"
    synthesis_timeout: float = 10.0
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: Optional[str] = None
    elevenlabs_model_id: str = "eleven_turbo_v2"

    # Telephony
    transport_mode: Literal["turns", "stream"] = "turns"
    speech_language: str = "en-AU"
    speech_hints: str = ""
    twiml_voice: str = "Polly.Olivia-Neural"
    base_url: Optional[str] = None

    # Agent
    agent_name: str = "Sammy"
    agent_region: str = "Perth"

    # Turn-taking
    transcript_cap: int = 16
    max_turns: int = 32
    confidence_threshold: float = 0.45

    # Sessions and audio artifacts
    session_idle_timeout: float = 30 * 60
    session_sweep_interval: float = 5 * 60
    audio_ttl: float = 5 * 60
    audio_sweep_interval: float = 60

    # Realtime (duplex) mode
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    realtime_voice: str = "alloy"
    realtime_max_output_tokens: int = 1024
    keepalive_interval: float = 15.0

    # Humanizer
    humanizer_enabled: bool = False
    humanizer_mood: str = "neutral"
    humanizer_intensity: float = 0.3

    # Database
    database_url: str = "sqlite+aiosqlite:///./calls.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
