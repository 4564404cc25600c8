"""Text-to-speech adapters."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from voice_agent.core.exceptions import SynthesisError
from voice_agent.services.audio.cache import AudioArtifact

logger = logging.getLogger(__name__)


class SpeechSynthesizer(ABC):
    """Turns text into an audio artifact with a single bounded attempt."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    @abstractmethod
    async def _render(self, text: str) -> Tuple[bytes, str]:
        """Return audio bytes and their content type."""
        pass

    async def synthesize(self, text: str) -> AudioArtifact:
        """
        Synthesize speech from text.

        Raises:
            SynthesisError: provider failure, empty audio or timeout
        """
        try:
            payload, content_type = await asyncio.wait_for(self._render(text), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SynthesisError(f"TTS synthesis timed out after {self.timeout}s", cause=e)
        except SynthesisError:
            raise
        except (openai.APIError, httpx.HTTPError) as e:
            raise SynthesisError(f"TTS synthesis failed: {e}", cause=e)

        if not payload:
            raise SynthesisError("TTS synthesis returned no audio")
        return AudioArtifact(payload=payload, content_type=content_type)


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """Speech synthesis using OpenAI TTS."""

    def __init__(
        self,
        client: AsyncOpenAI,
        voice: str = "alloy",
        model: str = "tts-1",
        timeout: float = 10.0,
    ):
        super().__init__(timeout=timeout)
        self.client = client
        self.voice = voice
        self.model = model

    async def _render(self, text: str) -> Tuple[bytes, str]:
        response = await self.client.audio.speech.create(
            model=self.model,
            voice=self.voice,
            input=text,
            response_format="mp3",
        )
        return response.content, "audio/mpeg"


class ElevenLabsSpeechSynthesizer(SpeechSynthesizer):
    """Speech synthesis using the ElevenLabs text-to-speech API."""

    API_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        model_id: str = "eleven_turbo_v2",
        stability: float = 0.55,
        similarity_boost: float = 0.8,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.http_client = http_client

    async def _render(self, text: str) -> Tuple[bytes, str]:
        request = {
            "url": self.API_URL.format(voice_id=self.voice_id),
            "headers": {
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
                "xi-api-key": self.api_key,
            },
            "json": {
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {
                    "stability": self.stability,
                    "similarity_boost": self.similarity_boost,
                },
            },
        }
        if self.http_client is not None:
            response = await self.http_client.post(**request)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(**request)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SynthesisError(
                f"ElevenLabs returned HTTP {response.status_code}", cause=e
            )
        content_type = response.headers.get("content-type", "audio/mpeg").split(";")[0]
        return response.content, content_type
