"""Completion provider adapter."""
import asyncio
import logging
from typing import Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from voice_agent.core.exceptions import UpstreamError
from voice_agent.services.agent.constants import COMPLETION_FALLBACK

logger = logging.getLogger(__name__)


class CompletionAdapter:
    """Gets a short spoken reply from the chat completions API.

    Every attempt is bounded by ``timeout``. Failed attempts are retried with
    exponential backoff; once ``max_attempts`` are exhausted the fixed
    fallback line is returned instead of raising, so the caller always hears
    something in persona.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o-mini",
        max_tokens: int = 120,
        temperature: float = 0.7,
        timeout: float = 8.0,
        max_attempts: int = 3,
        backoff_base: float = 0.4,
        fallback: str = COMPLETION_FALLBACK,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.fallback = fallback

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """Get a reply for the rendered conversation, or the fallback line."""
        last_error: Optional[UpstreamError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                reply = await self._request(messages)
                if attempt > 1:
                    logger.info(f"[COMPLETION] Succeeded on attempt {attempt}")
                return reply
            except UpstreamError as e:
                last_error = e
                logger.warning(
                    f"[COMPLETION] Attempt {attempt}/{self.max_attempts} failed: {e} "
                    f"(cause: {type(e.cause).__name__ if e.cause else 'none'})"
                )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))

        logger.error(f"[COMPLETION] All {self.max_attempts} attempts failed, using fallback line: {last_error}")
        return self.fallback

    async def _request(self, messages: List[Dict[str, str]]) -> str:
        """Run one completion attempt, mapping every failure to UpstreamError."""
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"Completion timed out after {self.timeout}s", cause=e)
        except (openai.APIError, httpx.HTTPError) as e:
            raise UpstreamError(f"Completion request failed: {e}", cause=e)

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise UpstreamError("Completion response was malformed", cause=e)

        reply = " ".join((content or "").split())
        if not reply:
            raise UpstreamError("Completion reply was empty")
        return reply
