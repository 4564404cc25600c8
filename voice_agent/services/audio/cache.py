"""Ephemeral store for synthesized audio."""
import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AudioArtifact(BaseModel):
    """A synthesized audio payload awaiting retrieval by the telephony provider."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payload: bytes
    content_type: str = "audio/mpeg"
    created_at: Optional[float] = None
    expires_at: Optional[float] = None


class AudioArtifactCache:
    """Maps artifact ids to audio payloads until they expire."""

    def __init__(
        self,
        ttl: float = 5 * 60,
        sweep_interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._artifacts: Dict[str, AudioArtifact] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._artifacts)

    def store(self, artifact: AudioArtifact) -> AudioArtifact:
        """Store an artifact; its expiry is fixed now."""
        now = self._clock()
        artifact.created_at = now
        artifact.expires_at = now + self.ttl
        self._artifacts[artifact.id] = artifact
        logger.debug(
            f"[AUDIO CACHE] Stored artifact {artifact.id} "
            f"({len(artifact.payload)} bytes, {artifact.content_type})"
        )
        return artifact

    def get(self, artifact_id: str) -> Optional[AudioArtifact]:
        """Get an artifact, or None if it never existed or has expired."""
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            return None
        if self._clock() >= artifact.expires_at:
            self._artifacts.pop(artifact_id, None)
            return None
        return artifact

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop expired artifacts. Returns how many were dropped."""
        if now is None:
            now = self._clock()
        expired = [aid for aid, a in self._artifacts.items() if now >= a.expires_at]
        for artifact_id in expired:
            del self._artifacts[artifact_id]
        if expired:
            logger.debug(f"[AUDIO CACHE] Dropped {len(expired)} expired artifact(s)")
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the background expiry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background expiry sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
