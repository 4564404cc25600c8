"""Process-wide registry of active call sessions."""
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from voice_agent.core.exceptions import SessionNotFound
from voice_agent.services.agent.stages import CallState
from voice_agent.services.call_session.models import CallSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps call ids to sessions and evicts sessions that go idle."""

    def __init__(
        self,
        idle_timeout: float = 30 * 60,
        sweep_interval: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[str, CallSession] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    def get(self, call_id: str) -> Optional[CallSession]:
        """Get an existing session."""
        return self._sessions.get(call_id)

    def get_or_create(self, call_id: str, caller_id: Optional[str] = None) -> CallSession:
        """Get the session for a call, creating a fresh one on first reference."""
        session = self._sessions.get(call_id)
        if session is None:
            session = CallSession(
                call_id=call_id,
                caller_id=caller_id,
                last_activity=self._clock(),
            )
            self._sessions[call_id] = session
            logger.info(f"[REGISTRY] Created session - CallSid: {call_id}, Active: {len(self._sessions)}")
        elif caller_id and not session.caller_id:
            session.caller_id = caller_id
        return session

    def touch(self, call_id: str) -> None:
        """
        Record activity on a session.

        Raises:
            SessionNotFound: the call has no session, e.g. it was evicted
        """
        session = self._sessions.get(call_id)
        if session is None:
            raise SessionNotFound(f"No active session for call {call_id}")
        session.last_activity = self._clock()

    def remove(self, call_id: str) -> Optional[CallSession]:
        """Remove a session and mark it ended."""
        session = self._sessions.pop(call_id, None)
        if session is not None:
            session.ended = True
            session.state = CallState.CLOSED
            logger.info(f"[REGISTRY] Removed session - CallSid: {call_id}, Active: {len(self._sessions)}")
        return session

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Evict every session idle for longer than the idle timeout."""
        if now is None:
            now = self._clock()
        expired = [
            call_id
            for call_id, session in self._sessions.items()
            if now - session.last_activity > self.idle_timeout
        ]
        for call_id in expired:
            self.remove(call_id)
        if expired:
            logger.info(f"[REGISTRY] Evicted {len(expired)} idle session(s): {expired}")
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"[REGISTRY] Sweep failed: {type(e).__name__}: {e}", exc_info=True)

    def start(self) -> None:
        """Start the background idle sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background idle sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
