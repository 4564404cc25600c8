"""Call session models."""
import asyncio
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, PrivateAttr

from voice_agent.services.agent.stages import CallState


class Speaker(str, Enum):
    """Who produced a transcript entry."""

    CALLER = "caller"
    AGENT = "agent"

    def __str__(self) -> str:
        return self.value


class TranscriptEntry(BaseModel):
    """A single utterance in the call transcript."""

    speaker: Speaker
    text: str


class CallSession(BaseModel):
    """State for one active phone call."""

    call_id: str
    caller_id: Optional[str] = None
    transcript: List[TranscriptEntry] = Field(default_factory=list)
    state: CallState = CallState.NEW
    turn_count: int = 0  # agent utterances produced, never decreases
    greeted: bool = False
    consecutive_empty_turns: int = 0
    consecutive_failures: int = 0
    last_activity: float = Field(default_factory=time.monotonic)
    ended: bool = False

    # Serializes turn processing for this call
    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def get_transcript_text(self) -> str:
        """Get retained transcript as text."""
        return "\n".join(f"{entry.speaker}: {entry.text}" for entry in self.transcript)


class TurnAction(str, Enum):
    """What the transport should do after playing a turn's utterances."""

    LISTEN = "listen"  # play, then solicit the next caller utterance
    HANGUP = "hangup"  # play, then terminate the call

    def __str__(self) -> str:
        return self.value


class Utterance(BaseModel):
    """A line the agent speaks, with synthesized audio when available."""

    text: str
    audio_id: Optional[str] = None  # None means the transport speaks the text itself


class TurnResult(BaseModel):
    """Outcome of one turn, rendered by a transport."""

    call_id: str
    state: CallState
    utterances: List[Utterance] = Field(default_factory=list)
    action: TurnAction = TurnAction.LISTEN

    @property
    def ends_call(self) -> bool:
        return self.action == TurnAction.HANGUP
