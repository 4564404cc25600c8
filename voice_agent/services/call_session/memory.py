"""Bounded per-call conversation memory."""
from typing import Dict, List, Optional

from voice_agent.core.exceptions import SessionClosedError
from voice_agent.services.call_session.models import CallSession, Speaker, TranscriptEntry

_ROLES = {
    Speaker.CALLER: "user",
    Speaker.AGENT: "assistant",
}


class ConversationMemory:
    """Keeps the most recent transcript entries and renders completion requests."""

    def __init__(self, system_prompt: str, cap: int = 16):
        if cap < 1:
            raise ValueError("transcript cap must be at least 1")
        self.system_prompt = system_prompt
        self.cap = cap

    def append(self, session: CallSession, speaker: Speaker, text: str) -> None:
        """Append an entry, dropping the oldest entries beyond the cap."""
        if session.ended:
            raise SessionClosedError(f"Session {session.call_id} has ended")
        session.transcript.append(TranscriptEntry(speaker=speaker, text=text))
        overflow = len(session.transcript) - self.cap
        if overflow > 0:
            del session.transcript[:overflow]

    def render_for_completion(
        self, session: CallSession, user_text: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Build the role-tagged message list for the completion provider."""
        messages = [{"role": "system", "content": self.system_prompt}]
        for entry in session.transcript:
            messages.append({"role": _ROLES[entry.speaker], "content": entry.text})
        if user_text:
            messages.append({"role": "user", "content": user_text})
        return messages
