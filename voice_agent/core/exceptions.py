"""Error taxonomy for call orchestration."""
from typing import Optional


class VoiceAgentError(Exception):
    """Base class for orchestrator errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UpstreamError(VoiceAgentError):
    """Completion provider unreachable, errored, timed out or replied empty."""


class SynthesisError(VoiceAgentError):
    """Speech synthesis provider unreachable, errored or timed out."""


class TransportError(VoiceAgentError):
    """A peer connection in duplex mode closed or errored."""


class SessionNotFound(VoiceAgentError):
    """Operation referenced an unknown or evicted call id."""


class SessionClosedError(VoiceAgentError):
    """Attempt to mutate a session that has already ended."""
