"""Call state enumerations."""
from enum import Enum


class CallState(str, Enum):
    """Turn-taking states for a discrete-turn call."""

    NEW = "new"  # No contact handled yet
    GREETING = "greeting"  # Producing the opening line
    LISTENING = "listening"  # Waiting for the caller
    THINKING = "thinking"  # Waiting on the completion provider
    SPEAKING = "speaking"  # Synthesizing and handing audio to the transport
    ENDING = "ending"  # Producing the closing line
    CLOSED = "closed"  # Terminal

    def __str__(self) -> str:
        """Return the string value of the state."""
        return self.value


class RelayState(str, Enum):
    """Connection states for a duplex streaming relay."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value
