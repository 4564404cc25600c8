"""Turn policy shared by the discrete-turn orchestrator and the streaming relay."""
import re
from typing import Iterable, List, Optional

from voice_agent.services.agent.constants import END_OF_CALL_KEYWORDS, REPROMPTS


def _keyword_pattern(keywords: Iterable[str]) -> "re.Pattern[str]":
    # Longest first so multi-word phrases win over their prefixes
    alternatives = sorted((re.escape(k.lower()) for k in keywords), key=len, reverse=True)
    return re.compile(r"(?<![\w'])(?:" + "|".join(alternatives) + r")(?![\w'])")


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'").strip()


class TurnPolicy:
    """Decides whether caller speech is usable and whether the call should end."""

    def __init__(
        self,
        confidence_threshold: float = 0.45,
        max_turns: int = 32,
        end_keywords: Optional[List[str]] = None,
        reprompts: Optional[List[str]] = None,
    ):
        self.confidence_threshold = confidence_threshold
        self.max_turns = max_turns
        self.reprompts = reprompts or REPROMPTS
        self._end_pattern = _keyword_pattern(end_keywords or END_OF_CALL_KEYWORDS)

    def is_terminal_intent(self, text: Optional[str]) -> bool:
        """True if the caller said one of the ending keywords."""
        if not text or not text.strip():
            return False
        return self._end_pattern.search(_normalize(text)) is not None

    def is_accepted(self, text: Optional[str], confidence: Optional[float]) -> bool:
        """True if the utterance has text and, when scored, enough confidence."""
        if not text or not text.strip():
            return False
        return confidence is None or confidence >= self.confidence_threshold

    def turn_limit_reached(self, turn_count: int) -> bool:
        return turn_count >= self.max_turns

    def reprompt_for(self, consecutive_empty_turns: int) -> str:
        """Pick the re-prompt for the given miss count (1-based)."""
        index = min(max(consecutive_empty_turns, 1), len(self.reprompts)) - 1
        return self.reprompts[index]
