"""Optional text shaping that makes replies sound less scripted.

This is a pure post-processing stage. It never runs inside the turn-taking
logic itself; the orchestrator receives it as an optional text shaper.
"""
import random
from typing import Callable, Dict, List, Optional

FILLERS: Dict[str, List[str]] = {
    "neutral": ["Mm,", "Right,", "Okay,", "Yeah,"],
    "warm": ["Aw,", "Oh nice,", "Yeah,", "Mm,"],
    "upbeat": ["Oh,", "Too easy,", "Yeah,", "Right,"],
    "calm": ["Mm,", "Okay,", "Sure,"],
}

SOFT_ENDINGS = [", yeah?", ", mate."]


def _lower_first(text: str) -> str:
    first_word = text.split()[0]
    if first_word == "I" or first_word.startswith("I'"):
        return text
    return text[0].lower() + text[1:]


def humanize(
    text: str,
    mood: str = "neutral",
    intensity: float = 0.3,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Lightly add spoken-style fillers to a reply.

    Args:
        text: Reply to shape
        mood: Key into FILLERS; unknown moods fall back to neutral
        intensity: 0..1 probability of each embellishment; 0 disables
        rng: Random source, injected so results are reproducible

    Returns:
        Shaped text
    """
    text = text.strip()
    if not text or intensity <= 0:
        return text
    if rng is None:
        rng = random.Random()

    fillers = FILLERS.get(mood, FILLERS["neutral"])
    shaped = text

    starts_with_filler = any(text.lower().startswith(f.lower().rstrip(",")) for f in fillers)
    if not starts_with_filler and rng.random() < intensity:
        filler = rng.choice(fillers)
        shaped = f"{filler} {_lower_first(shaped)}"

    # Only soften plain statements, never questions
    if shaped.endswith(".") and rng.random() < intensity / 2:
        shaped = shaped[:-1] + rng.choice(SOFT_ENDINGS)

    return shaped


def make_humanizer(
    mood: str = "neutral",
    intensity: float = 0.3,
    rng: Optional[random.Random] = None,
) -> Callable[[str], str]:
    """Bind mood, intensity and a random source into a text shaper."""
    source = rng or random.Random()

    def _shape(text: str) -> str:
        return humanize(text, mood=mood, intensity=intensity, rng=source)

    return _shape
