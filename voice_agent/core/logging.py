"""Logging configuration."""
import logging
import sys
from typing import Optional

from voice_agent.core.config import settings

# Chatty libraries that only matter when something goes wrong
QUIET_LOGGERS = ("httpx", "openai", "websockets", "aiosqlite")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure application logging for the call handlers."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
