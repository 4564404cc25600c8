"""Run the voice agent server."""
import uvicorn

from voice_agent.core.config import settings


def main() -> None:
    uvicorn.run(
        "voice_agent.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
