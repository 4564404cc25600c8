"""Shared test fixtures and configuration."""
import pytest
import os
from typing import Tuple
from unittest.mock import Mock, AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SYNTHESIS_PROVIDER", "openai")
os.environ.setdefault("BASE_URL", "https://agent.example.com")

from voice_agent.main import app
from voice_agent.db.models import Base
from voice_agent.core.dependencies import (
    get_audio_cache,
    get_orchestrator,
    get_session_registry,
)
from voice_agent.core.exceptions import SynthesisError
from voice_agent.services.agent.completion import CompletionAdapter
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.audio.cache import AudioArtifactCache
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.orchestrator import TurnOrchestrator
from voice_agent.services.call_session.registry import SessionRegistry
from voice_agent.services.speech.tts import SpeechSynthesizer


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_SYSTEM_PROMPT = "You are a test agent. Reply in one short sentence."
TEST_GREETING = "Hi, you've reached the test agent. How can I help?"


class FakeClock:
    """Manually advanced clock for expiry and eviction tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSynthesizer(SpeechSynthesizer):
    """Synthesizer that returns predictable bytes, or fails on demand."""

    def __init__(self):
        super().__init__(timeout=1.0)
        self.fail = False
        self.calls = []

    async def _render(self, text: str) -> Tuple[bytes, str]:
        self.calls.append(text)
        if self.fail:
            raise SynthesisError("synthesis unavailable")
        return b"ID3" + text.encode("utf-8"), "audio/mpeg"


def make_completion(content):
    """Build an object shaped like a chat completion response."""
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def test_db(test_db_engine):
    """Create test database session."""
    async_session = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def registry(clock):
    """Fresh session registry on the fake clock."""
    return SessionRegistry(idle_timeout=30 * 60, sweep_interval=5 * 60, clock=clock)


@pytest.fixture
def audio_cache(clock):
    """Fresh audio cache on the fake clock."""
    return AudioArtifactCache(ttl=5 * 60, clock=clock)


@pytest.fixture
def memory():
    """Conversation memory with the default cap."""
    return ConversationMemory(system_prompt=TEST_SYSTEM_PROMPT, cap=16)


@pytest.fixture
def policy():
    """Turn policy with the default thresholds."""
    return TurnPolicy(confidence_threshold=0.45, max_turns=32)


@pytest.fixture
def mock_openai():
    """Mock OpenAI API client."""
    mock_client = Mock()
    mock_client.chat.completions.create = AsyncMock(
        return_value=make_completion("It's sunny and warm in Perth today.")
    )
    return mock_client


@pytest.fixture
def completion_adapter(mock_openai):
    """Completion adapter on the mock client, without backoff delays."""
    return CompletionAdapter(mock_openai, timeout=1.0, max_attempts=3, backoff_base=0)


@pytest.fixture
def synthesizer():
    """Fake speech synthesizer."""
    return FakeSynthesizer()


@pytest.fixture
def orchestrator(registry, memory, completion_adapter, synthesizer, audio_cache, policy):
    """Turn orchestrator wired to fakes, without a call log."""
    return TurnOrchestrator(
        registry=registry,
        memory=memory,
        completion=completion_adapter,
        synthesizer=synthesizer,
        audio_cache=audio_cache,
        policy=policy,
        greeting=TEST_GREETING,
    )


@pytest.fixture
def test_client(orchestrator, registry, audio_cache):
    """Create FastAPI test client with overrides."""
    # The orchestrator fixture has no call log, so no database is needed
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_audio_cache] = lambda: audio_cache

    client = TestClient(app)

    yield client

    # Clear overrides
    app.dependency_overrides.clear()
