"""Unit tests for the discrete-turn orchestrator."""
import asyncio
from unittest.mock import Mock, AsyncMock

import pytest

from voice_agent.services.agent.constants import (
    APOLOGY,
    APOLOGY_GOODBYE,
    CLOSING_LINE,
    COMPLETION_FALLBACK,
    REPROMPTS,
    TURN_LIMIT_CLOSING_LINE,
)
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.agent.stages import CallState
from voice_agent.services.call_session.models import Speaker, TurnAction
from voice_agent.services.call_session.orchestrator import TurnOrchestrator
from voice_agent.services.persistence.calls import CallPersistenceService

GREETING = "Hi, you've reached the test agent. How can I help?"


class TestConversationFlow:
    """Test a call from greeting to goodbye."""

    @pytest.mark.asyncio
    async def test_first_turn_greets(self, orchestrator, registry, audio_cache, synthesizer):
        """A new call without speech gets the greeting, with audio."""
        result = await orchestrator.handle_turn("CA300", caller_id="+61400000000")

        session = registry.get("CA300")
        assert result.action == TurnAction.LISTEN
        assert result.state == CallState.GREETING
        assert session.state == CallState.LISTENING
        assert [u.text for u in result.utterances] == [GREETING]
        assert session.turn_count == 1
        assert session.greeted is True
        assert [(e.speaker, e.text) for e in session.transcript] == [(Speaker.AGENT, GREETING)]

        audio_id = result.utterances[0].audio_id
        assert audio_id is not None
        assert audio_cache.get(audio_id).payload == b"ID3" + GREETING.encode("utf-8")
        assert synthesizer.calls == [GREETING]

    @pytest.mark.asyncio
    async def test_caller_question_gets_answer(self, orchestrator, registry, mock_openai):
        """An accepted utterance is answered from the completion provider."""
        await orchestrator.handle_turn("CA301")

        result = await orchestrator.handle_turn("CA301", "what's the weather", 0.9)

        session = registry.get("CA301")
        assert [u.text for u in result.utterances] == ["It's sunny and warm in Perth today."]
        assert len(session.transcript) == 3
        assert session.transcript[1].speaker == Speaker.CALLER
        assert session.transcript[1].text == "what's the weather"
        assert session.turn_count == 2

        # The completion sees the prior transcript and the new caller line
        messages = mock_openai.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "assistant", "content": GREETING}
        assert messages[-1] == {"role": "user", "content": "what's the weather"}

    @pytest.mark.asyncio
    async def test_goodbye_closes_call(self, orchestrator, registry, mock_openai):
        """Terminal intent speaks the closing line, hangs up and removes the session."""
        await orchestrator.handle_turn("CA302")
        await orchestrator.handle_turn("CA302", "what's the weather", 0.9)
        session = registry.get("CA302")

        result = await orchestrator.handle_turn("CA302", "bye", 0.95)

        assert result.action == TurnAction.HANGUP
        assert result.state == CallState.CLOSED
        assert [u.text for u in result.utterances] == [CLOSING_LINE]
        assert session.ended is True
        assert "CA302" not in registry
        assert mock_openai.chat.completions.create.await_count == 1

        # Further events for the same id start a fresh session
        await orchestrator.handle_turn("CA302")
        fresh = registry.get("CA302")
        assert fresh is not session
        assert fresh.turn_count == 1

    @pytest.mark.asyncio
    async def test_goodbye_ignores_confidence(self, orchestrator, registry):
        """Terminal intent ends the call even at low confidence."""
        await orchestrator.handle_turn("CA303")

        result = await orchestrator.handle_turn("CA303", "okay bye", 0.1)

        assert result.ends_call is True

    @pytest.mark.asyncio
    async def test_first_contact_with_speech_skips_greeting(self, orchestrator, registry):
        """Speech on first contact is answered directly."""
        result = await orchestrator.handle_turn("CA304", "is anyone there", 0.8)

        session = registry.get("CA304")
        assert result.utterances[0].text == "It's sunny and warm in Perth today."
        assert session.greeted is True
        assert session.turn_count == 1


class TestRepromptsAndLimits:
    """Test handling of missing speech and the turn ceiling."""

    @pytest.mark.asyncio
    async def test_escalating_reprompts(self, orchestrator, registry, mock_openai):
        """Three misses give three different re-prompts and keep listening."""
        await orchestrator.handle_turn("CA310")

        lines = []
        for speech, confidence in [("", None), ("mumble", 0.2), (None, None)]:
            result = await orchestrator.handle_turn("CA310", speech, confidence)
            assert result.action == TurnAction.LISTEN
            lines.append(result.utterances[0].text)

        session = registry.get("CA310")
        assert lines == REPROMPTS
        assert len(set(lines)) == 3
        assert session.consecutive_empty_turns == 3
        assert mock_openai.chat.completions.create.await_count == 0

        fourth = await orchestrator.handle_turn("CA310", "", None)
        assert fourth.action == TurnAction.LISTEN
        assert fourth.utterances[0].text == REPROMPTS[-1]

    @pytest.mark.asyncio
    async def test_accepted_speech_resets_miss_count(self, orchestrator, registry):
        await orchestrator.handle_turn("CA311")
        await orchestrator.handle_turn("CA311", "", None)

        await orchestrator.handle_turn("CA311", "tell me a joke", 0.9)

        assert registry.get("CA311").consecutive_empty_turns == 0

    @pytest.mark.asyncio
    async def test_turn_limit_ends_call(
        self, registry, memory, completion_adapter, synthesizer, audio_cache
    ):
        """Reaching the turn ceiling speaks the limit line and hangs up."""
        orchestrator = TurnOrchestrator(
            registry=registry,
            memory=memory,
            completion=completion_adapter,
            synthesizer=synthesizer,
            audio_cache=audio_cache,
            policy=TurnPolicy(max_turns=3),
            greeting=GREETING,
        )
        await orchestrator.handle_turn("CA312")
        await orchestrator.handle_turn("CA312", "one", 0.9)
        await orchestrator.handle_turn("CA312", "two", 0.9)

        result = await orchestrator.handle_turn("CA312", "three", 0.9)

        assert result.ends_call is True
        assert result.utterances[0].text == TURN_LIMIT_CLOSING_LINE
        assert "CA312" not in registry


class TestFailureHandling:
    """Test degraded providers and unexpected errors."""

    @pytest.mark.asyncio
    async def test_synthesis_failure_falls_back_to_text(self, orchestrator, registry, synthesizer):
        """Failed synthesis still produces the utterance, without audio."""
        synthesizer.fail = True

        result = await orchestrator.handle_turn("CA320")

        assert result.utterances[0].text == GREETING
        assert result.utterances[0].audio_id is None
        assert registry.get("CA320").turn_count == 1

    @pytest.mark.asyncio
    async def test_completion_outage_uses_fallback_line(self, orchestrator, mock_openai):
        mock_openai.chat.completions.create.side_effect = asyncio.TimeoutError()
        await orchestrator.handle_turn("CA321")

        result = await orchestrator.handle_turn("CA321", "hello?", 0.9)

        assert result.action == TurnAction.LISTEN
        assert result.utterances[0].text == COMPLETION_FALLBACK

    @pytest.mark.asyncio
    async def test_unexpected_errors_apologize_then_hang_up(self, orchestrator, registry):
        """One unexpected failure apologizes; the second in a row ends the call."""
        await orchestrator.handle_turn("CA322")
        orchestrator.completion = Mock(complete=AsyncMock(side_effect=RuntimeError("boom")))

        first = await orchestrator.handle_turn("CA322", "hello", 0.9)

        assert first.action == TurnAction.LISTEN
        assert first.utterances[0].text == APOLOGY
        assert registry.get("CA322").consecutive_failures == 1

        second = await orchestrator.handle_turn("CA322", "hello again", 0.9)

        assert second.action == TurnAction.HANGUP
        assert second.utterances[0].text == APOLOGY_GOODBYE
        assert "CA322" not in registry

    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialized(self, orchestrator, registry, mock_openai):
        """Overlapping turns for one call never run completions at the same time."""
        active = 0
        peak = 0

        async def slow_create(**kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return Mock(choices=[Mock(message=Mock(content="Sure."))])

        mock_openai.chat.completions.create = AsyncMock(side_effect=slow_create)
        await orchestrator.handle_turn("CA323")

        await asyncio.gather(
            orchestrator.handle_turn("CA323", "first", 0.9),
            orchestrator.handle_turn("CA323", "second", 0.9),
        )

        assert peak == 1
        assert registry.get("CA323").turn_count == 3


class TestCallLog:
    """Test that calls are recorded in the database."""

    @pytest.mark.asyncio
    async def test_call_recorded_from_start_to_finish(
        self, registry, memory, completion_adapter, synthesizer, audio_cache, policy, test_db
    ):
        call_log = CallPersistenceService(test_db)
        orchestrator = TurnOrchestrator(
            registry=registry,
            memory=memory,
            completion=completion_adapter,
            synthesizer=synthesizer,
            audio_cache=audio_cache,
            policy=policy,
            greeting=GREETING,
            call_log=call_log,
        )

        await orchestrator.handle_turn("CA330", caller_id="+61400000000")
        call = await call_log.get_call_by_sid("CA330")
        assert call.status == "in_progress"
        assert call.caller_id == "+61400000000"

        await orchestrator.handle_turn("CA330", "goodbye", 0.9)

        call = await call_log.get_call_by_sid("CA330")
        assert call.status == "completed"
        assert call.turn_count == 2
        assert call.ended_at is not None
        assert "agent: " + CLOSING_LINE in call.transcript

    @pytest.mark.asyncio
    async def test_end_session_from_status_callback(
        self, registry, memory, completion_adapter, synthesizer, audio_cache, policy, test_db
    ):
        """A hangup reported by the carrier closes the session and the log entry."""
        call_log = CallPersistenceService(test_db)
        orchestrator = TurnOrchestrator(
            registry=registry,
            memory=memory,
            completion=completion_adapter,
            synthesizer=synthesizer,
            audio_cache=audio_cache,
            policy=policy,
            greeting=GREETING,
            call_log=call_log,
        )
        await orchestrator.handle_turn("CA331")

        await orchestrator.end_session("CA331", status="no-answer")

        assert "CA331" not in registry
        call = await call_log.get_call_by_sid("CA331")
        assert call.status == "no-answer"

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, orchestrator):
        """Ending an unknown call is a no-op."""
        await orchestrator.end_session("CA-unknown")
