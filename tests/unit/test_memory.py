"""Unit tests for conversation memory."""
import pytest

from voice_agent.core.exceptions import SessionClosedError
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.models import CallSession, Speaker


class TestConversationMemory:
    """Test transcript capping and completion rendering."""

    def test_append_keeps_insertion_order(self, memory):
        """Entries are kept in the order they were appended."""
        session = CallSession(call_id="CA100")

        memory.append(session, Speaker.AGENT, "Hello there.")
        memory.append(session, Speaker.CALLER, "Hi, what's the weather?")

        assert [e.speaker for e in session.transcript] == [Speaker.AGENT, Speaker.CALLER]
        assert session.transcript[1].text == "Hi, what's the weather?"

    def test_transcript_never_exceeds_cap(self):
        """The transcript is truncated to the cap after every append."""
        memory = ConversationMemory(system_prompt="sys", cap=4)
        session = CallSession(call_id="CA101")

        for i in range(25):
            memory.append(session, Speaker.CALLER if i % 2 else Speaker.AGENT, f"line {i}")
            assert len(session.transcript) <= 4

        assert len(session.transcript) == 4

    def test_oldest_entries_dropped_first(self):
        """Truncation is FIFO: the most recent entries survive."""
        memory = ConversationMemory(system_prompt="sys", cap=3)
        session = CallSession(call_id="CA102")

        for i in range(5):
            memory.append(session, Speaker.CALLER, f"line {i}")

        assert [e.text for e in session.transcript] == ["line 2", "line 3", "line 4"]

    def test_append_to_ended_session_raises(self, memory):
        """An ended session is never mutated."""
        session = CallSession(call_id="CA103", ended=True)

        with pytest.raises(SessionClosedError):
            memory.append(session, Speaker.CALLER, "are you there?")

        assert session.transcript == []

    def test_render_for_completion(self, memory):
        """Render puts the system prompt first, then transcript roles, then the new turn."""
        session = CallSession(call_id="CA104")
        memory.append(session, Speaker.AGENT, "Hi, how can I help?")
        memory.append(session, Speaker.CALLER, "Tell me a joke.")
        memory.append(session, Speaker.AGENT, "Why did the kangaroo cross the road?")

        messages = memory.render_for_completion(session, "Why?")

        assert messages[0] == {"role": "system", "content": memory.system_prompt}
        assert [m["role"] for m in messages[1:]] == ["assistant", "user", "assistant", "user"]
        assert messages[-1]["content"] == "Why?"

    def test_render_without_new_turn(self, memory):
        """Render without a new user turn only includes the transcript."""
        session = CallSession(call_id="CA105")
        memory.append(session, Speaker.AGENT, "Hello.")

        messages = memory.render_for_completion(session)

        assert len(messages) == 2
        assert messages[-1] == {"role": "assistant", "content": "Hello."}

    def test_cap_must_be_positive(self):
        """A zero cap is rejected."""
        with pytest.raises(ValueError):
            ConversationMemory(system_prompt="sys", cap=0)
