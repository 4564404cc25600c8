"""Turn-taking orchestration for discrete-turn calls."""
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from voice_agent.core.exceptions import SynthesisError
from voice_agent.services.agent.completion import CompletionAdapter
from voice_agent.services.agent.constants import (
    APOLOGY,
    APOLOGY_GOODBYE,
    CLOSING_LINE,
    TURN_LIMIT_CLOSING_LINE,
)
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.agent.stages import CallState
from voice_agent.services.audio.cache import AudioArtifactCache
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.models import (
    CallSession,
    Speaker,
    TurnAction,
    TurnResult,
    Utterance,
)
from voice_agent.services.call_session.registry import SessionRegistry
from voice_agent.services.persistence.calls import CallPersistenceService
from voice_agent.services.speech.tts import SpeechSynthesizer

logger = logging.getLogger(__name__)


class TurnOrchestrator:
    """Drives the listen, think, speak cycle for one call at a time.

    A turn holds the session's lock from start to finish, so a call never has
    two completions or syntheses in flight. Anything unexpected raised while
    advancing a turn is turned into a spoken apology; the second failure in a
    row ends the call.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        memory: ConversationMemory,
        completion: CompletionAdapter,
        synthesizer: Optional[SpeechSynthesizer],
        audio_cache: AudioArtifactCache,
        policy: TurnPolicy,
        greeting: str,
        text_shaper: Optional[Callable[[str], str]] = None,
        call_log: Optional[CallPersistenceService] = None,
        max_consecutive_failures: int = 2,
    ):
        self.registry = registry
        self.memory = memory
        self.completion = completion
        self.synthesizer = synthesizer
        self.audio_cache = audio_cache
        self.policy = policy
        self.greeting = greeting
        self.text_shaper = text_shaper
        self.call_log = call_log
        self.max_consecutive_failures = max_consecutive_failures

    async def handle_turn(
        self,
        call_id: str,
        speech: Optional[str] = None,
        confidence: Optional[float] = None,
        caller_id: Optional[str] = None,
    ) -> TurnResult:
        """
        Run one turn for a call.

        Args:
            call_id: Twilio call SID
            speech: Recognized caller speech, if any
            confidence: Recognition confidence for the speech, if reported
            caller_id: Calling number, used only for the call log

        Returns:
            The utterances to play and whether to listen again or hang up
        """
        while True:
            session = self.registry.get_or_create(call_id, caller_id)
            async with session.lock:
                # A concurrent turn may have closed the call while we waited
                if session.ended:
                    continue
                return await self._run_turn(session, speech, confidence)

    async def _run_turn(
        self, session: CallSession, speech: Optional[str], confidence: Optional[float]
    ) -> TurnResult:
        self.registry.touch(session.call_id)
        if session.state == CallState.NEW:
            await self._record_start(session)

        try:
            result = await self._advance(session, speech, confidence)
            session.consecutive_failures = 0
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Turn failed - CallSid: {session.call_id}, "
                f"State: {session.state}, Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            result = self._recover(session)

        if result.ends_call:
            status = "failed" if session.consecutive_failures else "completed"
            await self._close(session, status)
        else:
            self.registry.touch(session.call_id)

        logger.info(
            f"[ORCHESTRATOR] Turn done - CallSid: {session.call_id}, State: {result.state}, "
            f"Action: {result.action}, Turns: {session.turn_count}"
        )
        return result

    async def _advance(
        self, session: CallSession, speech: Optional[str], confidence: Optional[float]
    ) -> TurnResult:
        text = (speech or "").strip()

        if not session.greeted and not text:
            return await self._greet(session)

        session.state = CallState.LISTENING

        # Only non-empty speech can carry terminal intent, whatever its confidence
        if self.policy.is_terminal_intent(text):
            logger.info(f"[ORCHESTRATOR] Caller ended the call - CallSid: {session.call_id}, Speech: '{text}'")
            self.memory.append(session, Speaker.CALLER, text)
            return await self._end(session, CLOSING_LINE)

        if self.policy.turn_limit_reached(session.turn_count):
            logger.info(
                f"[ORCHESTRATOR] Turn limit reached - CallSid: {session.call_id}, "
                f"Turns: {session.turn_count}/{self.policy.max_turns}"
            )
            if text:
                self.memory.append(session, Speaker.CALLER, text)
            return await self._end(session, TURN_LIMIT_CLOSING_LINE)

        if not self.policy.is_accepted(text, confidence):
            session.consecutive_empty_turns += 1
            logger.info(
                f"[ORCHESTRATOR] No usable speech - CallSid: {session.call_id}, "
                f"Confidence: {confidence}, Misses: {session.consecutive_empty_turns}"
            )
            return await self._reply(session, self.policy.reprompt_for(session.consecutive_empty_turns))

        session.consecutive_empty_turns = 0
        session.state = CallState.THINKING
        messages = self.memory.render_for_completion(session, text)
        self.memory.append(session, Speaker.CALLER, text)

        reply = await self.completion.complete(messages)
        if self.text_shaper is not None:
            reply = self.text_shaper(reply)
        return await self._reply(session, reply)

    async def _greet(self, session: CallSession) -> TurnResult:
        session.state = CallState.GREETING
        utterance = await self._speak(session, self.greeting)
        session.state = CallState.LISTENING
        # The result reports the turn it ran; the session is already listening
        return TurnResult(call_id=session.call_id, state=CallState.GREETING, utterances=[utterance])

    async def _reply(self, session: CallSession, text: str) -> TurnResult:
        session.state = CallState.SPEAKING
        utterance = await self._speak(session, text)
        session.state = CallState.LISTENING
        return TurnResult(call_id=session.call_id, state=session.state, utterances=[utterance])

    async def _end(self, session: CallSession, line: str) -> TurnResult:
        session.state = CallState.ENDING
        utterance = await self._speak(session, line)
        return TurnResult(
            call_id=session.call_id,
            state=CallState.CLOSED,
            utterances=[utterance],
            action=TurnAction.HANGUP,
        )

    async def _speak(self, session: CallSession, text: str) -> Utterance:
        """Synthesize a line and commit it as the next agent utterance."""
        audio_id = None
        if self.synthesizer is not None:
            try:
                artifact = await self.synthesizer.synthesize(text)
                audio_id = self.audio_cache.store(artifact).id
            except SynthesisError as e:
                # The transport speaks the text itself
                logger.warning(
                    f"[ORCHESTRATOR] Synthesis failed, falling back to text - "
                    f"CallSid: {session.call_id}, Error: {e}"
                )
        self._commit_agent_line(session, text)
        return Utterance(text=text, audio_id=audio_id)

    def _commit_agent_line(self, session: CallSession, text: str) -> None:
        self.memory.append(session, Speaker.AGENT, text)
        session.turn_count += 1
        session.greeted = True

    def _recover(self, session: CallSession) -> TurnResult:
        session.consecutive_failures += 1
        if session.consecutive_failures >= self.max_consecutive_failures:
            line, action, state = APOLOGY_GOODBYE, TurnAction.HANGUP, CallState.CLOSED
        else:
            line, action, state = APOLOGY, TurnAction.LISTEN, CallState.LISTENING
        session.state = state
        self._commit_agent_line(session, line)
        return TurnResult(
            call_id=session.call_id,
            state=state,
            utterances=[Utterance(text=line)],
            action=action,
        )

    async def end_session(self, call_id: str, status: str = "completed") -> None:
        """End a call from outside the turn cycle, e.g. when the caller hangs up."""
        session = self.registry.get(call_id)
        if session is None:
            logger.debug(f"[ORCHESTRATOR] No active session to end - CallSid: {call_id}")
            return
        async with session.lock:
            if not session.ended:
                await self._close(session, status)

    async def _close(self, session: CallSession, status: str) -> None:
        transcript = session.get_transcript_text()
        self.registry.remove(session.call_id)
        if self.call_log is None:
            return
        try:
            await self.call_log.finish_call(
                session.call_id,
                status=status,
                turn_count=session.turn_count,
                transcript=transcript,
            )
        except SQLAlchemyError as e:
            logger.error(
                f"[ORCHESTRATOR] Could not record call end - CallSid: {session.call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    async def _record_start(self, session: CallSession) -> None:
        if self.call_log is None:
            return
        try:
            await self.call_log.create_call(session.call_id, caller_id=session.caller_id)
        except SQLAlchemyError as e:
            logger.error(
                f"[ORCHESTRATOR] Could not record call start - CallSid: {session.call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
