"""Duplex audio relay between a Twilio media stream and a realtime provider."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from voice_agent.core.exceptions import SessionClosedError, TransportError
from voice_agent.services.agent.constants import (
    APOLOGY_GOODBYE,
    CLOSING_LINE,
    TURN_LIMIT_CLOSING_LINE,
)
from voice_agent.services.agent.policy import TurnPolicy
from voice_agent.services.agent.prompt import get_scripted_line_instructions
from voice_agent.services.agent.stages import CallState, RelayState
from voice_agent.services.call_session.memory import ConversationMemory
from voice_agent.services.call_session.models import CallSession, Speaker
from voice_agent.services.call_session.registry import SessionRegistry
from voice_agent.services.persistence.calls import CallPersistenceService
from voice_agent.services.streaming.peers import Peer

logger = logging.getLogger(__name__)

# Provider errors that only mean there was nothing to cancel
_BENIGN_ERROR_CODES = {"response_cancel_not_active"}


class StreamingRelay:
    """Relays one call's audio between the telephony stream and the provider.

    Audio is forwarded verbatim in both directions. The provider does its own
    voice-activity detection; when it hears the caller start talking while
    the agent is still audible, playback is cleared on the telephony side and
    any reply still being generated is cancelled. Playback counts as audible
    until Twilio echoes the mark sent after each reply, since the provider
    finishes generating long before the buffered audio has played. Caller
    transcripts run through the same end-of-call policy as discrete-turn
    calls. When either peer goes away, both are closed.
    """

    def __init__(
        self,
        telephony: Peer,
        connect_provider: Callable[[], Awaitable[Peer]],
        registry: SessionRegistry,
        memory: ConversationMemory,
        policy: TurnPolicy,
        instructions: str,
        greeting: Optional[str] = None,
        voice: str = "alloy",
        max_output_tokens: int = 1024,
        keepalive_interval: float = 15.0,
        call_log: Optional[CallPersistenceService] = None,
    ):
        self.telephony = telephony
        self.provider: Optional[Peer] = None
        self._connect_provider = connect_provider
        self.registry = registry
        self.memory = memory
        self.policy = policy
        self.instructions = instructions
        self.greeting = greeting
        self.voice = voice
        self.max_output_tokens = max_output_tokens
        self.keepalive_interval = keepalive_interval
        self.call_log = call_log

        self.state = RelayState.CONNECTING
        self.session: Optional[CallSession] = None
        self.stream_sid: Optional[str] = None
        self._configured = asyncio.Event()
        self._response_in_flight = False
        self._greeting_requested = False
        self._ending = False
        self._closed = False
        self._dropped_frames = 0
        self._marks_sent = 0
        self._pending_marks: Set[str] = set()  # reply marks Twilio has not echoed yet
        self._closing_mark: Optional[str] = None
        self._status = "completed"

    @property
    def call_id(self) -> str:
        return self.session.call_id if self.session else "unknown"

    async def run(self) -> None:
        """Relay until either side hangs up, then close both sides."""
        try:
            self.provider = await self._connect_provider()
            await self.provider.send_json(self._session_update())
        except TransportError as e:
            logger.error(f"[RELAY] Provider unavailable, closing call - Error: {e}")
            await self.close()
            return

        tasks = [
            asyncio.create_task(self._pump_telephony(), name="relay-telephony"),
            asyncio.create_task(self._pump_provider(), name="relay-provider"),
            asyncio.create_task(self._keepalive(), name="relay-keepalive"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                error = task.exception()
                if isinstance(error, TransportError):
                    logger.info(f"[RELAY] {task.get_name()} lost its peer - CallSid: {self.call_id}, Error: {error}")
                elif error is not None:
                    logger.error(
                        f"[RELAY] {task.get_name()} failed - CallSid: {self.call_id}, "
                        f"Error: {type(error).__name__}: {error}",
                        exc_info=error,
                    )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.close()

    def _session_update(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": ["audio", "text"],
                "instructions": self.instructions,
                "voice": self.voice,
                "input_audio_format": "g711_ulaw",
                "output_audio_format": "g711_ulaw",
                "input_audio_transcription": {"model": "whisper-1"},
                "turn_detection": {"type": "server_vad"},
                "max_response_output_tokens": self.max_output_tokens,
            },
        }

    # Telephony -> provider

    async def _pump_telephony(self) -> None:
        while True:
            message = await self.telephony.receive_json()
            if message is None:
                logger.info(f"[RELAY] Telephony stream closed - CallSid: {self.call_id}")
                return

            event = message.get("event")
            if event == "media":
                await self._forward_caller_audio(message)
            elif event == "start":
                await self._on_start(message)
            elif event == "mark":
                if self._on_mark(message.get("mark", {}).get("name")):
                    return
            elif event == "stop":
                logger.info(f"[RELAY] Telephony stream stopped - CallSid: {self.call_id}")
                await self._flush_provider()
                return

    def _on_mark(self, name: Optional[str]) -> bool:
        """Track a played mark. Returns True once the closing line has played."""
        logger.debug(f"[RELAY] Mark played - {name}")
        if not name or not name.startswith("turn-"):
            return False
        self._pending_marks.discard(name)
        if name == self._closing_mark:
            logger.info(f"[RELAY] Closing line played - CallSid: {self.call_id}")
            return True
        return False

    @property
    def playback_active(self) -> bool:
        """True while the caller may still be hearing agent audio."""
        return self._response_in_flight or bool(self._pending_marks)

    async def _forward_caller_audio(self, message: Dict[str, Any]) -> None:
        if not self._configured.is_set():
            self._dropped_frames += 1
            return
        payload = message.get("media", {}).get("payload")
        if payload:
            await self.provider.send_json({"type": "input_audio_buffer.append", "audio": payload})

    async def _on_start(self, message: Dict[str, Any]) -> None:
        start = message.get("start", {})
        self.stream_sid = start.get("streamSid") or message.get("streamSid")
        if hasattr(self.telephony, "stream_sid"):
            self.telephony.stream_sid = self.stream_sid
        call_id = start.get("callSid") or self.stream_sid
        caller_id = start.get("customParameters", {}).get("caller")
        self.session = self.registry.get_or_create(call_id, caller_id)
        self.session.state = CallState.LISTENING
        self.registry.touch(call_id)
        logger.info(f"[RELAY] Stream started - CallSid: {call_id}, StreamSid: {self.stream_sid}")
        await self._record_start()
        await self._maybe_greet()

    async def _flush_provider(self) -> None:
        # Let the provider finish any utterance in progress before we close
        try:
            await self.provider.send_json({"type": "input_audio_buffer.commit"})
            await self.provider.send_json({"type": "response.create", "response": {}})
        except TransportError as e:
            logger.debug(f"[RELAY] Could not flush provider - CallSid: {self.call_id}, Error: {e}")

    # Provider -> telephony

    async def _pump_provider(self) -> None:
        while True:
            event = await self.provider.receive_json()
            if event is None:
                logger.info(f"[RELAY] Provider stream closed - CallSid: {self.call_id}")
                return
            if await self._on_provider_event(event):
                return

    async def _on_provider_event(self, event: Dict[str, Any]) -> bool:
        """Handle one provider event. Returns True when the call is finished."""
        event_type = event.get("type", "")

        if event_type == "response.audio.delta":
            payload = event.get("delta") or event.get("audio")
            if payload and self.stream_sid:
                await self.telephony.send_json(
                    {"event": "media", "streamSid": self.stream_sid, "media": {"payload": payload}}
                )
        elif event_type == "session.updated":
            if not self._configured.is_set():
                self._configured.set()
                self.state = RelayState.ACTIVE
                logger.info(f"[RELAY] Provider session configured - CallSid: {self.call_id}")
                await self._maybe_greet()
        elif event_type == "response.created":
            self._response_in_flight = True
            if self.session and not self.session.ended and not self._ending:
                self.session.state = CallState.SPEAKING
        elif event_type == "input_audio_buffer.speech_started":
            await self._barge_in()
        elif event_type == "conversation.item.input_audio_transcription.completed":
            await self._on_caller_transcript(event.get("transcript", ""))
        elif event_type == "response.audio_transcript.done":
            self._remember(Speaker.AGENT, event.get("transcript", ""))
        elif event_type == "response.done":
            return await self._on_response_done(event)
        elif event_type == "error":
            return await self._on_provider_error(event)
        else:
            logger.debug(f"[RELAY] Provider event {event_type}")
        return False

    async def _on_response_done(self, event: Dict[str, Any]) -> bool:
        self._response_in_flight = False
        status = event.get("response", {}).get("status", "completed")

        if status == "failed":
            logger.warning(f"[RELAY] Provider response failed - CallSid: {self.call_id}, Event: {event}")
            self._status = "failed"
            if self._ending:
                return True
            await self._begin_ending(APOLOGY_GOODBYE)
            return False

        if status != "cancelled":
            if self.session and not self.session.ended:
                self.session.turn_count += 1
                self.session.greeted = True
            mark = await self._send_mark()
            if self._ending:
                logger.info(f"[RELAY] Closing line generated - CallSid: {self.call_id}")
                if mark is None:
                    return True
                # Hang up once Twilio has played it
                self._closing_mark = mark
                return False

        if self.session and not self.session.ended and not self._ending:
            self.session.state = CallState.LISTENING
            self.registry.touch(self.session.call_id)
        return False

    async def _send_mark(self) -> Optional[str]:
        if not self.stream_sid:
            return None
        self._marks_sent += 1
        name = f"turn-{self._marks_sent}"
        await self.telephony.send_json(
            {"event": "mark", "streamSid": self.stream_sid, "mark": {"name": name}}
        )
        self._pending_marks.add(name)
        return name

    async def _on_provider_error(self, event: Dict[str, Any]) -> bool:
        error = event.get("error", {})
        if error.get("code") in _BENIGN_ERROR_CODES:
            logger.debug(f"[RELAY] Ignoring provider error {error.get('code')}")
            return False
        logger.error(f"[RELAY] Provider error - CallSid: {self.call_id}, Error: {error}")
        self._status = "failed"
        if self._ending:
            return True
        await self._begin_ending(APOLOGY_GOODBYE)
        return False

    async def _on_caller_transcript(self, transcript: str) -> None:
        text = (transcript or "").strip()
        if not text:
            return
        self._remember(Speaker.CALLER, text)
        if self._ending or self.session is None:
            return
        if self.policy.is_terminal_intent(text):
            logger.info(f"[RELAY] Caller ended the call - CallSid: {self.call_id}, Speech: '{text}'")
            await self._begin_ending(CLOSING_LINE)
        elif self.policy.turn_limit_reached(self.session.turn_count):
            logger.info(f"[RELAY] Turn limit reached - CallSid: {self.call_id}")
            await self._begin_ending(TURN_LIMIT_CLOSING_LINE)

    async def _barge_in(self) -> None:
        if not self.playback_active or self._ending:
            return
        logger.info(
            f"[RELAY] Caller barged in - CallSid: {self.call_id}, "
            f"Generating: {self._response_in_flight}, Queued marks: {len(self._pending_marks)}"
        )
        await self._cancel_response()
        if self.session and not self.session.ended:
            self.session.state = CallState.LISTENING

    async def _cancel_response(self) -> None:
        """Drop queued agent audio and stop any reply still being generated."""
        if self.stream_sid:
            await self.telephony.send_json({"event": "clear", "streamSid": self.stream_sid})
        self._pending_marks.clear()
        if self._response_in_flight:
            await self.provider.send_json({"type": "response.cancel"})
            self._response_in_flight = False

    async def _begin_ending(self, line: str) -> None:
        if self._ending:
            return
        self._ending = True
        if self.session and not self.session.ended:
            self.session.state = CallState.ENDING
        if self.playback_active:
            await self._cancel_response()
        await self.provider.send_json(
            {"type": "response.create", "response": {"instructions": get_scripted_line_instructions(line)}}
        )

    async def _maybe_greet(self) -> None:
        if (
            self.greeting is None
            or self._greeting_requested
            or self.session is None
            or self.session.greeted
            or not self._configured.is_set()
        ):
            return
        self._greeting_requested = True
        await self.provider.send_json(
            {"type": "response.create", "response": {"instructions": get_scripted_line_instructions(self.greeting)}}
        )

    def _remember(self, speaker: Speaker, text: str) -> None:
        text = (text or "").strip()
        if not text or self.session is None:
            return
        try:
            self.memory.append(self.session, speaker, text)
        except SessionClosedError:
            logger.debug(f"[RELAY] Session already closed, not recording {speaker} line")

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if self.state != RelayState.ACTIVE:
                continue
            for peer in (self.telephony, self.provider):
                try:
                    await peer.ping()
                except Exception as e:
                    logger.warning(f"[RELAY] Keepalive to {peer.name} failed - CallSid: {self.call_id}, Error: {e}")

    async def close(self) -> None:
        """Close both peers and drop the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.state = RelayState.CLOSING
        for peer in (self.provider, self.telephony):
            if peer is None:
                continue
            try:
                await peer.close()
            except Exception as e:
                logger.debug(f"[RELAY] Error closing {peer.name} - Error: {type(e).__name__}: {e}")
        self.state = RelayState.CLOSED
        if self.session is not None:
            transcript = self.session.get_transcript_text()
            self.registry.remove(self.session.call_id)
            await self._record_finish(transcript)
        if self._dropped_frames:
            logger.info(f"[RELAY] Dropped {self._dropped_frames} frame(s) before provider was ready - CallSid: {self.call_id}")
        logger.info(f"[RELAY] Relay closed - CallSid: {self.call_id}")

    async def _record_start(self) -> None:
        if self.call_log is None:
            return
        try:
            await self.call_log.create_call(
                self.session.call_id, caller_id=self.session.caller_id, transport="stream"
            )
        except SQLAlchemyError as e:
            logger.error(
                f"[RELAY] Could not record call start - CallSid: {self.call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    async def _record_finish(self, transcript: str) -> None:
        if self.call_log is None:
            return
        try:
            await self.call_log.finish_call(
                self.session.call_id,
                status=self._status,
                turn_count=self.session.turn_count,
                transcript=transcript,
            )
        except SQLAlchemyError as e:
            logger.error(
                f"[RELAY] Could not record call end - CallSid: {self.call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
