"""Turn controller - the per-call conversation state machine.

All call state (turn state, history, utterance, in-flight turn) is owned by
one TurnController and only mutated from handle(), which processes a single
event at a time from the call's queue. Backend producers never touch that
state directly; they post typed events and wait for credit before posting
the next one, so at most one item per stream is ever in flight.
"""
from __future__ import annotations
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from . import messages
from .asr import SpeechBackendFactory
from .audio import validate_pcm_frame
from .config import ReceptionistSettings, TurnState, can_transition
from .errors import ConfigurationError, ErrorCode, ProtocolViolation, ReceptionistError, emit_error, log_event
from .events import (
    SPEECH_EVENTS,
    TURN_EVENTS,
    AdapterError,
    AdapterReady,
    AudioChunkReady,
    ResponseComplete,
    SpeechActivityDetected,
    SpeechConfirmed,
    SynthesisComplete,
    TokenReceived,
    TranscriptFragment,
    TransportClosed,
    TransportFrame,
    TurnFailed,
    UtteranceEnded,
)
from .history import ConversationHistory, estimate_heard_text
from .llm_stream import ResponseGenerator, TokenStream
from .speech import ListeningSession, SpeechAdapter
from .transport import Transport
from .tts import AudioStream, SpeechSynthesizer

logger = logging.getLogger(__name__)

SUPPORTED_SAMPLE_RATES = (8000, 16000, 24000, 48000)

_turn_ids = itertools.count(1)


@dataclass
class Utterance:
    """Final transcript text collected for one caller speaking turn"""
    fragments: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def add(self, text: str) -> None:
        text = text.strip()
        if text:
            self.fragments.append(text)

    @property
    def text(self) -> str:
        return " ".join(self.fragments)


class InFlightTurn:
    """One assistant turn from first token to last audio chunk"""

    def __init__(self):
        self.id = next(_turn_ids)
        self.reply_text = ""
        self.cancelled = False
        self.next_sequence = 0
        self.started_at = time.monotonic()
        # producer acquires before each post, controller releases after handling
        self.credit = asyncio.Semaphore(1)
        self.task: Optional[asyncio.Task] = None
        self.token_stream: Optional[TokenStream] = None
        self.audio_stream: Optional[AudioStream] = None
        self.first_token_ms: Optional[float] = None
        self.first_audio_ms: Optional[float] = None

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def cancel(self) -> None:
        self.cancelled = True
        for stream in (self.token_stream, self.audio_stream):
            if stream is not None:
                stream.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def __repr__(self) -> str:
        return f"InFlightTurn(id={self.id}, chars={len(self.reply_text)}, seq={self.next_sequence})"


class TurnController:
    def __init__(self, call_id: str, transport: Transport, speech_factory: SpeechBackendFactory,
                 generator: ResponseGenerator, synthesizer: SpeechSynthesizer,
                 settings: ReceptionistSettings):
        self.call_id = call_id
        self.transport = transport
        self.generator = generator
        self.synthesizer = synthesizer
        self.settings = settings
        self.queue: asyncio.Queue = asyncio.Queue()
        self.state = TurnState.IDLE
        self.history = ConversationHistory(settings.history_window)
        self.adapter = SpeechAdapter(speech_factory, self.post, call_id)
        self.listening: Optional[ListeningSession] = None
        self.utterance: Optional[Utterance] = None
        self.turn: Optional[InFlightTurn] = None
        self.closed = False
        self.turns_completed = 0
        self._reconnects_left = settings.speech_reconnect_attempts
        self._warned_unstarted = False
        self._retired: Set[asyncio.Task] = set()

    # Queue

    def post(self, event: object) -> None:
        self.queue.put_nowait(event)

    async def run(self) -> bool:
        """Process events until the transport closes. False if the call never started."""
        try:
            self.settings.require_credentials()
        except ConfigurationError as e:
            await emit_error(self.transport.send_control, e.code, e.message, recoverable=e.recoverable,
                             call_id=self.call_id)
            self.closed = True
            return False
        await self.transport.send_control(
            messages.status("Connected", session_id=self.call_id, protocol=messages.PROTOCOL_VERSION))
        try:
            while not self.closed:
                event = await self.queue.get()
                await self.handle(event)
        finally:
            await self.shutdown()
        return True

    async def step(self, timeout: float = 1.0) -> object:
        event = await asyncio.wait_for(self.queue.get(), timeout)
        await self.handle(event)
        return event

    async def handle(self, event: object) -> None:
        try:
            if isinstance(event, TransportFrame):
                await self._on_frame(event)
            elif isinstance(event, TransportClosed):
                logger.info(f"Call {self.call_id}: transport closed ({event.reason})")
                self.closed = True
            elif isinstance(event, SPEECH_EVENTS):
                await self._on_speech_event(event)
            elif isinstance(event, TURN_EVENTS):
                await self._on_turn_event(event)
            else:
                logger.warning(f"Call {self.call_id}: unhandled event {event!r}")
        except ReceptionistError as e:
            await self._report(e.code, e.message)
        except Exception as e:
            logger.exception(f"Call {self.call_id}: error handling {type(event).__name__}")
            await self._report(ErrorCode.INTERNAL, f"Internal error: {e}")
        finally:
            if isinstance(event, TURN_EVENTS):
                event.turn.credit.release()

    async def shutdown(self) -> None:
        if self.turn is not None:
            self._retire(self.turn)
            self.turn = None
        if self.listening is not None:
            await self.adapter.stop(self.listening)
            self.listening = None
        if self._retired:
            await asyncio.gather(*self._retired, return_exceptions=True)
        log_event("call_end", call_id=self.call_id, turns=self.turns_completed, history=len(self.history))

    # State

    def _transition(self, target: TurnState, reason: str = "") -> None:
        if target == self.state:
            return
        if not can_transition(self.state, target):
            raise ReceptionistError(f"Illegal state transition {self.state.value} -> {target.value}")
        previous = self.state
        self.state = target
        log_event("state_transition", call_id=self.call_id, from_state=previous.value,
                  to_state=target.value, reason=reason)

    async def _report(self, code: str, message: str) -> None:
        await emit_error(self.transport.send_control, code, message, call_id=self.call_id, state=self.state.value)

    # Transport

    async def _on_frame(self, frame: TransportFrame) -> None:
        if frame.error is not None:
            raise ProtocolViolation(frame.error)
        if frame.binary is not None:
            self._on_audio(frame.binary)
            return
        msg = messages.parse_control(frame.control or {})
        if isinstance(msg, messages.StartMessage):
            await self._on_start(msg)
        elif isinstance(msg, messages.StopMessage):
            await self._on_stop()
        elif isinstance(msg, messages.UserInterruptedMessage):
            self._on_user_interrupted(msg)

    def _on_audio(self, pcm: bytes) -> None:
        if self.listening is None:
            if not self._warned_unstarted:
                self._warned_unstarted = True
                raise ProtocolViolation("Audio received before 'start'; frames dropped")
            return
        validate_pcm_frame(pcm, self.settings.max_frame_bytes)
        self.adapter.feed(self.listening, pcm)

    async def _on_start(self, msg: messages.StartMessage) -> None:
        if self.listening is not None:
            await self.transport.send_control(messages.status("Already listening"))
            return
        sample_rate = msg.sample_rate or self.settings.sample_rate
        channels = msg.channels or self.settings.channels
        if sample_rate not in SUPPORTED_SAMPLE_RATES:
            raise ProtocolViolation(f"Unsupported sample rate {sample_rate}")
        if channels != 1:
            raise ProtocolViolation("Only mono audio is supported")
        self._reconnects_left = self.settings.speech_reconnect_attempts
        self._warned_unstarted = False
        self.listening = await self.adapter.start(sample_rate, channels)
        self._transition(TurnState.LISTENING, "start")
        await self.transport.send_control(messages.status("Listening", sample_rate=sample_rate))

    async def _on_stop(self) -> None:
        if self.turn is not None:
            await self._interrupt("stop")
        self.utterance = None
        if self.listening is not None:
            await self.adapter.stop(self.listening)
            self.listening = None
        self._transition(TurnState.IDLE, "stop")
        await self.transport.send_control(messages.status("Stopped"))

    def _on_user_interrupted(self, msg: messages.UserInterruptedMessage) -> None:
        full_text = msg.full_text
        last = self.history.last()
        if not full_text and last is not None and last["role"] == "assistant":
            full_text = last["content"]
        estimate = estimate_heard_text(full_text, msg.interrupted_at, msg.total_duration)
        applied = self.history.rewrite_last_assistant(estimate.history_content())
        log_event("heard_rewrite", call_id=self.call_id, fraction=round(estimate.fraction, 3),
                  words_heard=estimate.words_heard, total_words=estimate.total_words, applied=applied)

    # Speech

    async def _on_speech_event(self, event: object) -> None:
        if self.listening is None or event.session_id != self.listening.id:
            logger.debug(f"Call {self.call_id}: dropping stale {type(event).__name__}")
            return
        if isinstance(event, AdapterReady):
            logger.info(f"Call {self.call_id}: speech recognition connected")
        elif isinstance(event, SpeechActivityDetected):
            log_event("speech_activity", call_id=self.call_id, state=self.state.value)
        elif isinstance(event, SpeechConfirmed):
            await self._on_speech_confirmed()
        elif isinstance(event, TranscriptFragment):
            await self._on_fragment(event)
        elif isinstance(event, UtteranceEnded):
            await self._on_utterance_ended()
        elif isinstance(event, AdapterError):
            await self._on_adapter_error(event)

    async def _on_speech_confirmed(self) -> None:
        if self.state == TurnState.UTTERANCE_COLLECTING:
            return
        if self.state in (TurnState.RESPONDING, TurnState.SPEAKING):
            await self._interrupt("barge_in")
        self.utterance = Utterance()
        self._transition(TurnState.UTTERANCE_COLLECTING, "speech_confirmed")
        await self.transport.send_control(messages.speech_started())

    async def _on_fragment(self, event: TranscriptFragment) -> None:
        if self.state != TurnState.UTTERANCE_COLLECTING or self.utterance is None:
            return
        if event.is_final:
            self.utterance.add(event.text)
        await self.transport.send_control(messages.transcript(event.text, event.is_final))

    async def _on_utterance_ended(self) -> None:
        if self.state != TurnState.UTTERANCE_COLLECTING or self.utterance is None:
            return
        text = self.utterance.text
        self.utterance = None
        await self.transport.send_control(messages.utterance_end(text))
        if not text:
            # only interim fragments arrived
            log_event("utterance_discarded", call_id=self.call_id, reason="no_final_transcript")
            self._transition(TurnState.LISTENING, "empty_utterance")
            return
        self.history.append("user", text)
        log_event("utterance", call_id=self.call_id, chars=len(text))
        await self._begin_turn()

    async def _on_adapter_error(self, event: AdapterError) -> None:
        if self.turn is not None:
            await self._interrupt("speech_error")
        self.utterance = None
        session, self.listening = self.listening, None
        await self.adapter.stop(session)
        await self._report(event.code, event.message)
        if self._reconnects_left > 0:
            self._reconnects_left -= 1
            try:
                self.listening = await self.adapter.start(session.sample_rate, session.channels)
            except ReceptionistError as e:
                logger.error(f"Call {self.call_id}: speech reconnect failed: {e.message}")
            else:
                log_event("speech_reconnect", call_id=self.call_id, remaining=self._reconnects_left)
                self._transition(TurnState.LISTENING, "speech_reconnect")
                return
        self._transition(TurnState.IDLE, "speech_unavailable")
        await self.transport.send_control(messages.status("Speech recognition unavailable; send start to retry"))

    # Turn

    def _retire(self, turn: InFlightTurn) -> None:
        turn.cancel()
        if turn.task is not None and not turn.task.done():
            self._retired.add(turn.task)
            turn.task.add_done_callback(self._retired.discard)

    async def _interrupt(self, reason: str) -> None:
        turn = self.turn
        self.turn = None
        self._retire(turn)
        await self.transport.send_control(messages.interrupt_ai())
        log_event("barge_in", call_id=self.call_id, reason=reason, turn=turn.id, state=self.state.value,
                  reply_chars=len(turn.reply_text), chunks_sent=turn.next_sequence)

    async def _begin_turn(self) -> None:
        turn = InFlightTurn()
        self.turn = turn
        self._transition(TurnState.RESPONDING, "utterance_end")
        await self.transport.send_control(messages.ai_response_start())
        turn.task = asyncio.create_task(self._run_generation(turn, self.history.as_messages()))

    async def _post_turn_event(self, event: object) -> None:
        turn = event.turn
        await turn.credit.acquire()
        if turn.cancelled:
            turn.credit.release()
            return
        self.post(event)

    async def _run_generation(self, turn: InFlightTurn, history: List[Dict[str, str]]) -> None:
        stream = self.generator.generate(history)
        turn.token_stream = stream
        try:
            async for token in stream:
                await self._post_turn_event(TokenReceived(turn, token))
        except asyncio.CancelledError:
            raise
        except ReceptionistError as e:
            await self._post_turn_event(TurnFailed(turn, e.code, e.message))
            return
        except Exception as e:
            logger.exception(f"Call {self.call_id}: response generation crashed")
            await self._post_turn_event(TurnFailed(turn, ErrorCode.LLM_FAIL, f"LLM streaming error: {e}"))
            return
        finally:
            await stream.aclose()
        await self._post_turn_event(ResponseComplete(turn))

    async def _run_synthesis(self, turn: InFlightTurn, text: str) -> None:
        stream = self.synthesizer.synthesize(text)
        turn.audio_stream = stream
        failed, message = False, ""
        try:
            async for chunk in stream:
                await self._post_turn_event(AudioChunkReady(turn, chunk))
        except asyncio.CancelledError:
            raise
        except ReceptionistError as e:
            failed, message = True, e.message
        except Exception as e:
            logger.exception(f"Call {self.call_id}: speech synthesis crashed")
            failed, message = True, f"TTS synthesis error: {e}"
        finally:
            await stream.aclose()
        await self._post_turn_event(SynthesisComplete(turn, failed, message))

    async def _on_turn_event(self, event: object) -> None:
        turn = event.turn
        if turn is not self.turn:
            logger.debug(f"Call {self.call_id}: dropping {type(event).__name__} from retired turn")
            return
        if isinstance(event, TokenReceived):
            if turn.first_token_ms is None:
                turn.first_token_ms = turn.elapsed_ms()
            turn.reply_text += event.text
            await self.transport.send_control(messages.ai_response_chunk(event.text))
        elif isinstance(event, ResponseComplete):
            await self._on_response_complete(turn)
        elif isinstance(event, AudioChunkReady):
            await self._on_audio_chunk(turn, event)
        elif isinstance(event, SynthesisComplete):
            if event.failed:
                await self._report(ErrorCode.TTS_FAIL, event.message)
            await self._finish_turn(turn, "synthesis_complete")
        elif isinstance(event, TurnFailed):
            await self.transport.send_control(messages.ai_response_end())
            await self._report(event.code, event.message)
            self.turn = None
            self._transition(TurnState.LISTENING, "turn_failed")

    async def _on_response_complete(self, turn: InFlightTurn) -> None:
        await self.transport.send_control(messages.ai_response_end())
        reply = turn.reply_text.strip()
        if not reply:
            await self._finish_turn(turn, "empty_reply")
            return
        self.history.append("assistant", reply)
        self._transition(TurnState.SPEAKING, "response_complete")
        turn.task = asyncio.create_task(self._run_synthesis(turn, reply))

    async def _on_audio_chunk(self, turn: InFlightTurn, event: AudioChunkReady) -> None:
        chunk = event.chunk
        if chunk.sequence != turn.next_sequence:
            self._retire(turn)
            await self.transport.send_control(messages.audio_end(turn.next_sequence))
            self.turn = None
            self._transition(TurnState.LISTENING, "protocol_violation")
            raise ProtocolViolation(f"Audio chunk {chunk.sequence} out of order, expected {turn.next_sequence}")
        if turn.first_audio_ms is None:
            turn.first_audio_ms = turn.elapsed_ms()
        await self.transport.send_control(chunk.to_message())
        turn.next_sequence += 1

    async def _finish_turn(self, turn: InFlightTurn, reason: str) -> None:
        await self.transport.send_control(messages.audio_end(turn.next_sequence))
        self.turn = None
        self.turns_completed += 1
        log_event("turn_latency", call_id=self.call_id, turn=turn.id, first_token_ms=turn.first_token_ms,
                  first_audio_ms=turn.first_audio_ms, total_ms=round(turn.elapsed_ms(), 1),
                  chunks=turn.next_sequence)
        self._transition(TurnState.LISTENING, reason)
