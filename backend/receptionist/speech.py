"""Speech adapter - owns the recognition connection and normalizes its events.

Raw VAD activity is reported but never treated as speech on its own: a
listening session only confirms speech once a non-empty transcript fragment
arrives, so background noise cannot barge in on a reply.
"""
from __future__ import annotations
import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .asr import RecognizerEvent, RecognizerEventKind, SpeechBackend, SpeechBackendFactory
from .errors import ErrorCode, RecognitionFailed, log_event
from .events import (
    AdapterError,
    AdapterReady,
    SpeechActivityDetected,
    SpeechConfirmed,
    TranscriptFragment,
    UtteranceEnded,
)

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


@dataclass
class ListeningSession:
    """Handle for one recognition connection"""
    id: int
    backend: SpeechBackend
    sample_rate: int
    channels: int
    pump: Optional[asyncio.Task] = None
    confirmed: bool = False
    closed: bool = False
    frames_fed: int = 0
    activity_without_speech: int = 0


class SpeechAdapter:
    def __init__(self, backend_factory: SpeechBackendFactory, sink: Callable[[object], None], call_id: str = ""):
        self._factory = backend_factory
        self._sink = sink
        self.call_id = call_id

    async def start(self, sample_rate: int, channels: int) -> ListeningSession:
        session = ListeningSession(id=next(_session_ids), backend=self._factory(),
                                   sample_rate=sample_rate, channels=channels)
        try:
            await session.backend.connect(sample_rate, channels)
        except Exception as e:
            logger.error(f"Call {self.call_id}: speech backend connect failed: {e}")
            raise RecognitionFailed(f"Speech recognition unavailable: {e}") from e
        session.pump = asyncio.create_task(self._pump(session))
        log_event("listening_start", call_id=self.call_id, session=session.id, sample_rate=sample_rate)
        return session

    def feed(self, session: ListeningSession, pcm: bytes) -> None:
        if session.closed:
            return
        session.backend.send(pcm)
        session.frames_fed += 1
        if session.frames_fed % 50 == 0:
            logger.debug(f"Call {self.call_id}: forwarded {session.frames_fed} audio frames")

    async def stop(self, session: ListeningSession) -> None:
        if session.closed:
            return
        session.closed = True
        try:
            await session.backend.close()
        except Exception as e:
            logger.warning(f"Call {self.call_id}: error closing speech backend: {e}")
        if session.pump is not None:
            session.pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await session.pump
        log_event("listening_stop", call_id=self.call_id, session=session.id, frames=session.frames_fed,
                  noise_events=session.activity_without_speech)

    async def _pump(self, session: ListeningSession) -> None:
        try:
            async for raw in session.backend.events():
                for event in self.normalize(session, raw):
                    self._sink(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not session.closed:
                logger.error(f"Call {self.call_id}: speech backend error: {e}")
                self._sink(AdapterError(session.id, ErrorCode.ASR_FAIL, f"Speech recognition error: {e}"))
            return
        if not session.closed:
            self._sink(AdapterError(session.id, ErrorCode.ASR_FAIL, "Speech recognition connection closed"))

    def normalize(self, session: ListeningSession, raw: RecognizerEvent) -> List[object]:
        kind = raw.kind
        if kind == RecognizerEventKind.OPEN:
            return [AdapterReady(session.id)]
        if kind == RecognizerEventKind.SPEECH_STARTED:
            # may be noise; wait for a transcript before treating it as speech
            return [SpeechActivityDetected(session.id)]
        if kind == RecognizerEventKind.TRANSCRIPT:
            text = raw.text.strip()
            if not text:
                return []
            out: List[object] = []
            if not session.confirmed:
                session.confirmed = True
                out.append(SpeechConfirmed(session.id))
            out.append(TranscriptFragment(session.id, text, raw.is_final))
            return out
        if kind == RecognizerEventKind.UTTERANCE_END:
            if not session.confirmed:
                session.activity_without_speech += 1
                log_event("utterance_discarded", call_id=self.call_id, session=session.id, reason="no_transcript")
                return []
            session.confirmed = False
            return [UtteranceEnded(session.id)]
        if kind == RecognizerEventKind.ERROR:
            return [AdapterError(session.id, ErrorCode.ASR_FAIL, raw.message or "Speech recognition error")]
        return []
