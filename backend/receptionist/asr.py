"""Speech recognition backends - Deepgram live streaming and local faster-whisper fallback"""
from __future__ import annotations
import asyncio
import contextlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import websockets
import webrtcvad
from faster_whisper import WhisperModel

from .audio import pcm16_to_float32, pcm_duration_ms, resample_pcm16
from .config import ReceptionistSettings
from .vad import VadState

logger = logging.getLogger(__name__)


class RecognizerEventKind(str, Enum):
    OPEN = "open"
    SPEECH_STARTED = "speech_started"
    TRANSCRIPT = "transcript"
    UTTERANCE_END = "utterance_end"
    ERROR = "error"


@dataclass(frozen=True)
class RecognizerEvent:
    kind: RecognizerEventKind
    text: str = ""
    is_final: bool = False
    message: str = ""


class SpeechBackend:
    """One connection to a recognition service, owned by a single listening session.

    send() must never block: audio forwarding is fire-and-forget.
    """

    async def connect(self, sample_rate: int, channels: int) -> None:
        raise NotImplementedError

    def send(self, pcm: bytes) -> None:
        raise NotImplementedError

    def events(self) -> AsyncIterator[RecognizerEvent]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


SpeechBackendFactory = Callable[[], SpeechBackend]


# Deepgram

def parse_deepgram_message(msg: Dict[str, Any]) -> Optional[RecognizerEvent]:
    mtype = msg.get("type")
    if mtype == "Results":
        alternatives = (msg.get("channel") or {}).get("alternatives") or [{}]
        text = alternatives[0].get("transcript") or ""
        return RecognizerEvent(RecognizerEventKind.TRANSCRIPT, text=text, is_final=bool(msg.get("is_final")))
    if mtype == "SpeechStarted":
        return RecognizerEvent(RecognizerEventKind.SPEECH_STARTED)
    if mtype == "UtteranceEnd":
        return RecognizerEvent(RecognizerEventKind.UTTERANCE_END)
    if mtype == "Error":
        return RecognizerEvent(RecognizerEventKind.ERROR,
                               message=msg.get("description") or msg.get("message") or "Deepgram error")
    return None


class DeepgramBackend(SpeechBackend):
    def __init__(self, settings: ReceptionistSettings):
        self.settings = settings
        self._ws: Any = None
        self._audio: asyncio.Queue = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None
        self._closing = False

    def listen_url(self, sample_rate: int, channels: int) -> str:
        params = {
            "model": self.settings.deepgram_model,
            "language": self.settings.deepgram_language,
            "smart_format": "true",
            "encoding": "linear16",
            "sample_rate": sample_rate,
            "channels": channels,
            "interim_results": "true",
            "utterance_end_ms": self.settings.utterance_end_ms,
            "vad_events": "true",
            "punctuate": "true",
            "filler_words": "false",
        }
        return f"{self.settings.deepgram_url}?{urlencode(params)}"

    async def connect(self, sample_rate: int, channels: int) -> None:
        headers = {"Authorization": f"Token {self.settings.deepgram_api_key}"}
        self._ws = await websockets.connect(
            self.listen_url(sample_rate, channels), additional_headers=headers, max_size=2**23
        )
        self._sender = asyncio.create_task(self._send_loop())
        logger.info("Deepgram connection opened")

    def send(self, pcm: bytes) -> None:
        if not self._closing:
            self._audio.put_nowait(pcm)

    async def _send_loop(self) -> None:
        try:
            while True:
                pcm = await self._audio.get()
                if pcm is None:
                    await self._ws.send(json.dumps({"type": "CloseStream"}))
                    return
                await self._ws.send(pcm)
        except websockets.ConnectionClosed as e:
            logger.warning(f"Deepgram send loop stopped: {e}")

    async def events(self) -> AsyncIterator[RecognizerEvent]:
        yield RecognizerEvent(RecognizerEventKind.OPEN)
        async for message in self._ws:
            if isinstance(message, bytes):
                continue
            event = parse_deepgram_message(json.loads(message))
            if event is not None:
                yield event

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._audio.put_nowait(None)
        if self._sender is not None:
            try:
                await asyncio.wait_for(self._sender, timeout=2.0)
            except asyncio.TimeoutError:
                self._sender.cancel()
        if self._ws is not None:
            await self._ws.close()
        logger.info("Deepgram connection closed")


# Local faster-whisper

def _canonical_model_name(name: str) -> str:
    # Normalize names like 'small-int8' -> 'small'
    if name.endswith('-int8'):
        return name.rsplit('-int8', 1)[0]
    return name


class WhisperTranscriber:
    """Lazily loaded faster-whisper model shared by all calls (read-only after load)"""

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._lock = threading.Lock()
        self._model: Optional[WhisperModel] = None
        self._load_failed = False

    def load(self) -> Optional[WhisperModel]:
        if self._model is not None or self._load_failed:
            return self._model
        with self._lock:
            if self._model is None and not self._load_failed:
                try:
                    self._model = WhisperModel(_canonical_model_name(self.model_name), device="cpu", compute_type="int8")
                    logger.info(f"Whisper model loaded: {self.model_name}")
                except Exception as e:
                    logger.error(f"Failed to load Whisper model {self.model_name}: {e}")
                    self._load_failed = True
        return self._model

    def available(self) -> bool:
        return self.load() is not None

    def transcribe(self, pcm: bytes) -> Tuple[str, float]:
        """Transcribe an entire buffer; returns (text, decode_ms)."""
        model = self.load()
        audio = pcm16_to_float32(pcm)
        if model is None or audio.size == 0:
            return "", 0.0
        start = time.time()
        segments, _info = model.transcribe(audio, language="en", beam_size=1, best_of=1,
                                           temperature=0.0, vad_filter=False)
        text = " ".join(seg.text.strip() for seg in segments if seg.text.strip())
        return text.strip(), (time.time() - start) * 1000.0


PRE_ROLL_MS = 300
# faster-whisper expects 16 kHz input; webrtcvad also accepts it
WHISPER_SAMPLE_RATE = 16000
MAX_UTTERANCE_MS = 30000


class WhisperBackend(SpeechBackend):
    """Turns webrtcvad activity + whisper re-decodes into recognizer events.

    Caller audio is resampled to 16 kHz before voice detection and decoding.
    Interim transcripts come from re-decoding the recent window every
    partial_interval_ms; the final transcript is one decode of the whole
    utterance once vad_silence_ms of silence has passed.
    """

    def __init__(self, settings: ReceptionistSettings, transcriber: WhisperTranscriber):
        self.settings = settings
        self.transcriber = transcriber
        self._audio: asyncio.Queue = asyncio.Queue()
        self._events: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._input_rate = WHISPER_SAMPLE_RATE
        self._closing = False

    async def connect(self, sample_rate: int, channels: int) -> None:
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, self.transcriber.available):
            raise RuntimeError(f"Whisper model {self.transcriber.model_name} unavailable")
        self._input_rate = sample_rate
        vad = VadState(vad=webrtcvad.Vad(self.settings.vad_aggressiveness),
                       silence_ms=self.settings.vad_silence_ms, sample_rate=WHISPER_SAMPLE_RATE)
        self._worker = asyncio.create_task(self._run(vad))
        self._events.put_nowait(RecognizerEvent(RecognizerEventKind.OPEN))

    def send(self, pcm: bytes) -> None:
        if not self._closing:
            self._audio.put_nowait(pcm)

    async def events(self) -> AsyncIterator[RecognizerEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _decode(self, pcm: bytes) -> str:
        loop = asyncio.get_running_loop()
        text, decode_ms = await loop.run_in_executor(None, self.transcriber.transcribe, pcm)
        logger.debug(f"Whisper decode {len(pcm)} bytes in {decode_ms:.1f}ms")
        return text

    async def _run(self, vad: VadState) -> None:
        pcm = bytearray()
        last_partial = 0.0
        last_partial_text = ""
        bytes_per_ms = WHISPER_SAMPLE_RATE * 2 / 1000
        window_bytes = int(self.settings.partial_window_ms * bytes_per_ms)
        try:
            while True:
                chunk = await self._audio.get()
                if chunk is None:
                    break
                chunk = resample_pcm16(chunk, self._input_rate, WHISPER_SAMPLE_RATE)
                pcm.extend(chunk)
                if vad.process(chunk):
                    self._events.put_nowait(RecognizerEvent(RecognizerEventKind.SPEECH_STARTED))
                if not vad.speech_started:
                    # keep a short pre-roll so the first syllable is not clipped
                    keep = int(PRE_ROLL_MS * bytes_per_ms)
                    if len(pcm) > keep:
                        del pcm[:-keep]
                    continue
                duration_ms = pcm_duration_ms(len(pcm), WHISPER_SAMPLE_RATE)
                if vad.silence_exceeded() or duration_ms >= MAX_UTTERANCE_MS:
                    text = await self._decode(bytes(pcm))
                    if text:
                        self._events.put_nowait(RecognizerEvent(RecognizerEventKind.TRANSCRIPT, text=text, is_final=True))
                    self._events.put_nowait(RecognizerEvent(RecognizerEventKind.UTTERANCE_END))
                    pcm.clear()
                    vad.reset()
                    last_partial_text = ""
                    continue
                now = time.time()
                if (now - last_partial) * 1000 >= self.settings.partial_interval_ms:
                    last_partial = now
                    text = await self._decode(bytes(pcm[-window_bytes:]))
                    if text and text != last_partial_text:
                        last_partial_text = text
                        self._events.put_nowait(RecognizerEvent(RecognizerEventKind.TRANSCRIPT, text=text, is_final=False))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Whisper backend failure: {e}")
            self._events.put_nowait(RecognizerEvent(RecognizerEventKind.ERROR, message=str(e)))
        finally:
            self._events.put_nowait(None)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._audio.put_nowait(None)
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker


def build_speech_backend_factory(settings: ReceptionistSettings,
                                 transcriber: Optional[WhisperTranscriber] = None) -> SpeechBackendFactory:
    if settings.speech_backend == "whisper":
        shared = transcriber or WhisperTranscriber(settings.whisper_model)
        return lambda: WhisperBackend(settings, shared)
    return lambda: DeepgramBackend(settings)
