"""Speech synthesis - reply text to a sequence-numbered, cancellable audio chunk stream"""
from __future__ import annotations
import asyncio
import logging
import os
import tempfile
import threading
from typing import AsyncGenerator, AsyncIterator, Optional

import pyttsx3
from openai import AsyncOpenAI

from .audio import AudioChunk
from .config import ReceptionistSettings
from .errors import ReceptionistError, SynthesisFailed
from .streams import CancellableStream

logger = logging.getLogger(__name__)


class TTSEngine:
    """Base class for TTS engines"""

    mime = "application/octet-stream"

    def __init__(self, engine_name: str):
        self.engine_name = engine_name

    def stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield encoded audio bytes for text, in playback order"""
        raise NotImplementedError

    def cleanup(self) -> None:
        """Cleanup resources."""
        pass


class OpenAISpeechEngine(TTSEngine):
    """Streams OpenAI speech audio as it is produced"""

    def __init__(self, client: AsyncOpenAI, settings: ReceptionistSettings):
        super().__init__("openai")
        self.client = client
        self.settings = settings
        self.mime = f"audio/{settings.tts_format}"

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        async with self.client.audio.speech.with_streaming_response.create(
            model=self.settings.tts_model,
            voice=self.settings.tts_voice,
            input=text,
            response_format=self.settings.tts_format,
        ) as response:
            async for data in response.iter_bytes(self.settings.tts_chunk_bytes):
                yield data


class Pyttsx3Engine(TTSEngine):
    """pyttsx3 TTS engine implementation - renders a WAV in a worker thread"""

    mime = "audio/wav"

    def __init__(self, chunk_bytes: int = 4096, rate: int = 190):
        super().__init__("pyttsx3")
        self.chunk_bytes = chunk_bytes
        self.rate = rate
        self.engine = None
        self._lock = threading.Lock()

    def _ensure_engine(self):
        if self.engine is None:
            self.engine = pyttsx3.init()
            self.engine.setProperty('rate', self.rate)
            logger.info("pyttsx3 TTS engine initialized successfully")
        return self.engine

    def synthesize_to_bytes(self, text: str) -> bytes:
        """Synthesize text to WAV bytes using pyttsx3"""
        # the pyttsx3 engine is not re-entrant; calls share one instance
        with self._lock:
            engine = self._ensure_engine()
            with tempfile.NamedTemporaryFile(suffix='.wav', delete=False) as temp_file:
                temp_filename = temp_file.name
            try:
                engine.save_to_file(text, temp_filename)
                engine.runAndWait()
                with open(temp_filename, 'rb') as audio_file:
                    return audio_file.read()
            finally:
                try:
                    os.unlink(temp_filename)
                except OSError:
                    logger.debug(f"Could not remove temp file {temp_filename}")

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self.synthesize_to_bytes, text)
        for i in range(0, len(data), self.chunk_bytes):
            yield data[i:i + self.chunk_bytes]

    def cleanup(self) -> None:
        if self.engine is not None:
            self.engine.stop()
            self.engine = None


class AudioStream(CancellableStream[AudioChunk]):
    pass


class SpeechSynthesizer:
    """Wraps a TTS engine into sequence-numbered AudioChunks.

    One chunk is held back so the last one can be flagged final; that single
    chunk is the only buffering between the engine and the consumer.
    """

    def __init__(self, engine: TTSEngine, settings: ReceptionistSettings):
        self.engine = engine
        self.settings = settings

    @property
    def mime(self) -> str:
        return self.engine.mime

    def synthesize(self, text: str) -> AudioStream:
        return AudioStream(self._run(text), name="audio")

    async def _run(self, text: str) -> AsyncGenerator[AudioChunk, None]:
        seq = 0
        held: Optional[bytes] = None
        try:
            async for data in self.engine.stream(text):
                if not data:
                    continue
                if held is not None:
                    yield AudioChunk(sequence=seq, data=held, final=False)
                    seq += 1
                held = data
            if held is not None:
                yield AudioChunk(sequence=seq, data=held, final=True)
        except (asyncio.CancelledError, GeneratorExit):
            raise
        except ReceptionistError:
            raise
        except Exception as e:
            logger.error(f"Error synthesizing text with {self.engine.engine_name}: {e}")
            raise SynthesisFailed(f"TTS synthesis error: {e}") from e


def build_tts_engine(settings: ReceptionistSettings, client: Optional[AsyncOpenAI] = None) -> TTSEngine:
    if settings.tts_backend == "pyttsx3":
        return Pyttsx3Engine(chunk_bytes=settings.tts_chunk_bytes)
    return OpenAISpeechEngine(client or AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.tts_timeout_s), settings)
