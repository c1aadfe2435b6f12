import asyncio

import pytest
import webrtcvad

from backend.receptionist import asr
from backend.receptionist.asr import RecognizerEventKind, WhisperBackend, WhisperTranscriber, _canonical_model_name
from backend.receptionist.vad import VadState, frame_bytes

from conftest import make_settings


def test_vad_state_initial():
    vs = VadState(vad=webrtcvad.Vad(0), silence_ms=700)
    assert vs.last_voice_ts is None
    assert vs.speech_started is False
    assert frame_bytes(16000) == 960


def test_silence_never_starts_speech():
    vs = VadState(vad=webrtcvad.Vad(3), silence_ms=10)
    assert vs.process(b"\x00" * frame_bytes(16000) * 3) is False
    assert vs.speech_started is False
    assert vs.silence_exceeded() is False


def test_silence_window_after_voice():
    vs = VadState(vad=webrtcvad.Vad(0), silence_ms=500)
    vs.speech_started = True
    vs.last_voice_ts = 100.0
    assert vs.silence_exceeded(now=100.2) is False
    assert vs.silence_exceeded(now=100.6) is True
    vs.reset()
    assert vs.silence_exceeded(now=200.0) is False


class UnavailableTranscriber(WhisperTranscriber):
    def load(self):
        return None


def test_whisper_backend_refuses_without_model():
    backend = WhisperBackend(make_settings(speech_backend="whisper"), UnavailableTranscriber("tiny"))
    with pytest.raises(RuntimeError):
        asyncio.run(backend.connect(16000, 1))


def test_model_name_normalized():
    assert _canonical_model_name("small-int8") == "small"
    assert _canonical_model_name("base.en") == "base.en"


class RecordingTranscriber(WhisperTranscriber):
    def __init__(self):
        super().__init__("tiny")
        self.decoded = []

    def load(self):
        return object()

    def transcribe(self, pcm):
        self.decoded.append(len(pcm))
        return "book me in", 1.0


class EagerVad(VadState):
    """Starts speech on the first chunk and reports silence after the second"""
    created = []

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.chunks = 0
        EagerVad.created.append(self)

    def process(self, pcm_chunk):
        self.chunks += 1
        started = not self.speech_started
        self.speech_started = True
        return started

    def silence_exceeded(self, now=None):
        return self.chunks >= 2


def test_whisper_backend_decodes_at_16k(monkeypatch):
    monkeypatch.setattr(asr, "VadState", EagerVad)
    transcriber = RecordingTranscriber()

    async def scenario():
        backend = WhisperBackend(make_settings(speech_backend="whisper"), transcriber)
        await backend.connect(24000, 1)
        # two 100 ms chunks at 24 kHz
        backend.send(b"\x10\x00" * 2400)
        backend.send(b"\x10\x00" * 2400)
        kinds = []
        while True:
            event = await asyncio.wait_for(backend._events.get(), timeout=2.0)
            kinds.append(event.kind)
            if event.kind == RecognizerEventKind.UTTERANCE_END:
                break
        await backend.close()
        return kinds

    kinds = asyncio.run(scenario())
    assert RecognizerEventKind.ERROR not in kinds
    assert kinds[:2] == [RecognizerEventKind.OPEN, RecognizerEventKind.SPEECH_STARTED]
    assert EagerVad.created[-1].sample_rate == 16000
    # 200 ms at 16 kHz
    assert transcriber.decoded[-1] == 6400


@pytest.mark.parametrize("rate", [8000, 24000, 48000])
def test_whisper_backend_accepts_supported_rates(rate):
    async def scenario():
        backend = WhisperBackend(make_settings(speech_backend="whisper"), RecordingTranscriber())
        await backend.connect(rate, 1)
        backend.send(b"\x00\x00" * (rate // 10))
        while not backend._audio.empty():
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        await backend.close()
        events = []
        while not backend._events.empty():
            events.append(backend._events.get_nowait())
        return events

    kinds = [e.kind for e in asyncio.run(scenario()) if e is not None]
    assert kinds == [RecognizerEventKind.OPEN]
