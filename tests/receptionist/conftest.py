import asyncio
from typing import Any, Dict, List, Optional

import pytest

from backend.receptionist.asr import RecognizerEvent, RecognizerEventKind, SpeechBackend
from backend.receptionist.config import ReceptionistSettings
from backend.receptionist.events import TransportFrame
from backend.receptionist.llm_stream import ChatModel, ResponseGenerator, TextDelta, ToolCallsRequested
from backend.receptionist.tools import ToolCall, ToolRegistry
from backend.receptionist.tts import SpeechSynthesizer, TTSEngine
from backend.receptionist.turn import TurnController


def make_settings(**overrides) -> ReceptionistSettings:
    values = dict(deepgram_api_key="dg-test", openai_api_key="sk-test", _env_file=None)
    values.update(overrides)
    return ReceptionistSettings(**values)


class RecordingTransport:
    """Stands in for Transport; keeps every outbound message"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.audio: List[bytes] = []
        self.closed = False
        self.close_code: Optional[int] = None

    async def send_control(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.sent.append(event)
        return True

    async def send_audio(self, data: bytes) -> bool:
        if self.closed:
            return False
        self.audio.append(data)
        return True

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, mtype: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == mtype]


class ScriptedSpeechBackend(SpeechBackend):
    """Recognition backend driven by the test via push().

    on_audio, if given, is replayed once when the first audio frame arrives.
    """

    def __init__(self, on_audio: Optional[List[RecognizerEvent]] = None, fail_connect: bool = False):
        self.on_audio = list(on_audio or [])
        self.fail_connect = fail_connect
        self.received: List[bytes] = []
        self.connected = False
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self, sample_rate: int, channels: int) -> None:
        if self.fail_connect:
            raise ConnectionError("recognizer unreachable")
        self.sample_rate = sample_rate
        self.connected = True

    def send(self, pcm: bytes) -> None:
        self.received.append(pcm)
        if len(self.received) == 1:
            for event in self.on_audio:
                self._events.put_nowait(event)

    def push(self, kind: RecognizerEventKind, text: str = "", is_final: bool = False, message: str = "") -> None:
        self._events.put_nowait(RecognizerEvent(kind, text=text, is_final=is_final, message=message))

    def transcript(self, text: str, is_final: bool = True) -> None:
        self.push(RecognizerEventKind.TRANSCRIPT, text=text, is_final=is_final)

    async def events(self):
        yield RecognizerEvent(RecognizerEventKind.OPEN)
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._events.put_nowait(None)


class SpeechBackendPool:
    """Factory that records every backend it hands out"""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.backends: List[ScriptedSpeechBackend] = []
        self.fail_next = 0

    def __call__(self) -> ScriptedSpeechBackend:
        fail = self.fail_next > 0
        if fail:
            self.fail_next -= 1
        backend = ScriptedSpeechBackend(fail_connect=fail, **self.kwargs)
        self.backends.append(backend)
        return backend

    @property
    def last(self) -> ScriptedSpeechBackend:
        return self.backends[-1]


class ScriptedChatModel(ChatModel):
    """Replays one scripted round per call; the last round repeats.

    A round is a list of TextDelta / ToolCallsRequested / Exception items.
    If gate is set, every item after the first waits for it.
    """

    def __init__(self, rounds: List[List[Any]], gate: Optional[asyncio.Event] = None):
        self.rounds = rounds
        self.gate = gate
        self.calls: List[List[Dict[str, Any]]] = []

    async def stream(self, messages, tools):
        self.calls.append([dict(m) for m in messages])
        round_ = self.rounds[min(len(self.calls) - 1, len(self.rounds) - 1)]
        for i, item in enumerate(round_):
            if i and self.gate is not None:
                await self.gate.wait()
            if isinstance(item, Exception):
                raise item
            yield item
            await asyncio.sleep(0)


def reply_round(text: str) -> List[TextDelta]:
    words = text.split()
    return [TextDelta(w if i == 0 else " " + w) for i, w in enumerate(words)]


class AlwaysToolModel(ChatModel):
    """Requests a tool call on every round"""

    def __init__(self, tool_name: str = "echo"):
        self.tool_name = tool_name
        self.rounds = 0

    async def stream(self, messages, tools):
        self.rounds += 1
        yield ToolCallsRequested([ToolCall(id=f"call_{self.rounds}", name=self.tool_name, arguments="{}")])


class ScriptedTTSEngine(TTSEngine):
    """Yields the given byte chunks; optionally waits on gate after hold_after chunks"""

    mime = "audio/mpeg"

    def __init__(self, chunks: Optional[List[bytes]] = None, error: Optional[Exception] = None,
                 fail_after: int = 0, gate: Optional[asyncio.Event] = None, hold_after: int = 1):
        super().__init__("scripted")
        self.chunks = list(chunks if chunks is not None else [b"aa", b"bb", b"cc"])
        self.error = error
        self.fail_after = fail_after
        self.gate = gate
        self.hold_after = hold_after
        self.texts: List[str] = []

    async def stream(self, text: str):
        self.texts.append(text)
        for i, chunk in enumerate(self.chunks):
            if self.error is not None and i == self.fail_after:
                raise self.error
            if self.gate is not None and i >= self.hold_after:
                await self.gate.wait()
            yield chunk
            await asyncio.sleep(0)
        if self.error is not None and self.fail_after >= len(self.chunks):
            raise self.error


class Harness:
    def __init__(self, controller: TurnController, transport: RecordingTransport,
                 pool: SpeechBackendPool, model: ChatModel, engine: TTSEngine):
        self.controller = controller
        self.transport = transport
        self.pool = pool
        self.model = model
        self.engine = engine

    @property
    def backend(self) -> ScriptedSpeechBackend:
        return self.pool.last

    async def start(self) -> None:
        await self.controller.handle(_control({"type": "start", "sampleRate": 16000, "channels": 1}))
        await self.drain()

    async def control(self, payload: Dict[str, Any]) -> None:
        await self.controller.handle(_control(payload))

    async def drain(self, until=None, idle_timeout: float = 0.2, max_steps: int = 500) -> None:
        """Handle queued events until `until()` holds, or until the queue goes idle"""
        for _ in range(max_steps):
            if until is not None and until():
                return
            try:
                await self.controller.step(idle_timeout)
            except asyncio.TimeoutError:
                if until is None:
                    return
                raise AssertionError("controller went idle before condition was met")
        raise AssertionError("too many events")

    async def say(self, *finals: str) -> None:
        """One caller utterance: VAD activity, interim + final fragments, utterance end"""
        self.backend.push(RecognizerEventKind.SPEECH_STARTED)
        for text in finals:
            self.backend.transcript(text.split()[0], is_final=False)
            self.backend.transcript(text, is_final=True)
        self.backend.push(RecognizerEventKind.UTTERANCE_END)


def _control(payload: Dict[str, Any]):
    return TransportFrame(control=payload)


def build_harness(model: Optional[ChatModel] = None, engine: Optional[TTSEngine] = None,
                  tools: Optional[ToolRegistry] = None, **settings_overrides) -> Harness:
    settings = make_settings(**settings_overrides)
    transport = RecordingTransport()
    pool = SpeechBackendPool()
    model = model or ScriptedChatModel([reply_round("Sure, what day works for you?")])
    engine = engine or ScriptedTTSEngine()
    generator = ResponseGenerator(model, tools or ToolRegistry(), settings)
    synthesizer = SpeechSynthesizer(engine, settings)
    controller = TurnController("test-call", transport, pool, generator, synthesizer, settings)
    return Harness(controller, transport, pool, model, engine)


@pytest.fixture
def settings():
    return make_settings()
