import asyncio

import pytest

from backend.receptionist.errors import SynthesisFailed
from backend.receptionist.streams import CancellableStream
from backend.receptionist.tts import OpenAISpeechEngine, Pyttsx3Engine, SpeechSynthesizer, build_tts_engine

from conftest import ScriptedTTSEngine, make_settings


async def collect(stream):
    return [c async for c in stream]


def test_chunks_are_numbered_and_last_is_final():
    synth = SpeechSynthesizer(ScriptedTTSEngine([b"ab", b"", b"cd", b"ef"]), make_settings())
    chunks = asyncio.run(collect(synth.synthesize("Hello")))
    assert [c.sequence for c in chunks] == [0, 1, 2]
    assert [c.data for c in chunks] == [b"ab", b"cd", b"ef"]
    assert [c.final for c in chunks] == [False, False, True]


def test_single_chunk_is_final():
    synth = SpeechSynthesizer(ScriptedTTSEngine([b"only"]), make_settings())
    chunks = asyncio.run(collect(synth.synthesize("Hi")))
    assert len(chunks) == 1 and chunks[0].final and chunks[0].sequence == 0


def test_engine_error_is_classified():
    engine = ScriptedTTSEngine([b"ab", b"cd"], error=RuntimeError("quota"), fail_after=1)
    synth = SpeechSynthesizer(engine, make_settings())
    with pytest.raises(SynthesisFailed) as exc:
        asyncio.run(collect(synth.synthesize("Hello")))
    assert exc.value.code == "TTS_FAIL"


def test_cancel_stops_chunks():
    async def scenario():
        synth = SpeechSynthesizer(ScriptedTTSEngine([b"1", b"2", b"3", b"4"]), make_settings())
        stream = synth.synthesize("Hello")
        first = await stream.__anext__()
        stream.cancel()
        rest = await collect(stream)
        await stream.aclose()
        return first, rest, stream.items

    first, rest, items = asyncio.run(scenario())
    assert first.sequence == 0
    assert rest == []
    assert items == 1


def test_item_produced_after_cancel_is_dropped():
    async def scenario():
        holder = {}

        async def producer():
            yield 1
            holder["stream"].cancel()
            yield 2

        stream = CancellableStream(producer(), name="test")
        holder["stream"] = stream
        return await collect(stream)

    assert asyncio.run(scenario()) == [1]


def test_engine_selection():
    assert isinstance(build_tts_engine(make_settings(tts_backend="pyttsx3")), Pyttsx3Engine)
    engine = build_tts_engine(make_settings(tts_backend="openai", tts_format="mp3"))
    assert isinstance(engine, OpenAISpeechEngine)
    assert engine.mime == "audio/mp3"
