import pytest

from backend.receptionist.config import TRANSITIONS, TurnState, can_transition
from backend.receptionist.errors import ConfigurationError

from conftest import make_settings


def test_settings_defaults():
    cfg = make_settings()
    assert cfg.sample_rate == 16000
    assert cfg.history_window == 10
    assert cfg.max_tool_iterations == 10
    assert cfg.utterance_end_ms == 1200
    assert cfg.tts_voice == "alloy"
    assert cfg.missing_credentials() == []


def test_invalid_settings_list_every_error():
    with pytest.raises(ValueError) as exc:
        make_settings(speech_backend="carrier-pigeon", vad_silence_ms=10, history_window=1)
    msg = str(exc.value)
    assert "speech_backend" in msg
    assert "vad_silence_ms" in msg
    assert "history_window" in msg


def test_missing_credentials_follow_backends():
    assert make_settings(deepgram_api_key="", openai_api_key="").missing_credentials() == [
        "DEEPGRAM_API_KEY", "OPENAI_API_KEY"]
    local = make_settings(speech_backend="whisper", llm_backend="local", tts_backend="pyttsx3",
                          deepgram_api_key="", openai_api_key="")
    assert local.missing_credentials() == []


def test_barge_in_edges_exist():
    assert can_transition(TurnState.SPEAKING, TurnState.UTTERANCE_COLLECTING)
    assert can_transition(TurnState.RESPONDING, TurnState.UTTERANCE_COLLECTING)
    assert not can_transition(TurnState.LISTENING, TurnState.SPEAKING)
    assert not can_transition(TurnState.IDLE, TurnState.RESPONDING)
    assert set(TRANSITIONS) == set(TurnState)


def test_require_credentials_raises_fatal_error():
    with pytest.raises(ConfigurationError) as exc:
        make_settings(openai_api_key="").require_credentials()
    assert exc.value.code == "CONFIG_MISSING"
    assert exc.value.recoverable is False
    assert "OPENAI_API_KEY" in exc.value.message
    make_settings().require_credentials()
