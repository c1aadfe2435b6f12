"""Receptionist configuration and turn-state enums"""
from __future__ import annotations
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a professional receptionist for Prime Auto Lab, an automotive service company.

Your role:
- Greet callers warmly and professionally
- Answer questions about our services
- Help schedule appointments
- Collect lead information for new customers

Our services:
- General auto repair and maintenance
- Diagnostics and inspections
- Oil changes and fluid services
- Brake services
- Tire services
- Engine repairs

Guidelines:
- Keep responses concise and conversational (1-2 sentences)
- Be friendly but professional
- Ask for customer name, phone, and preferred date/time for appointments
- Use the scheduling tools to check availability before booking
- If you don't know something, offer to have someone call them back
- Always confirm details before ending the conversation

Important: Keep responses SHORT for natural voice conversation."""


class TurnState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    UTTERANCE_COLLECTING = "UTTERANCE_COLLECTING"
    RESPONDING = "RESPONDING"
    SPEAKING = "SPEAKING"


# Every legal move of the turn state machine. Barge-in is the
# RESPONDING/SPEAKING -> UTTERANCE_COLLECTING edge.
TRANSITIONS: Dict[TurnState, set] = {
    TurnState.IDLE: {TurnState.LISTENING},
    TurnState.LISTENING: {TurnState.UTTERANCE_COLLECTING, TurnState.IDLE},
    TurnState.UTTERANCE_COLLECTING: {TurnState.RESPONDING, TurnState.LISTENING, TurnState.IDLE},
    TurnState.RESPONDING: {TurnState.SPEAKING, TurnState.UTTERANCE_COLLECTING, TurnState.LISTENING, TurnState.IDLE},
    TurnState.SPEAKING: {TurnState.LISTENING, TurnState.UTTERANCE_COLLECTING, TurnState.IDLE},
}

SPEECH_BACKENDS = ("deepgram", "whisper")
LLM_BACKENDS = ("openai", "local")
TTS_BACKENDS = ("openai", "pyttsx3")


class ReceptionistSettings(BaseSettings):
    """Runtime settings for the receptionist server"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Backend selection
    speech_backend: str = "deepgram"
    llm_backend: str = "openai"
    tts_backend: str = "openai"

    # Credentials
    deepgram_api_key: str = ""
    openai_api_key: str = ""

    # Caller audio (16-bit signed PCM)
    sample_rate: int = 16000
    channels: int = 1
    max_frame_bytes: int = 64 * 1024

    # Speech recognition
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    utterance_end_ms: int = 1200
    speech_reconnect_attempts: int = 1

    # Local whisper fallback
    whisper_model: str = "small-int8"
    vad_silence_ms: int = 700
    vad_aggressiveness: int = 2
    partial_interval_ms: int = 1000
    partial_window_ms: int = 5000

    # Response generation
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 150
    openai_temperature: float = 0.7
    llm_timeout_s: float = 30.0
    max_tool_iterations: int = 10
    tool_timeout_s: float = 10.0
    system_prompt: str = SYSTEM_PROMPT

    # Speech synthesis
    tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    tts_format: str = "mp3"
    tts_chunk_bytes: int = 4096
    tts_timeout_s: float = 30.0

    # Conversation
    history_window: int = 10

    # Session bootstrap
    require_session_token: bool = False
    session_token_ttl_s: int = 300

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration values and raise errors for invalid settings"""
        errors = []
        if self.speech_backend not in SPEECH_BACKENDS:
            errors.append(f"speech_backend must be one of {SPEECH_BACKENDS}, got {self.speech_backend!r}")
        if self.llm_backend not in LLM_BACKENDS:
            errors.append(f"llm_backend must be one of {LLM_BACKENDS}, got {self.llm_backend!r}")
        if self.tts_backend not in TTS_BACKENDS:
            errors.append(f"tts_backend must be one of {TTS_BACKENDS}, got {self.tts_backend!r}")
        if self.sample_rate not in (8000, 16000, 24000, 48000):
            errors.append(f"sample_rate must be 8000, 16000, 24000 or 48000, got {self.sample_rate}")
        if self.channels != 1:
            errors.append(f"channels must be 1 (mono), got {self.channels}")
        if not (300 <= self.vad_silence_ms <= 2000):
            errors.append(f"vad_silence_ms must be between 300 and 2000, got {self.vad_silence_ms}")
        if not (0 <= self.vad_aggressiveness <= 3):
            errors.append(f"vad_aggressiveness must be between 0 and 3, got {self.vad_aggressiveness}")
        if not (250 <= self.partial_interval_ms <= 3000):
            errors.append(f"partial_interval_ms must be between 250 and 3000, got {self.partial_interval_ms}")
        if not (1000 <= self.utterance_end_ms <= 5000):
            errors.append(f"utterance_end_ms must be between 1000 and 5000, got {self.utterance_end_ms}")
        if self.max_tool_iterations < 1:
            errors.append("max_tool_iterations must be >= 1")
        if self.history_window < 2:
            errors.append("history_window must be >= 2")
        if self.llm_timeout_s < 5:
            errors.append("llm_timeout_s must be >= 5")
        if self.tool_timeout_s <= 0:
            errors.append("tool_timeout_s must be > 0")
        if self.tts_chunk_bytes < 256:
            errors.append("tts_chunk_bytes must be >= 256")
        if self.speech_reconnect_attempts < 0:
            errors.append("speech_reconnect_attempts must be >= 0")
        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    def missing_credentials(self) -> List[str]:
        """Credentials the selected backends need but which are not set"""
        missing = []
        if self.speech_backend == "deepgram" and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        needs_openai = self.llm_backend == "openai" or self.tts_backend == "openai"
        if needs_openai and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        return missing

    def require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(f"Missing backend credentials: {', '.join(missing)}")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "speech_backend": self.speech_backend,
            "llm_backend": self.llm_backend,
            "tts_backend": self.tts_backend,
            "sample_rate": self.sample_rate,
            "history_window": self.history_window,
            "max_tool_iterations": self.max_tool_iterations,
            "require_session_token": self.require_session_token,
        }


def load_settings(**overrides: Any) -> ReceptionistSettings:
    return ReceptionistSettings(**overrides)


def can_transition(current: TurnState, target: TurnState, table: Optional[Dict[TurnState, set]] = None) -> bool:
    return target in (table or TRANSITIONS).get(current, set())
