"""Runtime dependency construction.

Backend clients are built once per process and shared read-only across
calls; every call gets its own controller, generator and synthesizer.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI

from .asr import SpeechBackendFactory, build_speech_backend_factory
from .config import ReceptionistSettings, load_settings
from .llm_stream import ChatModel, ResponseGenerator, build_chat_model
from .session import CallRegistry, SessionTokenStore
from .tools import ToolRegistry, default_registry
from .transport import Transport
from .tts import SpeechSynthesizer, TTSEngine, build_tts_engine
from .turn import TurnController

logger = logging.getLogger(__name__)


@dataclass
class RuntimeDeps:
    settings: ReceptionistSettings
    speech_factory: SpeechBackendFactory
    chat_model: ChatModel
    tts_engine: TTSEngine
    tools: ToolRegistry
    calls: CallRegistry
    tokens: SessionTokenStore

    def build_controller(self, call_id: str, transport: Transport) -> TurnController:
        generator = ResponseGenerator(self.chat_model, self.tools, self.settings)
        synthesizer = SpeechSynthesizer(self.tts_engine, self.settings)
        return TurnController(call_id, transport, self.speech_factory, generator, synthesizer, self.settings)

    def cleanup(self) -> None:
        self.tts_engine.cleanup()


def build_runtime_deps(settings: Optional[ReceptionistSettings] = None) -> RuntimeDeps:
    settings = settings or load_settings()
    client = None
    if settings.llm_backend == "openai" or settings.tts_backend == "openai":
        # built without a key as well; calls are refused at start until it is set
        client = AsyncOpenAI(api_key=settings.openai_api_key or "unset", timeout=settings.llm_timeout_s)
    deps = RuntimeDeps(
        settings=settings,
        speech_factory=build_speech_backend_factory(settings),
        chat_model=build_chat_model(settings, client),
        tts_engine=build_tts_engine(settings, client),
        tools=default_registry(settings.tool_timeout_s),
        calls=CallRegistry(),
        tokens=SessionTokenStore(settings.session_token_ttl_s),
    )
    missing = settings.missing_credentials()
    if missing:
        logger.warning(f"Missing credentials {missing}; calls will be refused until they are configured")
    logger.info(f"Runtime ready: {settings.as_dict()}")
    return deps


__all__ = ["RuntimeDeps", "build_runtime_deps"]
