"""Control message taxonomy for the duplex channel"""
from __future__ import annotations
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolViolation

PROTOCOL_VERSION = 1
INTERRUPTED_MESSAGE = "User interrupted AI"


class MessageType:
    """Message type constants for the websocket protocol"""
    # server -> caller
    STATUS = "status"
    SPEECH_STARTED = "speech_started"
    UTTERANCE_END = "utterance_end"
    AI_RESPONSE_START = "ai_response_start"
    AI_RESPONSE_CHUNK = "ai_response_chunk"
    AI_RESPONSE_END = "ai_response_end"
    AUDIO_CHUNK = "audio_chunk"
    AUDIO_END = "audio_end"
    INTERRUPT_AI = "interrupt_ai"
    TRANSCRIPT = "transcript"
    ERROR = "error"
    # caller -> server
    START = "start"
    STOP = "stop"
    USER_INTERRUPTED = "user_interrupted"


# Caller -> server

class StartMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    type: str = MessageType.START
    sample_rate: Optional[int] = Field(default=None, alias="sampleRate")
    channels: Optional[int] = None


class StopMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    type: str = MessageType.STOP


class UserInterruptedMessage(BaseModel):
    """Caller-side playback position at the moment it stopped the reply"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    type: str = MessageType.USER_INTERRUPTED
    interrupted_at: float = Field(default=0.0, alias="interruptedAt")
    total_duration: float = Field(default=0.0, alias="totalDuration")
    full_text: str = Field(default="", alias="fullText")


ControlMessage = Union[StartMessage, StopMessage, UserInterruptedMessage]

_INBOUND = {
    MessageType.START: StartMessage,
    MessageType.STOP: StopMessage,
    MessageType.USER_INTERRUPTED: UserInterruptedMessage,
}


def parse_control(payload: Dict[str, Any]) -> ControlMessage:
    mtype = payload.get("type")
    model = _INBOUND.get(mtype)
    if model is None:
        raise ProtocolViolation(f"Unknown control message type: {mtype!r}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed {mtype} message: {e.errors()[0].get('msg', 'invalid')}") from e


# Server -> caller

def status(message: str, **fields: Any) -> Dict[str, Any]:
    return {"type": MessageType.STATUS, "message": message, **fields}


def speech_started() -> Dict[str, Any]:
    return {"type": MessageType.SPEECH_STARTED, "message": "User started speaking"}


def utterance_end(transcript: str) -> Dict[str, Any]:
    return {"type": MessageType.UTTERANCE_END, "message": "User finished speaking", "transcript": transcript}


def transcript(text: str, is_final: bool) -> Dict[str, Any]:
    return {"type": MessageType.TRANSCRIPT, "text": text, "is_final": is_final}


def ai_response_start() -> Dict[str, Any]:
    return {"type": MessageType.AI_RESPONSE_START}


def ai_response_chunk(text: str) -> Dict[str, Any]:
    return {"type": MessageType.AI_RESPONSE_CHUNK, "text": text}


def ai_response_end() -> Dict[str, Any]:
    return {"type": MessageType.AI_RESPONSE_END}


def audio_end(chunks: int) -> Dict[str, Any]:
    return {"type": MessageType.AUDIO_END, "chunks": chunks}


def interrupt_ai() -> Dict[str, Any]:
    return {"type": MessageType.INTERRUPT_AI, "message": INTERRUPTED_MESSAGE}
