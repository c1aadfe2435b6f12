"""Typed events carried on the per-call queue.

Everything that can change a call's state arrives here: transport frames,
speech adapter notifications and in-flight turn progress. The turn
controller consumes them one at a time.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from .audio import AudioChunk

if TYPE_CHECKING:  # pragma: no cover
    from .turn import InFlightTurn


# Transport

@dataclass(frozen=True)
class TransportFrame:
    binary: Optional[bytes] = None
    control: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TransportClosed:
    reason: str = "closed"


# Speech adapter. session_id ties each notification to one listening session
# so events from a stopped session can be recognised and dropped.

@dataclass(frozen=True)
class AdapterReady:
    session_id: int


@dataclass(frozen=True)
class SpeechActivityDetected:
    session_id: int


@dataclass(frozen=True)
class SpeechConfirmed:
    session_id: int


@dataclass(frozen=True)
class TranscriptFragment:
    session_id: int
    text: str
    is_final: bool


@dataclass(frozen=True)
class UtteranceEnded:
    session_id: int


@dataclass(frozen=True)
class AdapterError:
    session_id: int
    code: str
    message: str


SPEECH_EVENTS = (AdapterReady, SpeechActivityDetected, SpeechConfirmed, TranscriptFragment, UtteranceEnded, AdapterError)


# In-flight turn progress

@dataclass(frozen=True)
class TokenReceived:
    turn: "InFlightTurn"
    text: str


@dataclass(frozen=True)
class ResponseComplete:
    turn: "InFlightTurn"


@dataclass(frozen=True)
class AudioChunkReady:
    turn: "InFlightTurn"
    chunk: AudioChunk


@dataclass(frozen=True)
class SynthesisComplete:
    turn: "InFlightTurn"
    failed: bool = False
    message: str = ""


@dataclass(frozen=True)
class TurnFailed:
    turn: "InFlightTurn"
    code: str
    message: str


TURN_EVENTS = (TokenReceived, ResponseComplete, AudioChunkReady, SynthesisComplete, TurnFailed)
