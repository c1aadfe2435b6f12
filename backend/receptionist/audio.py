"""Audio codec - PCM16 conversion, chunk encoding and reassembly"""
from __future__ import annotations
import base64
from dataclasses import dataclass
from typing import Any, Dict, List

import numpy as np

from .errors import ProtocolViolation

BYTES_PER_SAMPLE = 2


@dataclass(frozen=True)
class AudioChunk:
    sequence: int
    data: bytes
    final: bool = False

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "audio_chunk",
            "audio": encode_audio(self.data),
            "sequence": self.sequence,
            "final": self.final,
        }

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "AudioChunk":
        try:
            sequence = int(msg["sequence"])
            data = decode_audio(msg["audio"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolViolation(f"Malformed audio_chunk: {e}") from e
        return cls(sequence=sequence, data=data, final=bool(msg.get("final", False)))


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """Float samples in [-1.0, 1.0] to little-endian int16 bytes"""
    if samples.size == 0:
        return b""
    clamped = np.clip(samples.astype(np.float32), -1.0, 1.0)
    scaled = np.where(clamped < 0, clamped * 0x8000, clamped * 0x7FFF)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float32(pcm: bytes) -> np.ndarray:
    if not pcm:
        return np.zeros(0, dtype=np.float32)
    ints = np.frombuffer(pcm, dtype="<i2").astype(np.float32)
    return np.where(ints < 0, ints / 0x8000, ints / 0x7FFF).astype(np.float32)


def resample_pcm16(pcm: bytes, src_rate: int, dst_rate: int) -> bytes:
    """Linear-interpolation resample of mono PCM16"""
    if src_rate == dst_rate or not pcm:
        return pcm
    samples = np.frombuffer(pcm, dtype="<i2").astype(np.float32)
    out_len = int(round(samples.size * dst_rate / src_rate))
    if out_len == 0:
        return b""
    positions = np.arange(out_len, dtype=np.float64) * src_rate / dst_rate
    resampled = np.interp(positions, np.arange(samples.size), samples)
    return np.clip(np.round(resampled), -0x8000, 0x7FFF).astype("<i2").tobytes()


def validate_pcm_frame(pcm: bytes, max_bytes: int) -> None:
    if not pcm:
        raise ProtocolViolation("Empty audio frame")
    if len(pcm) > max_bytes:
        raise ProtocolViolation(f"Binary frame too large: {len(pcm)} bytes (max: {max_bytes})")
    if len(pcm) % BYTES_PER_SAMPLE:
        raise ProtocolViolation(f"Binary frame is not whole 16-bit samples ({len(pcm)} bytes)")


def pcm_duration_ms(num_bytes: int, sample_rate: int, channels: int = 1) -> float:
    return num_bytes / (sample_rate * BYTES_PER_SAMPLE * channels) * 1000.0


def encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_audio(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


class AudioReassembler:
    """Rebuilds one turn's audio from sequence-numbered chunks.

    Chunks must arrive as 0, 1, 2, ... with nothing after the chunk marked
    final. Anything else raises ProtocolViolation; gaps are never papered over.
    """

    def __init__(self):
        self._parts: List[bytes] = []
        self._expected = 0
        self._complete = False

    @property
    def expected_sequence(self) -> int:
        return self._expected

    @property
    def complete(self) -> bool:
        return self._complete

    def add(self, chunk: AudioChunk) -> None:
        if self._complete:
            raise ProtocolViolation(f"Audio chunk {chunk.sequence} after final chunk")
        if chunk.sequence != self._expected:
            raise ProtocolViolation(
                f"Out-of-order audio chunk: expected {self._expected}, got {chunk.sequence}"
            )
        self._parts.append(chunk.data)
        self._expected += 1
        if chunk.final:
            self._complete = True

    def add_message(self, msg: Dict[str, Any]) -> None:
        self.add(AudioChunk.from_message(msg))

    def finish(self) -> None:
        """Mark the stream ended (audio_end) without a final-flagged chunk"""
        self._complete = True

    def audio(self) -> bytes:
        return b"".join(self._parts)

    def reset(self) -> None:
        self._parts.clear()
        self._expected = 0
        self._complete = False


def reassemble(chunks: List[AudioChunk]) -> bytes:
    r = AudioReassembler()
    for c in chunks:
        r.add(c)
    return r.audio()
