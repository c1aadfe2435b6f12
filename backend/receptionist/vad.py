"""Frame-level voice activity tracking for the local recognition backend"""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Optional

import webrtcvad

FRAME_MS = 30
BYTES_PER_SAMPLE = 2


def frame_bytes(sample_rate: int) -> int:
    return int(sample_rate * FRAME_MS / 1000) * BYTES_PER_SAMPLE


@dataclass
class VadState:
    vad: webrtcvad.Vad
    silence_ms: int
    sample_rate: int = 16000
    last_voice_ts: Optional[float] = None
    speech_started: bool = False

    def process(self, pcm_chunk: bytes) -> bool:
        """Feed whole 30 ms frames; returns True when this chunk started speech"""
        now = time.time()
        size = frame_bytes(self.sample_rate)
        started = False
        for i in range(0, len(pcm_chunk) - size + 1, size):
            frame = pcm_chunk[i:i + size]
            if self.vad.is_speech(frame, self.sample_rate):
                self.last_voice_ts = now
                if not self.speech_started:
                    self.speech_started = True
                    started = True
        return started

    def silence_exceeded(self, now: Optional[float] = None) -> bool:
        if not self.speech_started or self.last_voice_ts is None:
            return False
        now = time.time() if now is None else now
        return (now - self.last_voice_ts) * 1000 >= self.silence_ms

    def reset(self) -> None:
        self.last_voice_ts = None
        self.speech_started = False
