"""Conversation history - sliding window plus the barge-in rewrite"""
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

INTERRUPTED_MARKER = "[interrupted by user]"
ROLES = ("user", "assistant")


@dataclass(frozen=True)
class HeardEstimate:
    text: str
    fraction: float
    words_heard: int
    total_words: int

    @property
    def truncated(self) -> bool:
        return self.words_heard < self.total_words

    def history_content(self) -> str:
        if not self.truncated:
            return self.text
        return f"{self.text} {INTERRUPTED_MARKER}".strip()


def heard_fraction(interrupted_at: float, total_duration: float) -> float:
    if not (math.isfinite(interrupted_at) and math.isfinite(total_duration)) or total_duration <= 0:
        return 0.0
    return min(1.0, max(0.0, interrupted_at / total_duration))


def estimate_heard_text(full_text: str, interrupted_at: float, total_duration: float) -> HeardEstimate:
    """Map playback position linearly onto the reply's words.

    Assumes uniform speaking rate across the reply; words are counted on
    whitespace and the leading floor(words * fraction) are kept.
    """
    fraction = heard_fraction(interrupted_at, total_duration)
    words = full_text.split()
    heard = int(math.floor(len(words) * fraction))
    return HeardEstimate(text=" ".join(words[:heard]), fraction=fraction,
                         words_heard=heard, total_words=len(words))


class ConversationHistory:
    """Most-recent-N window of {role, content} entries; oldest dropped first"""

    def __init__(self, window: int = 10):
        if window < 1:
            raise ValueError("history window must be >= 1")
        self.window = window
        self._entries: List[Dict[str, str]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, role: str, content: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unsupported role {role!r}")
        self._entries.append({"role": role, "content": content})
        self._trim()

    def _trim(self) -> None:
        if len(self._entries) > self.window:
            del self._entries[:len(self._entries) - self.window]

    def last(self) -> Optional[Dict[str, str]]:
        return dict(self._entries[-1]) if self._entries else None

    def rewrite_last_assistant(self, content: str) -> bool:
        """Replace the newest entry if it is the assistant's; False otherwise"""
        if not self._entries or self._entries[-1]["role"] != "assistant":
            return False
        self._entries[-1] = {"role": "assistant", "content": content}
        return True

    def as_messages(self) -> List[Dict[str, str]]:
        return [dict(e) for e in self._entries]
