"""Call ownership, the active-call registry and session tokens"""
from __future__ import annotations
import asyncio
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from . import messages
from .errors import log_event
from .events import TransportClosed
from .transport import Transport
from .turn import TurnController

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Call:
    """One duplex session: its transport and the controller that owns its state"""
    id: str
    transport: Transport
    controller: TurnController
    created_at: float = field(default_factory=time.time)

    async def _read(self) -> None:
        try:
            async for frame in self.transport.incoming():
                self.controller.post(frame)
        finally:
            self.controller.post(TransportClosed("disconnect"))

    async def run(self) -> None:
        log_event("session_open", call_id=self.id)
        reader = asyncio.create_task(self._read())
        try:
            await self.controller.run()
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            await self.transport.close()
            log_event("session_close", call_id=self.id, duration_s=round(time.time() - self.created_at, 1))


class CallRegistry:
    """Active calls keyed by id; the only structure shared across calls"""

    def __init__(self):
        self._calls: Dict[str, Call] = {}
        self._lock = asyncio.Lock()

    async def add(self, call: Call) -> None:
        async with self._lock:
            self._calls[call.id] = call

    async def remove(self, call_id: str) -> None:
        async with self._lock:
            self._calls.pop(call_id, None)

    def count(self) -> int:
        return len(self._calls)

    async def broadcast_shutdown(self, reason: str = "server_shutdown") -> None:
        async with self._lock:
            calls = list(self._calls.values())
        for call in calls:
            await call.transport.send_control(messages.status("Server shutting down", reason=reason))
            call.controller.post(TransportClosed(reason))
            await call.transport.close(code=1001)


class SessionTokenStore:
    """Short-lived session id + token pairs for authorizing the websocket"""

    def __init__(self, ttl_s: int = 300):
        self.ttl_s = ttl_s
        self._tokens: Dict[str, Tuple[str, float]] = {}

    def issue(self) -> Dict[str, object]:
        self._purge()
        session_id = new_call_id()
        token = secrets.token_urlsafe(24)
        expires_at = time.time() + self.ttl_s
        self._tokens[session_id] = (token, expires_at)
        return {"sessionId": session_id, "token": token, "expiresAt": int(expires_at)}

    def verify(self, session_id: Optional[str], token: Optional[str]) -> bool:
        """Consume a session token; each pair authorizes one connection"""
        if not session_id or not token:
            return False
        entry = self._tokens.pop(session_id, None)
        if entry is None:
            return False
        expected, expires_at = entry
        if time.time() > expires_at:
            return False
        return secrets.compare_digest(expected, token)

    def _purge(self) -> None:
        now = time.time()
        for sid in [s for s, (_, exp) in self._tokens.items() if exp < now]:
            del self._tokens[sid]

    def __len__(self) -> int:
        return len(self._tokens)
