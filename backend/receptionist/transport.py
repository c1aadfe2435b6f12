"""Duplex transport - binary audio frames and JSON control messages over one websocket"""
from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict

from fastapi import WebSocket, WebSocketDisconnect

from .events import TransportFrame

logger = logging.getLogger(__name__)


class Transport:
    """Framing only: no content inspection beyond JSON decoding.

    Inbound items are TransportFrame(binary=...) or TransportFrame(control=...);
    undecodable text frames come through as TransportFrame(error=...) so the
    controller can report them without the channel going down.
    """

    def __init__(self, websocket: WebSocket, call_id: str = ""):
        self.websocket = websocket
        self.call_id = call_id
        self.closed = False
        self.sent_messages = 0

    async def send_control(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            await self.websocket.send_json(event)
            self.sent_messages += 1
            return True
        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected for call {self.call_id}")
        except RuntimeError as e:
            # Starlette raises RuntimeError once the socket has been closed
            logger.warning(f"Send after close for call {self.call_id}: {e}")
        self.closed = True
        return False

    async def send_audio(self, data: bytes) -> bool:
        if self.closed:
            return False
        try:
            await self.websocket.send_bytes(data)
            return True
        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected for call {self.call_id}")
        except RuntimeError as e:
            logger.warning(f"Send after close for call {self.call_id}: {e}")
        self.closed = True
        return False

    async def incoming(self) -> AsyncIterator[TransportFrame]:
        while not self.closed:
            try:
                data = await self.websocket.receive()
            except WebSocketDisconnect:
                break
            except RuntimeError:
                break
            if data.get("type") == "websocket.disconnect":
                break
            if data.get("bytes") is not None:
                yield TransportFrame(binary=data["bytes"])
            elif data.get("text") is not None:
                yield self._decode_text(data["text"])
            else:
                yield TransportFrame(error="Unsupported frame")
        self.closed = True

    @staticmethod
    def _decode_text(text: str) -> TransportFrame:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return TransportFrame(error="Invalid JSON")
        if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
            return TransportFrame(error="Control message must be an object with a string 'type'")
        return TransportFrame(control=payload)

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code)
        except RuntimeError as e:
            logger.debug(f"Close after close for call {self.call_id}: {e}")
