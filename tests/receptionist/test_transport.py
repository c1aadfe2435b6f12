import asyncio
import time

from backend.receptionist.session import SessionTokenStore
from backend.receptionist.transport import Transport


class FakeWebSocket:
    def __init__(self, incoming=(), fail_send=False):
        self.incoming = list(incoming)
        self.fail_send = fail_send
        self.sent = []
        self.closed_with = None

    async def receive(self):
        if self.incoming:
            return self.incoming.pop(0)
        return {"type": "websocket.disconnect"}

    async def send_json(self, payload):
        if self.fail_send:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(payload)

    async def send_bytes(self, data):
        if self.fail_send:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code


def test_incoming_frames_are_classified():
    ws = FakeWebSocket([
        {"type": "websocket.receive", "bytes": b"\x00\x01"},
        {"type": "websocket.receive", "text": '{"type": "start"}'},
        {"type": "websocket.receive", "text": "not json"},
        {"type": "websocket.receive", "text": "[1, 2]"},
    ])
    transport = Transport(ws, "c1")

    async def collect():
        return [f async for f in transport.incoming()]

    frames = asyncio.run(collect())
    assert frames[0].binary == b"\x00\x01"
    assert frames[1].control == {"type": "start"}
    assert frames[2].error == "Invalid JSON"
    assert frames[3].error is not None
    assert transport.closed


def test_send_after_close_marks_transport_closed():
    transport = Transport(FakeWebSocket(fail_send=True), "c1")
    assert asyncio.run(transport.send_control({"type": "status"})) is False
    assert transport.closed
    assert asyncio.run(transport.send_audio(b"\x00")) is False


def test_send_and_close():
    ws = FakeWebSocket()
    transport = Transport(ws, "c1")
    assert asyncio.run(transport.send_control({"type": "status", "message": "ok"})) is True
    assert asyncio.run(transport.send_audio(b"\x01\x02")) is True
    asyncio.run(transport.close(1001))
    assert ws.sent == [{"type": "status", "message": "ok"}, b"\x01\x02"]
    assert ws.closed_with == 1001


def test_session_tokens_are_single_use():
    store = SessionTokenStore(ttl_s=60)
    issued = store.issue()
    assert store.verify(issued["sessionId"], "wrong") is False
    issued = store.issue()
    assert store.verify(issued["sessionId"], issued["token"]) is True
    assert store.verify(issued["sessionId"], issued["token"]) is False


def test_session_tokens_expire():
    store = SessionTokenStore(ttl_s=60)
    issued = store.issue()
    token, _ = store._tokens[issued["sessionId"]]
    store._tokens[issued["sessionId"]] = (token, time.time() - 1)
    assert store.verify(issued["sessionId"], issued["token"]) is False
    assert store.verify(None, None) is False
