"""WebSocket endpoint - accepts the duplex channel and runs one Call on it"""
from __future__ import annotations
import logging

from fastapi import WebSocket

from .deps import RuntimeDeps
from .errors import log_event
from .session import Call, new_call_id
from .transport import Transport

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


async def handle(ws: WebSocket, deps: RuntimeDeps) -> None:
    settings = deps.settings
    if settings.require_session_token:
        session_id = ws.query_params.get("session_id")
        token = ws.query_params.get("token")
        if not deps.tokens.verify(session_id, token):
            log_event("auth_rejected", session_id=session_id)
            await ws.close(code=POLICY_VIOLATION)
            return
        call_id = session_id
    else:
        call_id = new_call_id()
    await ws.accept()
    transport = Transport(ws, call_id)
    call = Call(id=call_id, transport=transport, controller=deps.build_controller(call_id, transport))
    await deps.calls.add(call)
    logger.info(f"Call {call_id} connected ({deps.calls.count()} active)")
    try:
        await call.run()
    finally:
        await deps.calls.remove(call_id)
        logger.info(f"Call {call_id} ended")
