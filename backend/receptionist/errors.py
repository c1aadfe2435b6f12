"""Error taxonomy & structured logging helpers"""
from __future__ import annotations
import time, json, logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("receptionist.events")


class ErrorCode:
    PROTOCOL_VIOLATION = "PROTOCOL_VIOLATION"
    INTERNAL = "INTERNAL"
    CONFIG_MISSING = "CONFIG_MISSING"
    ASR_FAIL = "ASR_FAIL"
    LLM_FAIL = "LLM_FAIL"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    TTS_FAIL = "TTS_FAIL"
    TOOL_FAIL = "TOOL_FAIL"
    TOOL_LIMIT = "TOOL_LIMIT"


FATAL = {ErrorCode.CONFIG_MISSING}
RECOVERABLE = {
    ErrorCode.PROTOCOL_VIOLATION, ErrorCode.INTERNAL, ErrorCode.ASR_FAIL, ErrorCode.LLM_FAIL,
    ErrorCode.LLM_TIMEOUT, ErrorCode.TTS_FAIL, ErrorCode.TOOL_FAIL, ErrorCode.TOOL_LIMIT,
}

ALL_CODES = FATAL | RECOVERABLE


class ReceptionistError(Exception):
    """A classified failure the turn controller knows how to recover from"""
    code = ErrorCode.INTERNAL

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE


class ProtocolViolation(ReceptionistError):
    code = ErrorCode.PROTOCOL_VIOLATION


class ConfigurationError(ReceptionistError):
    code = ErrorCode.CONFIG_MISSING


class RecognitionFailed(ReceptionistError):
    code = ErrorCode.ASR_FAIL


class GenerationFailed(ReceptionistError):
    code = ErrorCode.LLM_FAIL


class SynthesisFailed(ReceptionistError):
    code = ErrorCode.TTS_FAIL


def log_event(event: str, **fields: Any) -> None:
    payload = {"ts": time.time(), "event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def error_payload(code: str, message: str, recoverable: bool | None = None) -> Dict[str, Any]:
    if recoverable is None:
        recoverable = code in RECOVERABLE
    return {"type": "error", "code": code, "message": message, "recoverable": recoverable}


async def emit_error(send_json: Callable[[Dict[str, Any]], Awaitable[Any]], code: str, message: str,
                     recoverable: bool | None = None, **fields: Any) -> None:
    payload = error_payload(code, message, recoverable)
    await send_json(payload)
    log_event("error", code=code, recoverable=payload["recoverable"], message=message, **fields)
