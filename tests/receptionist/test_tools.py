import asyncio
import json
import logging

from pydantic import BaseModel

from backend.receptionist.tools import ToolCall, ToolRegistry, default_registry


class SlowArgs(BaseModel):
    pass


def test_default_registry_schemas():
    reg = default_registry()
    assert reg.names() == ["checkAvailability", "bookAppointment", "lookupCustomer"]
    schema = reg.schemas()[1]
    assert schema["type"] == "function"
    assert "customerPhone" in schema["function"]["parameters"]["required"]


def test_book_appointment_mock():
    reg = default_registry()
    args = ('{"date": "2025-03-01", "time": "09:00", "customerName": "Sam", '
            '"customerPhone": "555-0100", "serviceType": "oil change"}')
    result = asyncio.run(reg.invoke(ToolCall(id="1", name="bookAppointment", arguments=args)))
    assert result["confirmationNumber"].startswith("MOCK-")
    assert result["appointment"]["customerName"] == "Sam"


def test_invalid_arguments_become_error_result():
    reg = default_registry()
    result = asyncio.run(reg.invoke(ToolCall(id="1", name="lookupCustomer", arguments="{not json")))
    assert result == {"error": "Invalid tool arguments"}
    result = asyncio.run(reg.invoke(ToolCall(id="2", name="lookupCustomer", arguments="{}")))
    assert result == {"error": "Invalid tool arguments"}


def test_tool_timeout():
    async def slow(args):
        await asyncio.sleep(1)
        return {}

    reg = ToolRegistry(timeout_s=0.01)
    reg.register("slow", "Slow", SlowArgs, slow)
    assert asyncio.run(reg.invoke(ToolCall(id="1", name="slow", arguments=""))) == {"error": "Tool timed out"}


def test_tool_crash_is_logged_with_code(caplog):
    async def broken(args):
        raise RuntimeError("calendar offline")

    reg = ToolRegistry()
    reg.register("broken", "Broken", SlowArgs, broken)
    caplog.set_level(logging.INFO, logger="receptionist.events")
    result = asyncio.run(reg.invoke(ToolCall(id="1", name="broken", arguments="{}")))
    assert result == {"error": "Tool execution failed"}
    logged = [json.loads(r.getMessage()) for r in caplog.records if r.name == "receptionist.events"]
    assert logged[-1]["event"] == "tool_error"
    assert logged[-1]["code"] == "TOOL_FAIL"
