"""Receptionist tools exposed to the language model.

Tool bodies are opaque to the conversation core: the generator only sees a
name, a JSON-schema for its arguments and a JSON-able result. The scheduling
tools below return mock data until a real calendar integration is wired in.
"""
from __future__ import annotations
import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .errors import ErrorCode, log_event

logger = logging.getLogger(__name__)

ToolFunc = Callable[[BaseModel], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class Tool:
    name: str
    description: str
    params: Type[BaseModel]
    func: ToolFunc

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.params.model_json_schema(),
            },
        }


class ToolRegistry:
    def __init__(self, timeout_s: float = 10.0):
        self.timeout_s = timeout_s
        self._tools: Dict[str, Tool] = {}

    def register(self, name: str, description: str, params: Type[BaseModel], func: ToolFunc) -> None:
        self._tools[name] = Tool(name, description, params, func)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    async def invoke(self, call: ToolCall) -> Dict[str, Any]:
        """Run one tool call; failures come back as an error result, never raised"""
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"Model requested unknown tool {call.name!r}")
            return {"error": "Unknown tool"}
        try:
            args = tool.params.model_validate(json.loads(call.arguments or "{}"))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Invalid arguments for tool {call.name}: {e}")
            return {"error": "Invalid tool arguments"}
        try:
            result = await asyncio.wait_for(tool.func(args), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            log_event("tool_timeout", code=ErrorCode.TOOL_FAIL, tool=call.name, timeout_s=self.timeout_s)
            return {"error": "Tool timed out"}
        except Exception as e:
            logger.error(f"Tool execution error in {call.name}: {e}")
            log_event("tool_error", code=ErrorCode.TOOL_FAIL, tool=call.name)
            return {"error": "Tool execution failed"}
        log_event("tool_call", tool=call.name)
        return result


# Mock scheduling tools

class CheckAvailabilityArgs(BaseModel):
    start: str = Field(description="Start date/time in ISO 8601 UTC format")
    end: str = Field(description="End date/time in ISO 8601 UTC format")
    serviceType: str = Field(description="Service type (e.g., oil change, brake repair)")
    timeZone: Optional[str] = Field(default=None, description="IANA timezone")


class BookAppointmentArgs(BaseModel):
    date: str
    time: str
    customerName: str
    customerPhone: str
    serviceType: str
    notes: Optional[str] = None


class LookupCustomerArgs(BaseModel):
    phone: str = Field(description="Customer phone number")


async def check_availability(args: CheckAvailabilityArgs) -> Dict[str, Any]:
    return {
        "status": "success",
        "availableSlots": [
            {"time": "09:00", "available": True},
            {"time": "11:00", "available": True},
            {"time": "14:00", "available": True},
            {"time": "16:00", "available": True},
        ],
        "message": "Mock data",
    }


async def book_appointment(args: BookAppointmentArgs) -> Dict[str, Any]:
    return {
        "confirmationNumber": "MOCK-" + secrets.token_hex(3).upper(),
        "appointment": args.model_dump(),
        "message": "Appointment booked successfully (MOCK)",
    }


async def lookup_customer(args: LookupCustomerArgs) -> Dict[str, Any]:
    return {"found": False, "message": "Customer lookup not yet implemented"}


def default_registry(timeout_s: float = 10.0) -> ToolRegistry:
    registry = ToolRegistry(timeout_s=timeout_s)
    registry.register("checkAvailability",
                      "Check available appointment slots for a given date and service type",
                      CheckAvailabilityArgs, check_availability)
    registry.register("bookAppointment",
                      "Book an appointment for a customer. Only after confirming availability and customer details.",
                      BookAppointmentArgs, book_appointment)
    registry.register("lookupCustomer",
                      "Look up customer information by phone number",
                      LookupCustomerArgs, lookup_customer)
    return registry
