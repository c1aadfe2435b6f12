"""Response generation - cancellable token stream with a bounded tool-call loop"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Union

from openai import AsyncOpenAI

from .config import ReceptionistSettings
from .errors import ErrorCode, GenerationFailed, ReceptionistError, log_event
from .streams import CancellableStream
from .tools import ToolCall, ToolRegistry

logger = logging.getLogger(__name__)

APOLOGY_TEXT = ("I apologize, but I encountered an issue processing your request. "
                "Please try again or rephrase your question.")


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallsRequested:
    calls: List[ToolCall] = field(default_factory=list)


ModelEvent = Union[TextDelta, ToolCallsRequested]


class ChatModel:
    """One streamed model round: text deltas, then optionally a batch of tool calls"""

    def stream(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        raise NotImplementedError


class OpenAIChatModel(ChatModel):
    def __init__(self, client: AsyncOpenAI, settings: ReceptionistSettings):
        self.client = client
        self.settings = settings

    async def stream(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        kwargs: Dict[str, Any] = dict(
            model=self.settings.openai_model,
            messages=messages,
            max_tokens=self.settings.openai_max_tokens,
            temperature=self.settings.openai_temperature,
            stream=True,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        stream = await self.client.chat.completions.create(**kwargs)
        pending: Dict[int, Dict[str, str]] = {}
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is None:
                continue
            if delta.content:
                yield TextDelta(delta.content)
            for tc in delta.tool_calls or []:
                slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
        if pending:
            yield ToolCallsRequested([ToolCall(**pending[i]) for i in sorted(pending)])


class EchoChatModel(ChatModel):
    """Local fallback that yields word-by-word for testing"""

    def __init__(self, delay_s: float = 0.05):
        self.delay_s = delay_s

    async def stream(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        user_text = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
        fallback = f"Thank you for saying: '{user_text}'. This is a fallback response from the local receptionist."
        for word in fallback.split():
            yield TextDelta(word + " ")
            await asyncio.sleep(self.delay_s)


class TokenStream(CancellableStream[str]):
    pass


class ResponseGenerator:
    """Turns a conversation history into one logical token stream.

    Tool calls requested by the model are executed between rounds and never
    surface to the caller of generate(); after max_tool_iterations rounds the
    turn is closed with APOLOGY_TEXT instead of looping.
    """

    def __init__(self, model: ChatModel, tools: Optional[ToolRegistry], settings: ReceptionistSettings):
        self.model = model
        self.tools = tools or ToolRegistry(timeout_s=settings.tool_timeout_s)
        self.settings = settings
        self.max_iterations = settings.max_tool_iterations

    def generate(self, history: List[Dict[str, str]]) -> TokenStream:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self.settings.system_prompt}]
        messages.extend(dict(m) for m in history)
        return TokenStream(self._run(messages), name="tokens")

    def _check_overall_timeout(self, started: float) -> None:
        elapsed = time.monotonic() - started
        if elapsed > self.settings.llm_timeout_s:
            logger.warning(f"LLM streaming overall timeout exceeded: {elapsed:.1f}s > {self.settings.llm_timeout_s}s")
            raise GenerationFailed(f"LLM streaming timeout after {self.settings.llm_timeout_s}s",
                                   code=ErrorCode.LLM_TIMEOUT)

    async def _run(self, messages: List[Dict[str, Any]]) -> AsyncGenerator[str, None]:
        started = time.monotonic()
        schemas = self.tools.schemas()
        iterations = 0
        spoken = False
        try:
            while True:
                calls: List[ToolCall] = []
                async for event in self.model.stream(messages, schemas):
                    self._check_overall_timeout(started)
                    if isinstance(event, ToolCallsRequested):
                        calls = event.calls
                    elif event.text:
                        spoken = True
                        yield event.text
                if not calls:
                    return
                iterations += 1
                if iterations > self.max_iterations:
                    logger.error(f"Tool-call loop exceeded {self.max_iterations} iterations")
                    log_event("tool_limit", code=ErrorCode.TOOL_LIMIT, iterations=self.max_iterations)
                    yield f" {APOLOGY_TEXT}" if spoken else APOLOGY_TEXT
                    return
                messages.append({
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                        for c in calls
                    ],
                })
                for call in calls:
                    result = await self.tools.invoke(call)
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(result)})
        except (asyncio.CancelledError, GeneratorExit):
            raise
        except ReceptionistError:
            raise
        except Exception as e:
            logger.error(f"Error in LLM streaming: {e}")
            raise GenerationFailed(f"LLM streaming error: {e}") from e


def build_chat_model(settings: ReceptionistSettings, client: Optional[AsyncOpenAI] = None) -> ChatModel:
    if settings.llm_backend == "local":
        logger.info("Using local fallback chat model")
        return EchoChatModel()
    return OpenAIChatModel(client or AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.llm_timeout_s), settings)
