"""Provider capability — what the engine needs from a model backend.

A provider turns a system prompt, message history and tool set into a
response: a final text answer or a list of ToolCalls, plus usage
counters. Streaming providers yield StreamChunks; non-streaming ones are
adapted with stream_from_response() so the controller consumes one shape.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from gosling.extensions.base import ToolSchema
from gosling.session.schemas import Message, ToolCall, Usage


@dataclass
class ProviderResponse:
    """A complete model response."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    model: str = ""


@dataclass
class StreamChunk:
    """One increment of a streamed response.

    text_delta chunks carry partial text; the single terminal "done"
    chunk carries the full tool-call list and usage.
    """

    type: Literal["text_delta", "done"]
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    model: str = ""


@runtime_checkable
class Provider(Protocol):
    """Model backend capability. Selected at session construction."""

    name: str

    def supports_streaming(self) -> bool: ...

    async def complete(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
    ) -> ProviderResponse: ...

    def stream(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
    ) -> AsyncIterator[StreamChunk]: ...


async def stream_from_response(response: ProviderResponse) -> AsyncIterator[StreamChunk]:
    """Adapt a complete response into the streamed shape."""
    if response.text:
        yield StreamChunk(type="text_delta", text=response.text, model=response.model)
    yield StreamChunk(
        type="done",
        tool_calls=list(response.tool_calls),
        usage=response.usage,
        model=response.model,
    )


async def open_stream(
    provider: Provider,
    system: str,
    messages: list[Message],
    tools: list[ToolSchema],
    model: str,
    params: dict[str, Any],
) -> AsyncIterator[StreamChunk]:
    """Stream from the provider, falling back to complete() when unsupported."""
    if provider.supports_streaming():
        async for chunk in provider.stream(system, messages, tools, model, params):
            yield chunk
        return
    response = await provider.complete(system, messages, tools, model, params)
    async for chunk in stream_from_response(response):
        yield chunk
