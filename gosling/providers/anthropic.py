"""Anthropic Messages API provider over httpx.

Both complete() and stream() go to /v1/messages; stream() parses the SSE
body. Failures are classified, not retried here: rate limits, overload,
5xx and network timeouts raise TransientProviderError, other 4xx raise
PermanentProviderError. Retry policy belongs to the Turn Controller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from gosling.config import Settings
from gosling.errors import PermanentProviderError, ProviderError, TransientProviderError
from gosling.extensions.base import ToolSchema
from gosling.providers.base import ProviderResponse, StreamChunk
from gosling.session.schemas import Message, ToolCall, Usage

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"

_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})
_TRANSIENT_STREAM_ERRORS = frozenset({"overloaded_error", "api_error", "rate_limit_error"})


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------


def _retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_status(status_code: int, body: str, headers: httpx.Headers | None = None) -> ProviderError:
    """Map a non-200 response to a transient or permanent provider error."""
    try:
        error = json.loads(body).get("error", {})
        detail = f"{error.get('type', 'unknown')} - {error.get('message', '')}"
    except (ValueError, AttributeError):
        detail = body[:500]
    message = f"Anthropic API error ({status_code}): {detail}"
    retry_after = _retry_after(headers) if headers is not None else None
    if status_code in _TRANSIENT_STATUS or status_code >= 500:
        return TransientProviderError(message, status_code=status_code, retry_after=retry_after)
    return PermanentProviderError(message, status_code=status_code)


# ------------------------------------------------------------------
# Wire format
# ------------------------------------------------------------------


def format_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {"name": t.qualified_name, "description": t.description, "input_schema": t.input_schema}
        for t in tools
    ]


def format_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert history to Anthropic messages.

    Tool results travel as tool_result blocks in a user message. Adjacent
    messages that land on the same API role are merged, since the API
    requires alternating roles.
    """
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            role = "user"
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": r.call_id,
                    "content": r.as_text(),
                    "is_error": r.is_error,
                }
                for r in msg.tool_results
            ]
        elif msg.role == "assistant":
            role = "assistant"
            blocks = [{"type": "text", "text": msg.text}] if msg.text else []
            blocks.extend(
                {"type": "tool_use", "id": c.id, "name": c.qualified_name, "input": c.arguments}
                for c in msg.tool_calls
            )
        else:
            role = "user"
            blocks = [{"type": "text", "text": msg.text}]
        if not blocks:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})
    return out


@dataclass
class SseEvent:
    """A single parsed event from the streaming API response."""

    type: str  # message_start, text_delta, tool_start, tool_input_delta, block_stop, message_delta, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    block_index: int = 0
    stop_reason: str = ""
    error_type: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""


def parse_sse_event(data: dict[str, Any]) -> SseEvent | None:
    """Parse one Anthropic SSE data payload. Keepalive pings yield None."""
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return SseEvent(
            type="error",
            error_type=error.get("type", "unknown"),
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        message = data.get("message", {})
        return SseEvent(type="message_start", usage=message.get("usage", {}), model=message.get("model", ""))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return SseEvent(type="tool_start", tool_name=block.get("name", ""), tool_id=block.get("id", ""), block_index=index)
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return SseEvent(type="text_delta", text=delta.get("text", ""), block_index=index)
        if delta.get("type") == "input_json_delta":
            return SseEvent(type="tool_input_delta", text=delta.get("partial_json", ""), block_index=index)
        return None

    if event_type == "content_block_stop":
        return SseEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return SseEvent(
            type="message_delta",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=data.get("usage", {}),
        )

    return None


def _parse_tool_input(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool input JSON: %s", raw[:200])
        return {}
    return value if isinstance(value, dict) else {}


# ------------------------------------------------------------------
# Provider
# ------------------------------------------------------------------


class AnthropicProvider:
    """Provider backed by the Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    def supports_streaming(self) -> bool:
        return True

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers = {"anthropic-version": _API_VERSION, "content-type": "application/json"}
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        logger.info("Anthropic client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def _payload(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": params.get("max_tokens", self._settings.max_tokens),
            "system": [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
            "messages": format_messages(messages),
        }
        if "temperature" in params:
            payload["temperature"] = params["temperature"]
        if tools:
            payload["tools"] = format_tools(tools)
        if stream:
            payload["stream"] = True
        return payload

    async def complete(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
    ) -> ProviderResponse:
        payload = self._payload(system, messages, tools, model, params)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"API request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"HTTP transport error: {e}") from e

        if response.status_code != 200:
            raise classify_status(response.status_code, response.text, response.headers)

        data = response.json()
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall.from_qualified(block["id"], block["name"], block.get("input") or {}))
        usage = data.get("usage") or {}
        return ProviderResponse(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage=Usage(input_tokens=usage.get("input_tokens", 0), output_tokens=usage.get("output_tokens", 0)),
            model=data.get("model", model),
        )

    async def stream(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
    ) -> AsyncIterator[StreamChunk]:
        payload = self._payload(system, messages, tools, model, params, stream=True)
        input_tokens = 0
        output_tokens = 0
        model_name = model
        tool_calls: list[ToolCall] = []
        accumulators: dict[int, dict[str, Any]] = {}

        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise classify_status(response.status_code, body, response.headers)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        logger.warning("Malformed SSE data line: %s", line[:200])
                        raise TransientProviderError(f"Malformed stream data: {e}") from e
                    event = parse_sse_event(data)
                    if event is None:
                        continue

                    if event.type == "error":
                        if event.error_type in _TRANSIENT_STREAM_ERRORS:
                            raise TransientProviderError(f"Stream error: {event.text}")
                        raise PermanentProviderError(f"Stream error: {event.text}")
                    elif event.type == "message_start":
                        input_tokens = event.usage.get("input_tokens", 0)
                        model_name = event.model or model
                    elif event.type == "text_delta":
                        yield StreamChunk(type="text_delta", text=event.text, model=model_name)
                    elif event.type == "tool_start":
                        accumulators[event.block_index] = {"id": event.tool_id, "name": event.tool_name, "parts": []}
                    elif event.type == "tool_input_delta":
                        acc = accumulators.get(event.block_index)
                        if acc:
                            acc["parts"].append(event.text)
                    elif event.type == "block_stop":
                        acc = accumulators.pop(event.block_index, None)
                        if acc:
                            arguments = _parse_tool_input("".join(acc["parts"]))
                            tool_calls.append(ToolCall.from_qualified(acc["id"], acc["name"], arguments))
                    elif event.type == "message_delta":
                        output_tokens = event.usage.get("output_tokens", output_tokens)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"API stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"HTTP transport error: {e}") from e

        yield StreamChunk(
            type="done",
            tool_calls=tool_calls,
            usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
            model=model_name,
        )
