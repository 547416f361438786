"""In-process extension backed by registered handlers.

Each handler is a callable that accepts **kwargs and returns an
MCP-format response: {"content": [{"type": "text", "text": "..."}]},
optionally with "isError": True. Plain strings and dicts without a
"content" key are passed through as the payload.
Coroutine functions are awaited in the event loop; plain functions run
in a worker thread so they cannot block it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from gosling.extensions.base import CallOutput, ToolSchema

logger = logging.getLogger(__name__)


class BuiltinExtension:
    """Registers tool handlers and runs them in-process."""

    def __init__(
        self,
        name: str,
        *,
        reentrant: bool = True,
        timeout: float | None = None,
        instructions: str = "",
    ) -> None:
        self.name = name
        self.reentrant = reentrant
        self.timeout = timeout
        self.instructions = instructions
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, ToolSchema] = {}
        self._started = False

    def register(
        self,
        tool: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        *,
        read_only: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[tool] = handler
        self._schemas[tool] = ToolSchema(
            extension=self.name,
            name=tool,
            description=schema.get("description", ""),
            input_schema=schema,
            read_only=read_only,
            timeout=timeout,
        )

    def tool(
        self,
        schema: dict[str, Any] | None = None,
        *,
        name: str | None = None,
        read_only: bool = False,
        timeout: float | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            tool_schema = dict(schema or {"type": "object", "properties": {}})
            tool_schema.setdefault("description", (fn.__doc__ or "").strip())
            self.register(name or fn.__name__, fn, tool_schema, read_only=read_only, timeout=timeout)
            return fn

        return decorator

    async def start(self) -> None:
        self._started = True

    def is_alive(self) -> bool:
        return self._started

    async def list_tools(self) -> list[ToolSchema]:
        return list(self._schemas.values())

    async def call(self, tool: str, arguments: dict[str, Any], timeout: float | None = None) -> CallOutput:
        """Run a handler. Handler exceptions become application errors."""
        handler = self._handlers.get(tool)
        if not handler:
            return CallOutput(content=f"Unknown tool: {tool}", is_error=True)
        try:
            inspect.signature(handler).bind(**arguments)
        except TypeError as e:
            return CallOutput(content=f"Invalid arguments for {tool}: {e}", is_error=True)
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(**arguments)
            else:
                result = await asyncio.to_thread(handler, **arguments)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            logger.exception("Builtin tool %s.%s failed", self.name, tool)
            return CallOutput(content=f"Tool error: {e}", is_error=True)
        return _unwrap(result)

    async def close(self) -> None:
        self._started = False


def _unwrap(result: Any) -> CallOutput:
    """Extract the payload from an MCP-format response."""
    if isinstance(result, dict) and "content" in result:
        is_error = bool(result.get("isError", False))
        blocks = result["content"]
        if isinstance(blocks, list):
            texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"]
            if texts and len(texts) == len(blocks):
                return CallOutput(content="\n".join(texts), is_error=is_error)
        return CallOutput(content=blocks, is_error=is_error)
    return CallOutput(content=result)
