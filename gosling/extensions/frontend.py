"""Frontend tools — tools the host application declares and executes itself.

A UI or embedding program can offer the model tools that only it can
run (open a file picker, show a diff, ask a form question). They are
registered like any other extension so they appear in the sorted tool
list and the system prompt, but the controller never dispatches them:
a permitted call is published as a FRONTEND_TOOL_REQUESTED event and the
turn waits until the host answers through HostToolBroker.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from gosling.errors import ExtensionTransportError
from gosling.extensions.base import CallOutput, ExtensionConfig, ToolSchema

logger = logging.getLogger(__name__)


class FrontendExtension:
    """Declares host-executed tools. Calls never reach it directly."""

    def __init__(self, config: ExtensionConfig) -> None:
        self.name = config.name
        self.reentrant = True
        self.timeout = config.timeout
        self.instructions = config.instructions
        self._tools = [_tool_schema(config.name, spec) for spec in config.tools]
        self._started = False

    async def start(self) -> None:
        self._started = True

    def is_alive(self) -> bool:
        return self._started

    async def list_tools(self) -> list[ToolSchema]:
        return list(self._tools)

    async def call(self, tool: str, arguments: dict[str, Any], timeout: float | None = None) -> CallOutput:
        raise ExtensionTransportError(f"Tool '{self.name}.{tool}' is executed by the host, not dispatched")

    async def close(self) -> None:
        self._started = False


def _tool_schema(extension: str, spec: dict[str, Any]) -> ToolSchema:
    if "name" not in spec:
        raise ValueError(f"Frontend tool in '{extension}' has no name")
    return ToolSchema(
        extension=extension,
        name=spec["name"],
        description=spec.get("description", ""),
        input_schema=spec.get("input_schema") or {"type": "object", "properties": {}},
        read_only=bool(spec.get("read_only", False)),
        timeout=spec.get("timeout"),
    )


class HostToolBroker:
    """Wait points for frontend tool results, keyed by call id."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[CallOutput]] = {}

    def request(self, call_id: str) -> asyncio.Future[CallOutput]:
        if call_id in self._pending:
            return self._pending[call_id]
        future: asyncio.Future[CallOutput] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        return future

    def resolve(self, call_id: str, content: Any, is_error: bool = False) -> bool:
        """Deliver the host's result. Returns False if nothing was waiting."""
        future = self._pending.pop(call_id, None)
        if future is None or future.done():
            logger.warning("No pending frontend tool request for call %s", call_id)
            return False
        future.set_result(CallOutput(content=content, is_error=is_error))
        return True

    def discard(self, call_id: str) -> None:
        future = self._pending.pop(call_id, None)
        if future is not None and not future.done():
            future.cancel()

    def pending(self) -> list[str]:
        return list(self._pending)

    def cancel_all(self) -> None:
        for call_id in list(self._pending):
            self.discard(call_id)
