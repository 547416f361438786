"""MCP stdio extension — a tool provider running as a child process.

The mcp client contexts (stdio_client, ClientSession) must be entered and
exited by the same task, so each extension owns a runner task that holds
the session open until close() signals shutdown. Calls from other tasks
go through the live ClientSession.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from gosling.errors import ExtensionTransportError
from gosling.extensions.base import CallOutput, ExtensionConfig, ToolSchema

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
    OSError,
)


class StdioExtension:
    """Connects to an MCP server over stdio."""

    def __init__(self, config: ExtensionConfig, *, startup_timeout: float = 20.0) -> None:
        if not config.command:
            raise ValueError(f"stdio extension '{config.name}' requires a command")
        self.name = config.name
        self.reentrant = config.reentrant
        self.timeout = config.timeout
        self.instructions = config.instructions
        self._config = config
        self._startup_timeout = startup_timeout
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._error: BaseException | None = None

    async def start(self) -> None:
        """Spawn the server and complete the MCP handshake.

        A no-op while connected. After a crash or close() the old runner is
        reaped and a fresh child process is started.
        """
        if self.is_alive():
            return
        if self._runner is not None:
            await self.close()
        self._reset()
        self._runner = asyncio.create_task(self._run(), name=f"mcp-{self.name}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self._startup_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise ExtensionTransportError(f"Extension '{self.name}' did not start within {self._startup_timeout:g}s") from e
        if self._session is None:
            raise ExtensionTransportError(f"Extension '{self.name}' failed to start: {self._error}")
        logger.info("MCP extension '%s' connected (%s)", self.name, self._config.command)

    def _reset(self) -> None:
        self._session = None
        self._runner = None
        self._error = None
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()

    async def _run(self) -> None:
        params = StdioServerParameters(
            command=self._config.command or "",
            args=list(self._config.args),
            env=dict(self._config.env) or None,
            cwd=self._config.cwd,
        )
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._shutdown.wait()
        except Exception as e:
            self._error = e
            logger.warning("MCP extension '%s' exited: %s", self.name, e)
        finally:
            self._session = None
            self._ready.set()

    def is_alive(self) -> bool:
        return self._session is not None and self._runner is not None and not self._runner.done()

    async def list_tools(self) -> list[ToolSchema]:
        session = self._require_session()
        try:
            result = await session.list_tools()
        except _TRANSPORT_ERRORS as e:
            raise ExtensionTransportError(f"list_tools failed for '{self.name}': {e}") from e

        tools: list[ToolSchema] = []
        for tool in result.tools:
            annotations = getattr(tool, "annotations", None)
            schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {}
            tools.append(
                ToolSchema(
                    extension=self.name,
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(schema),
                    read_only=bool(getattr(annotations, "readOnlyHint", False)),
                )
            )
        return tools

    async def call(self, tool: str, arguments: dict[str, Any], timeout: float | None = None) -> CallOutput:
        """Call a tool. The timeout is enforced by the dispatcher."""
        session = self._require_session()
        try:
            result = await session.call_tool(tool, arguments=arguments)
        except McpError as e:
            return CallOutput(content=str(e), is_error=True)
        except _TRANSPORT_ERRORS as e:
            raise ExtensionTransportError(f"Call to '{self.name}.{tool}' failed: {e}") from e

        is_error = bool(getattr(result, "isError", False))
        structured = getattr(result, "structuredContent", None)
        if isinstance(structured, dict) and structured:
            return CallOutput(content=dict(structured), is_error=is_error)

        parts: list[str] = []
        for block in result.content or []:
            text = getattr(block, "text", None)
            if isinstance(text, str):
                parts.append(text)
            else:
                parts.append(json.dumps(block.model_dump(mode="json")))
        return CallOutput(content="\n".join(parts), is_error=is_error)

    async def close(self) -> None:
        self._shutdown.set()
        runner, self._runner = self._runner, None
        if runner is None or runner.done():
            return
        try:
            await asyncio.wait_for(runner, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("MCP extension '%s' did not shut down cleanly", self.name)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ExtensionTransportError(f"Extension '{self.name}' is not connected")
        return self._session
