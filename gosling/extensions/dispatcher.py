"""Tool dispatcher — executes tool calls against registered extensions.

Every call resolves to exactly one ToolResult; nothing raises past
dispatch(). Calls within one model response run concurrently, bounded
by a semaphore, and calls to a non-reentrant extension are serialized
behind a per-extension lock. Results are keyed by call id because
completion order is not submission order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable

from gosling.config import Settings
from gosling.errors import ExtensionUnavailable, ToolExecutionError
from gosling.extensions.base import ToolSchema
from gosling.extensions.registry import ExtensionRegistry, RegistrySnapshot
from gosling.session.schemas import ToolCall, ToolErrorKind, ToolResult

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ToolResult], Awaitable[None]]


class ToolDispatcher:
    """Resolves, times and bounds tool calls; wraps every outcome as a ToolResult."""

    def __init__(self, registry: ExtensionRegistry, settings: Settings) -> None:
        self._registry = registry
        self._settings = settings
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_tool_calls)
        self._extension_locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> ExtensionRegistry:
        return self._registry

    async def list_tools(self, extension: str) -> list[ToolSchema]:
        """Fetch an extension's tool schemas.

        A failure marks the extension FAILED, which drops its tools from
        subsequent prompts until it is refreshed successfully.
        """
        return await self._registry.refresh(extension)

    def prompt_tools(self, snapshot: RegistrySnapshot) -> list[ToolSchema]:
        """Tools to offer the model for a turn captured at snapshot."""
        return self._registry.available_tools(snapshot)

    def timeout_for(self, snapshot: RegistrySnapshot, call: ToolCall) -> float:
        schema = snapshot.find_tool(call.extension, call.tool)
        if schema is not None and schema.timeout is not None:
            return schema.timeout
        entry = snapshot.get(call.extension)
        if entry is not None and entry.extension.timeout is not None:
            return entry.extension.timeout
        return self._settings.extension_timeout

    async def dispatch(self, call: ToolCall, snapshot: RegistrySnapshot) -> ToolResult:
        """Execute one call and return its ToolResult.

        Unknown extension or tool -> Error(invalid). Disconnected or failed
        extension -> Error(unavailable), extension not contacted.
        Timeout -> TimedOut, no retry. Transport failure -> Error(transport).
        """
        entry = snapshot.get(call.extension)
        if entry is None:
            return ToolResult.error(call.id, ToolErrorKind.INVALID, f"Unknown extension: '{call.extension}'")
        if snapshot.find_tool(call.extension, call.tool) is None and self._registry.is_available(call.extension):
            return ToolResult.error(
                call.id, ToolErrorKind.INVALID, f"Unknown tool '{call.tool}' in extension '{call.extension}'"
            )

        timeout = self.timeout_for(snapshot, call)
        lock = None
        if not entry.extension.reentrant:
            lock = self._extension_locks.setdefault(call.extension, asyncio.Lock())

        start = time.monotonic()
        async with self._semaphore:
            try:
                if lock is not None:
                    async with lock:
                        return await self._invoke(call, timeout, start)
                return await self._invoke(call, timeout, start)
            except ExtensionUnavailable as e:
                logger.warning("Tool %s skipped: %s", call.qualified_name, e)
                return ToolResult.error(call.id, ToolErrorKind.UNAVAILABLE, str(e), _elapsed_ms(start))

    async def _invoke(self, call: ToolCall, timeout: float, start: float) -> ToolResult:
        async with self._registry.track(call.extension) as extension:
            try:
                output = await asyncio.wait_for(extension.call(call.tool, call.arguments, timeout), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Tool %s timed out after %.1fs", call.qualified_name, timeout)
                return ToolResult.timed_out(call.id, timeout, _elapsed_ms(start))
            except ToolExecutionError as e:
                logger.warning("Tool %s failed (%s): %s", call.qualified_name, e.kind, e)
                return ToolResult.error(call.id, e.kind, str(e), _elapsed_ms(start))
            except Exception as e:
                logger.exception("Tool dispatch error for %s", call.qualified_name)
                return ToolResult.error(call.id, ToolErrorKind.APPLICATION, f"Tool error: {e}", _elapsed_ms(start))

        duration_ms = _elapsed_ms(start)
        if output.is_error:
            message = output.content if isinstance(output.content, str) else json.dumps(output.content, default=str)
            return ToolResult.error(call.id, ToolErrorKind.APPLICATION, message, duration_ms)
        return ToolResult.success(call.id, output.content, duration_ms)

    async def dispatch_all(
        self,
        calls: Iterable[ToolCall],
        snapshot: RegistrySnapshot,
        on_result: ResultCallback | None = None,
    ) -> dict[str, ToolResult]:
        """Run calls concurrently; returns results keyed by call id.

        on_result fires in completion order. If this coroutine is
        cancelled, outstanding calls are cancelled with it and the caller
        is responsible for resolving them.
        """
        tasks: dict[asyncio.Task, ToolCall] = {
            asyncio.create_task(self.dispatch(call, snapshot), name=f"tool-{call.id}"): call for call in calls
        }
        results: dict[str, ToolResult] = {}
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    result = task.result()
                    results[result.call_id] = result
                    if on_result is not None:
                        await on_result(result)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return results


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
