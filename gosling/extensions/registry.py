"""Extension registry — versioned, copy-on-write membership plus live state.

Membership (which extensions exist and which tools they declared) is
published as immutable RegistrySnapshots. The controller captures one
snapshot per model turn, so registrations during a turn never change
what that turn's calls resolve against.

Liveness is tracked live, outside the snapshot: a call resolved against
an older snapshot still finds out that its extension has since
disconnected, and resolves as unavailable without contacting it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import MappingProxyType

from gosling.errors import ExtensionUnavailable
from gosling.extensions.base import Extension, ExtensionState, ToolSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtensionEntry:
    extension: Extension
    tools: tuple[ToolSchema, ...] = ()
    frontend: bool = False  # calls are executed by the host, not dispatched


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of registered extensions at one version."""

    version: int
    entries: Mapping[str, ExtensionEntry] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, name: str) -> ExtensionEntry | None:
        return self.entries.get(name)

    def find_tool(self, extension: str, tool: str) -> ToolSchema | None:
        entry = self.entries.get(extension)
        if entry is None:
            return None
        for schema in entry.tools:
            if schema.name == tool:
                return schema
        return None

    def names(self) -> list[str]:
        return sorted(self.entries)

    def is_frontend(self, name: str) -> bool:
        entry = self.entries.get(name)
        return entry is not None and entry.frontend


class ExtensionRegistry:
    """Owns extension lifecycles and publishes snapshots."""

    def __init__(self) -> None:
        self._snapshot = RegistrySnapshot(version=0)
        self._states: dict[str, ExtensionState] = {}
        self._errors: dict[str, str] = {}
        self._inflight: dict[str, int] = defaultdict(int)
        self._drained = asyncio.Condition()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def _publish(self, entries: dict[str, ExtensionEntry]) -> None:
        self._snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            entries=MappingProxyType(dict(entries)),
        )
        logger.debug("Registry snapshot v%d: %s", self._snapshot.version, sorted(entries))

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    def state(self, name: str) -> ExtensionState | None:
        """Current liveness of an extension, or None if it was never registered."""
        state = self._states.get(name)
        if state is ExtensionState.CONNECTED:
            entry = self._snapshot.get(name)
            if entry is not None and not entry.extension.is_alive():
                logger.warning("Extension '%s' is no longer alive, marking disconnected", name)
                state = self._states[name] = ExtensionState.DISCONNECTED
        return state

    def is_available(self, name: str) -> bool:
        return self.state(name) is ExtensionState.CONNECTED

    def last_error(self, name: str) -> str | None:
        return self._errors.get(name)

    def mark_failed(self, name: str, error: str) -> None:
        if name in self._states:
            self._states[name] = ExtensionState.FAILED
            self._errors[name] = error
            logger.warning("Extension '%s' marked failed: %s", name, error)

    def mark_disconnected(self, name: str) -> None:
        if name in self._states:
            self._states[name] = ExtensionState.DISCONNECTED
            logger.warning("Extension '%s' marked disconnected", name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def register(self, extension: Extension, *, frontend: bool = False) -> ExtensionState:
        """Start an extension and publish it with its declared tools.

        A failure to start or list tools still registers the extension,
        as FAILED with no tools, so it can be refreshed later. Frontend
        extensions declare tools whose calls the host executes.
        """
        async with self._lock:
            if extension.name in self._snapshot.entries:
                raise ValueError(f"Extension '{extension.name}' is already registered")

            tools: tuple[ToolSchema, ...] = ()
            try:
                await extension.start()
                tools = tuple(await extension.list_tools())
                self._states[extension.name] = ExtensionState.CONNECTED
                self._errors.pop(extension.name, None)
                logger.info("Registered extension '%s' with %d tools", extension.name, len(tools))
            except Exception as e:
                self._states[extension.name] = ExtensionState.FAILED
                self._errors[extension.name] = str(e)
                logger.warning("Extension '%s' failed to start: %s", extension.name, e)

            entries = dict(self._snapshot.entries)
            entries[extension.name] = ExtensionEntry(extension=extension, tools=tools, frontend=frontend)
            self._publish(entries)
            return self._states[extension.name]

    async def refresh(self, name: str) -> list[ToolSchema]:
        """Re-list an extension's tools; marks it FAILED on error, CONNECTED on success."""
        async with self._lock:
            entry = self._snapshot.get(name)
            if entry is None:
                raise KeyError(name)
            try:
                if not entry.extension.is_alive():
                    await entry.extension.start()
                tools = tuple(await entry.extension.list_tools())
            except Exception as e:
                self.mark_failed(name, str(e))
                entries = dict(self._snapshot.entries)
                entries[name] = ExtensionEntry(extension=entry.extension, tools=(), frontend=entry.frontend)
                self._publish(entries)
                return []

            self._states[name] = ExtensionState.CONNECTED
            self._errors.pop(name, None)
            entries = dict(self._snapshot.entries)
            entries[name] = ExtensionEntry(extension=entry.extension, tools=tools, frontend=entry.frontend)
            self._publish(entries)
            return list(tools)

    async def deregister(self, name: str) -> None:
        """Remove an extension after its in-flight calls finish.

        New calls are refused as soon as this starts. Removal from the
        snapshot happens only once the in-flight count drains to zero;
        dispatcher calls are timeout-bounded, so this terminates.
        """
        async with self._lock:
            entry = self._snapshot.get(name)
            if entry is None:
                return
            self._states[name] = ExtensionState.DISCONNECTED

        async with self._drained:
            await self._drained.wait_for(lambda: self._inflight.get(name, 0) == 0)

        try:
            await entry.extension.close()
        except Exception:
            logger.exception("Error closing extension '%s'", name)

        async with self._lock:
            entries = dict(self._snapshot.entries)
            entries.pop(name, None)
            self._publish(entries)
            self._states.pop(name, None)
            self._errors.pop(name, None)
            self._inflight.pop(name, None)
        logger.info("Deregistered extension '%s'", name)

    async def close(self) -> None:
        for name in self._snapshot.names():
            await self.deregister(name)

    @asynccontextmanager
    async def track(self, name: str) -> AsyncIterator[Extension]:
        """Mark one call in flight against an available extension.

        Raises ExtensionUnavailable (without contacting the extension)
        when it is disconnected, failed or unknown.
        """
        entry = self._snapshot.get(name)
        state = self.state(name)
        if entry is None or state is not ExtensionState.CONNECTED:
            reason = state.value if state else "not registered"
            raise ExtensionUnavailable(f"Extension '{name}' is unavailable ({reason})")
        self._inflight[name] += 1
        try:
            yield entry.extension
        finally:
            self._inflight[name] -= 1
            async with self._drained:
                self._drained.notify_all()

    def inflight(self, name: str) -> int:
        return self._inflight.get(name, 0)

    # ------------------------------------------------------------------
    # Tool listing
    # ------------------------------------------------------------------

    def available_tools(self, snapshot: RegistrySnapshot | None = None) -> list[ToolSchema]:
        """Tools of currently connected extensions, sorted by qualified name."""
        snap = snapshot or self._snapshot
        tools = [
            schema
            for name, entry in snap.entries.items()
            if self.is_available(name)
            for schema in entry.tools
        ]
        return sorted(tools, key=lambda t: t.qualified_name)

    def extension_info(self, snapshot: RegistrySnapshot | None = None) -> list[tuple[str, str]]:
        """(name, instructions) of connected extensions, for the system prompt."""
        snap = snapshot or self._snapshot
        return [
            (name, snap.entries[name].extension.instructions)
            for name in snap.names()
            if self.is_available(name)
        ]
