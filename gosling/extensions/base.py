"""Extension capability — external tool providers.

An extension lists its tools and executes calls. Transport details
(stdio MCP, in-process) stay behind this contract; the dispatcher only
sees list_tools() / call().
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from gosling.utils import qualify_tool_name


class ExtensionState(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ToolSchema(BaseModel):
    """A callable tool as declared by its extension."""

    extension: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    read_only: bool = False  # read-only introspection, no side effects
    timeout: float | None = None  # overrides the extension timeout

    @property
    def qualified_name(self) -> str:
        return qualify_tool_name(self.extension, self.name)


class ExtensionConfig(BaseModel):
    """How to connect an extension. Consumed from recipes and settings."""

    name: str
    kind: Literal["builtin", "stdio", "frontend"] = "builtin"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    timeout: float | None = None  # seconds; falls back to Settings.extension_timeout
    reentrant: bool = True
    instructions: str = ""
    enabled: bool = True
    tools: list[dict[str, Any]] = Field(default_factory=list)  # frontend kind: host-declared tool specs


@dataclass
class CallOutput:
    """Raw outcome of an extension call, before the dispatcher wraps it."""

    content: Any
    is_error: bool = False


@runtime_checkable
class Extension(Protocol):
    """Tool provider capability."""

    name: str
    reentrant: bool
    timeout: float | None
    instructions: str

    async def start(self) -> None: ...

    def is_alive(self) -> bool: ...

    async def list_tools(self) -> list[ToolSchema]: ...

    async def call(self, tool: str, arguments: dict[str, Any], timeout: float | None = None) -> CallOutput: ...

    async def close(self) -> None: ...
