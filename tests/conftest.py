"""Shared fixtures: scripted provider, builtin test extensions, settings, temp database."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio

from gosling.config import Settings
from gosling.context.compaction import ContextManager
from gosling.engine.controller import TurnController
from gosling.events import EventBus
from gosling.extensions.base import ToolSchema
from gosling.extensions.builtin import BuiltinExtension
from gosling.extensions.dispatcher import ToolDispatcher
from gosling.extensions.registry import ExtensionRegistry
from gosling.permissions.gate import PermissionGate
from gosling.providers.base import ProviderResponse, stream_from_response
from gosling.routing.router import ModelRouter
from gosling.security.scanner import SecurityScanner
from gosling.session.schemas import Message, Session, ToolCall, Usage
from gosling.storage.database import Database
from gosling.storage.store import SessionStore

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from .env, bound to the fake provider by default."""
    values: dict[str, Any] = {
        "provider": "fake",
        "model": "fake-main",
        "mode": "auto",
        "db_url": "sqlite+aiosqlite:///:memory:",
        "provider_retry_backoff": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

Step = ProviderResponse | BaseException | Callable[[], Awaitable[ProviderResponse]]


class FakeProvider:
    """Provider that replays a script of responses.

    Each complete()/stream() call consumes the next step: a
    ProviderResponse is returned, an exception is raised, and an async
    callable is awaited for its response. An exhausted script answers
    with plain text.
    """

    def __init__(self, script: list[Step] | None = None, *, name: str = "fake", streaming: bool = True) -> None:
        self.name = name
        self.script: list[Step] = list(script or [])
        self.streaming = streaming
        self.calls: list[dict[str, Any]] = []

    def push(self, *steps: Step) -> None:
        self.script.extend(steps)

    def supports_streaming(self) -> bool:
        return self.streaming

    async def _next(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        model: str,
        params: dict[str, Any],
    ) -> ProviderResponse:
        self.calls.append(
            {"system": system, "messages": list(messages), "tools": list(tools), "model": model, "params": params}
        )
        if not self.script:
            return text_response("done", model=model)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = await step()
        if not step.model:
            step.model = model
        return step

    async def complete(self, system, messages, tools, model, params) -> ProviderResponse:
        return await self._next(system, messages, tools, model, params)

    async def stream(self, system, messages, tools, model, params):
        response = await self._next(system, messages, tools, model, params)
        async for chunk in stream_from_response(response):
            yield chunk


def text_response(text: str, *, input_tokens: int = 100, output_tokens: int = 20, model: str = "") -> ProviderResponse:
    return ProviderResponse(text=text, usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens), model=model)


def tool_response(*calls: ToolCall, text: str = "", input_tokens: int = 100, output_tokens: int = 20) -> ProviderResponse:
    return ProviderResponse(
        text=text,
        tool_calls=list(calls),
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def make_call(extension: str, tool: str, call_id: str | None = None, **arguments: Any) -> ToolCall:
    if call_id is None:
        return ToolCall(extension=extension, tool=tool, arguments=arguments)
    return ToolCall(id=call_id, extension=extension, tool=tool, arguments=arguments)


# ---------------------------------------------------------------------------
# Builtin test extensions
# ---------------------------------------------------------------------------


def make_developer(*, reentrant: bool = True, timeout: float | None = None) -> BuiltinExtension:
    """'developer': shell (side effects) and read_file (read-only)."""
    ext = BuiltinExtension(
        "developer",
        reentrant=reentrant,
        timeout=timeout,
        instructions="Run shell commands and read files in the working directory.",
    )
    ext.executed = []

    @ext.tool(
        {
            "type": "object",
            "description": "Run a shell command",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        }
    )
    async def shell(command: str) -> dict:
        ext.executed.append(command)
        return {"content": [{"type": "text", "text": f"$ {command}\nok"}]}

    @ext.tool(
        {
            "type": "object",
            "description": "Read a file",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        read_only=True,
    )
    async def read_file(path: str) -> str:
        return f"contents of {path}"

    return ext


def make_memory() -> BuiltinExtension:
    """'memory': remember (side effects) and recall (read-only)."""
    ext = BuiltinExtension("memory", instructions="Store and recall short notes.")
    notes: list[str] = []

    @ext.tool({"type": "object", "description": "Store a note", "properties": {"text": {"type": "string"}}})
    async def remember(text: str) -> str:
        notes.append(text)
        return f"stored ({len(notes)} notes)"

    @ext.tool(
        {"type": "object", "description": "Recall notes", "properties": {"query": {"type": "string"}}},
        read_only=True,
    )
    async def recall(query: str) -> str:
        return "\n".join(n for n in notes if query in n) or "nothing found"

    return ext


@pytest_asyncio.fixture
async def registry():
    reg = ExtensionRegistry()
    await reg.register(make_developer())
    await reg.register(make_memory())
    yield reg
    await reg.close()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(tmp_path):
    """Function-scoped sqlite database in a temp directory."""
    database = Database(make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}"))
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> SessionStore:
    return SessionStore(db)


# ---------------------------------------------------------------------------
# Controller assembly
# ---------------------------------------------------------------------------


def make_controller(
    settings: Settings,
    provider: FakeProvider,
    registry: ExtensionRegistry,
    *,
    session: Session | None = None,
    store: SessionStore | None = None,
    bus: EventBus | None = None,
) -> TurnController:
    scanner = SecurityScanner(settings)
    session = session or Session(mode=settings.mode, bindings=settings.role_bindings())
    return TurnController(
        session,
        settings,
        ModelRouter(settings, {provider.name: provider}),
        ToolDispatcher(registry, settings),
        PermissionGate(settings, scanner),
        scanner,
        ContextManager(settings),
        bus or EventBus(),
        store=store,
    )


async def wait_for_event(sub, event_type, timeout: float = 2.0):
    """Read a subscription until an event of the given type arrives."""

    async def _read():
        async for event in sub:
            if event.type == event_type:
                return event
        raise AssertionError(f"Subscription closed before {event_type}")

    return await asyncio.wait_for(_read(), timeout=timeout)


