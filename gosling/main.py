"""Component wiring for an embedding host (CLI, server, tests).

    Settings -> Database/SessionStore -> EventBus -> ExtensionRegistry
             -> ToolDispatcher -> Scanner/Gate -> ContextManager
             -> ModelRouter -> TurnController (one per session)

The engine has no CLI or HTTP surface of its own; hosts call
create_components() once, open_session() per session and
shutdown_components() on exit.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from gosling.config import Settings
from gosling.context.compaction import ContextManager
from gosling.engine.controller import TurnController
from gosling.events import EventBus
from gosling.extensions.dispatcher import ToolDispatcher
from gosling.extensions.registry import ExtensionRegistry
from gosling.permissions.gate import PermissionBroker, PermissionGate
from gosling.permissions.rules import PermissionRules
from gosling.providers.anthropic import AnthropicProvider
from gosling.providers.base import Provider
from gosling.recipe import BuiltinFactory, Recipe, register_extensions, seed_session
from gosling.routing.router import ModelRouter
from gosling.security.scanner import SecurityScanner
from gosling.session.schemas import Session
from gosling.storage.database import Database
from gosling.storage.store import SessionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    providers: Mapping[str, Provider] | None = None,
    *,
    persist: bool = True,
) -> dict:
    """Initialize shared components in dependency order.

    When `providers` is not given, an AnthropicProvider is started and
    registered under "anthropic". Providers passed in are owned by the
    caller and are not started or closed here.
    """
    database = None
    store = None
    if persist:
        database = Database(settings)
        await database.connect()
        store = SessionStore(database)

    bus = EventBus()
    await bus.start()

    owned_providers: list[AnthropicProvider] = []
    if providers is None:
        anthropic = AnthropicProvider(settings)
        await anthropic.start()
        owned_providers.append(anthropic)
        providers = {anthropic.name: anthropic}

    registry = ExtensionRegistry()
    dispatcher = ToolDispatcher(registry, settings)
    scanner = SecurityScanner(settings)
    gate = PermissionGate(settings, scanner, PermissionRules(settings.permission_rules))
    context = ContextManager(settings)
    router = ModelRouter(settings, providers)

    logger.info(
        "gosling started: mode=%s, model=%s/%s, max_turns=%d",
        settings.mode,
        settings.provider,
        settings.model,
        settings.max_turns,
    )

    return {
        "settings": settings,
        "database": database,
        "store": store,
        "bus": bus,
        "registry": registry,
        "dispatcher": dispatcher,
        "scanner": scanner,
        "gate": gate,
        "context": context,
        "router": router,
        "owned_providers": owned_providers,
    }


async def open_session(
    components: dict,
    *,
    session_id: str | None = None,
    recipe: Recipe | None = None,
    values: Mapping[str, str] | None = None,
    builtins: Mapping[str, BuiltinFactory] | None = None,
) -> tuple[TurnController, str]:
    """Resume or create a session and build its controller.

    Returns (controller, initial prompt). The prompt is the rendered
    recipe prompt for a new recipe session and empty otherwise.
    Raises SessionCorrupt if a stored session cannot be restored.
    """
    settings: Settings = components["settings"]
    store: SessionStore | None = components["store"]
    initial_prompt = ""

    session: Session | None = None
    if session_id is not None and store is not None:
        session = await store.load(session_id)
        if session is None:
            logger.warning("Session %s not found, starting a new one", session_id)

    if session is None:
        if recipe is not None:
            session, initial_prompt = seed_session(recipe, settings, values)
        else:
            session = Session(mode=settings.mode, bindings=settings.role_bindings())
        if session_id is not None:
            session.id = session_id

    if recipe is not None:
        await register_extensions(components["registry"], recipe.extensions, builtins)

    # Fail fast on bindings naming a provider we do not have
    components["router"].validate(session)

    controller = TurnController(
        session,
        settings,
        components["router"],
        components["dispatcher"],
        components["gate"],
        components["scanner"],
        components["context"],
        components["bus"],
        broker=PermissionBroker(),
        store=store,
    )
    return controller, initial_prompt


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down gosling...")

    registry = components.get("registry")
    if registry:
        await registry.close()

    for provider in components.get("owned_providers", []):
        await provider.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("gosling shutdown complete.")
