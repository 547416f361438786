"""Recipes — a reusable starting point for a session.

A Recipe is a plain value (already parsed by whatever loaded it): the
instructions and initial prompt, the parameters they reference as
`{{ name }}`, the execution mode, and the extensions to connect.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping

from pydantic import BaseModel, Field

from gosling.config import Settings
from gosling.extensions.base import Extension, ExtensionConfig, ExtensionState
from gosling.extensions.registry import ExtensionRegistry
from gosling.session.schemas import ExecutionMode, Session

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

# name -> factory for in-process extensions a recipe may reference
BuiltinFactory = Callable[[ExtensionConfig], Extension]


class RecipeParameter(BaseModel):
    key: str
    description: str = ""
    required: bool = True
    default: str | None = None


class Recipe(BaseModel):
    title: str
    description: str = ""
    instructions: str = ""
    prompt: str = ""
    mode: ExecutionMode | None = None
    parameters: list[RecipeParameter] = Field(default_factory=list)
    extensions: list[ExtensionConfig] = Field(default_factory=list)

    def placeholders(self) -> set[str]:
        return set(_PLACEHOLDER.findall(self.instructions)) | set(_PLACEHOLDER.findall(self.prompt))

    def resolve_values(self, values: Mapping[str, str] | None = None) -> dict[str, str]:
        """Merge supplied values with defaults; raise on missing or undeclared ones."""
        values = dict(values or {})
        declared = {p.key for p in self.parameters}
        undeclared = self.placeholders() - declared
        if undeclared:
            raise ValueError(f"Recipe '{self.title}' uses undeclared parameters: {sorted(undeclared)}")

        resolved: dict[str, str] = {}
        missing: list[str] = []
        for param in self.parameters:
            if param.key in values:
                resolved[param.key] = str(values[param.key])
            elif param.default is not None:
                resolved[param.key] = param.default
            elif param.required:
                missing.append(param.key)
        if missing:
            raise ValueError(f"Recipe '{self.title}' is missing required parameters: {missing}")
        return resolved

    def render(self, values: Mapping[str, str] | None = None) -> Recipe:
        """Return a copy with every `{{ param }}` substituted."""
        resolved = self.resolve_values(values)
        return self.model_copy(
            update={
                "instructions": substitute(self.instructions, resolved),
                "prompt": substitute(self.prompt, resolved),
            }
        )


def substitute(text: str, values: Mapping[str, str]) -> str:
    # Optional parameters without a value render as empty strings
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), ""), text)


def seed_session(recipe: Recipe, settings: Settings, values: Mapping[str, str] | None = None) -> tuple[Session, str]:
    """Build a fresh Session from a recipe. Returns (session, initial prompt)."""
    rendered = recipe.render(values)
    session = Session(
        name=rendered.title,
        instructions=rendered.instructions,
        mode=rendered.mode or settings.mode,
        bindings=settings.role_bindings(),
    )
    logger.info("Seeded session %s from recipe '%s'", session.id, recipe.title)
    return session, rendered.prompt


def create_extension(config: ExtensionConfig, builtins: Mapping[str, BuiltinFactory] | None = None) -> Extension:
    """Instantiate the extension an ExtensionConfig describes."""
    if config.kind == "stdio":
        from gosling.extensions.stdio import StdioExtension

        return StdioExtension(config)
    if config.kind == "frontend":
        from gosling.extensions.frontend import FrontendExtension

        return FrontendExtension(config)
    factory = (builtins or {}).get(config.name)
    if factory is None:
        raise ValueError(f"Unknown builtin extension '{config.name}'")
    return factory(config)


async def register_extensions(
    registry: ExtensionRegistry,
    configs: list[ExtensionConfig],
    builtins: Mapping[str, BuiltinFactory] | None = None,
) -> dict[str, ExtensionState]:
    """Register every enabled extension. Failures are recorded, not raised."""
    states: dict[str, ExtensionState] = {}
    for config in configs:
        if not config.enabled:
            continue
        if registry.snapshot().get(config.name) is not None:
            logger.debug("Extension '%s' already registered", config.name)
            states[config.name] = registry.state(config.name)
            continue
        try:
            extension = create_extension(config, builtins)
        except ValueError as e:
            logger.warning("Skipping extension '%s': %s", config.name, e)
            continue
        states[config.name] = await registry.register(extension, frontend=config.kind == "frontend")
    return states
