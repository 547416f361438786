"""Extensions — pluggable tool providers and their dispatcher.

Public API: capability types, the registry, the dispatcher and the
builtin (in-process) extension. StdioExtension lives in
gosling.extensions.stdio and is imported on demand.
"""

from gosling.extensions.base import (
    CallOutput,
    Extension,
    ExtensionConfig,
    ExtensionState,
    ToolSchema,
)
from gosling.extensions.builtin import BuiltinExtension
from gosling.extensions.dispatcher import ToolDispatcher
from gosling.extensions.registry import ExtensionEntry, ExtensionRegistry, RegistrySnapshot

__all__ = [
    "BuiltinExtension",
    "CallOutput",
    "Extension",
    "ExtensionConfig",
    "ExtensionEntry",
    "ExtensionRegistry",
    "ExtensionState",
    "RegistrySnapshot",
    "ToolDispatcher",
    "ToolSchema",
]
