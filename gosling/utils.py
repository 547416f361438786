"""Shared utility functions for gosling."""

from __future__ import annotations

import json
from typing import Any

TOOL_NAME_SEPARATOR = "__"


def qualify_tool_name(extension: str, tool: str) -> str:
    """Join extension and tool into the name the model sees."""
    return f"{extension}{TOOL_NAME_SEPARATOR}{tool}"


def split_tool_name(name: str) -> tuple[str, str]:
    """Split a qualified tool name into (extension, tool).

    Names without a separator yield an empty extension so the dispatcher
    can resolve them as an invalid call instead of guessing.
    """
    extension, sep, tool = name.partition(TOOL_NAME_SEPARATOR)
    if not sep:
        return "", name
    return extension, tool


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def argument_shape(arguments: Any) -> Any:
    """Reduce an argument payload to its shape: keys and JSON types, no values.

    Objects keep their keys (sorted), arrays collapse to the sorted set of
    element shapes, scalars become their JSON type name.
    """
    if isinstance(arguments, dict):
        return {key: argument_shape(arguments[key]) for key in sorted(arguments)}
    if isinstance(arguments, list):
        shapes = {json.dumps(argument_shape(v), sort_keys=True) for v in arguments}
        return [json.loads(s) for s in sorted(shapes)]
    return _json_type(arguments)


def shape_key(arguments: Any) -> str:
    """Stable string form of argument_shape() for use in cache keys."""
    return json.dumps(argument_shape(arguments), sort_keys=True, separators=(",", ":"))


def truncate(text: str, limit: int) -> str:
    """Trim text to limit chars, keeping the head."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."
