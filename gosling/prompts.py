"""System prompt assembly for main-loop turns."""

from __future__ import annotations

from gosling.extensions.base import ToolSchema
from gosling.session.schemas import ExecutionMode

BASE_SYSTEM_PROMPT = """\
You are a general-purpose AI agent. You work on the user's machine
through tools provided by extensions. Use tools when they help; answer
directly when they do not. Tool names have the form extension__tool.
When a tool call fails or is denied, read the result and adapt rather
than repeating the same call."""

_CHAT_MODE_NOTE = "Tools are disabled in this session. Answer with text only."


def build_system_prompt(
    extensions: list[tuple[str, str]],
    tools: list[ToolSchema],
    instructions: str = "",
    mode: ExecutionMode = "smart_approve",
) -> str:
    """Build the system prompt: session instructions, base prompt, extensions.

    `extensions` are (name, instructions) pairs for connected extensions.
    """
    parts: list[str] = []
    if instructions:
        parts.append(instructions.strip())
    parts.append(BASE_SYSTEM_PROMPT)

    if mode == "chat":
        parts.append(_CHAT_MODE_NOTE)
    elif extensions:
        lines = [f"# Extensions ({len(extensions)} extensions, {len(tools)} tools)"]
        for name, ext_instructions in extensions:
            lines.append(f"\n## {name}")
            if ext_instructions:
                lines.append(ext_instructions.strip())
        parts.append("\n".join(lines))

    return "\n\n".join(parts)
