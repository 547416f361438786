"""Prompt-injection scanner for tool traffic.

Scores tool-call arguments and tool output that will re-enter the model
context. Each matching pattern contributes its weight; weights combine
as a noisy-OR (1 - prod(1 - w)), so one strong signal dominates and
several weak ones accumulate without exceeding 1.0.

The scanner only scores. Escalation is the Permission Gate's job, and
nothing is ever blocked silently here.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from gosling.config import Settings
from gosling.session.schemas import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InjectionPattern:
    label: str
    pattern: re.Pattern[str]
    weight: float


def _p(label: str, regex: str, weight: float) -> InjectionPattern:
    return InjectionPattern(label, re.compile(regex, re.IGNORECASE | re.MULTILINE), weight)


DEFAULT_PATTERNS: tuple[InjectionPattern, ...] = (
    _p(
        "instruction_override",
        r"\b(ignore|disregard|forget|override)\b[^.\n]{0,40}\b(previous|prior|above|earlier|all|system)\b[^.\n]{0,20}\b(instructions?|prompts?|rules|directives)\b",
        0.9,
    ),
    _p("role_reassignment", r"\b(you are now|from now on,? you|act as|pretend to be)\b", 0.4),
    _p("fake_system_turn", r"(^\s*(system|assistant)\s*:|<\|im_start\|>|\[/?INST\]|</?system>)", 0.6),
    _p("new_instructions", r"\b(new|updated|real) (instructions|task|objective)\s*:", 0.6),
    _p("prompt_exfiltration", r"\b(reveal|print|output|repeat|leak)\b[^.\n]{0,30}\b(system prompt|instructions|api[_ ]?keys?|secrets?)\b", 0.6),
    _p("concealment", r"\b(do not|don't|never) (tell|inform|mention|alert)\b[^.\n]{0,20}\b(the )?user\b", 0.7),
    _p(
        "credential_exfiltration",
        r"\b(send|post|upload|exfiltrate|forward)\b[^.\n]{0,60}\b(api[_ ]?key|password|token|credentials?|ssh key|\.env)\b",
        0.8,
    ),
    _p("remote_script_execution", r"\b(curl|wget)\b[^|\n]{0,200}\|\s*(ba|z)?sh\b", 0.7),
    _p("encoded_execution", r"base64\s+(-d|--decode)[^|\n]{0,100}\|\s*(ba|z)?sh\b", 0.7),
    _p("destructive_command", r"\brm\s+-[a-z]*r[a-z]*f?[a-z]*\s+(/|~|\$HOME)(\s|$)", 0.6),
    _p("hidden_characters", r"[\u200b-\u200f\u202a-\u202e\u2066-\u2069]|[\U000e0000-\U000e007f]", 0.4),
)


@dataclass
class Finding:
    label: str
    weight: float
    excerpt: str


@dataclass
class ScanResult:
    score: float = 0.0
    findings: list[Finding] = field(default_factory=list)

    def labels(self) -> list[str]:
        return [f.label for f in self.findings]


class SecurityScanner:
    """Scores text for injected-instruction patterns."""

    def __init__(
        self,
        settings: Settings,
        patterns: tuple[InjectionPattern, ...] = DEFAULT_PATTERNS,
    ) -> None:
        self._enabled = settings.security_prompt_enabled
        self._threshold = settings.security_prompt_threshold
        self._patterns = patterns

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def threshold(self) -> float:
        return self._threshold

    def exceeds(self, score: float) -> bool:
        """True when a score is above the configured threshold (scanner enabled only)."""
        return self._enabled and score > self._threshold

    def scan_text(self, text: str) -> ScanResult:
        if not self._enabled or not text:
            return ScanResult()
        findings: list[Finding] = []
        remaining = 1.0
        for pat in self._patterns:
            match = pat.pattern.search(text)
            if match is None:
                continue
            findings.append(Finding(label=pat.label, weight=pat.weight, excerpt=match.group(0)[:120]))
            remaining *= 1.0 - pat.weight
        score = round(1.0 - remaining, 4) if findings else 0.0
        if findings:
            logger.debug("Scanner findings %s (score=%.2f)", [f.label for f in findings], score)
        return ScanResult(score=score, findings=findings)

    def scan_tool_call(self, call: ToolCall) -> ScanResult:
        """Score a call's argument payload."""
        return self.scan_text(_flatten(call.arguments))

    def scan_tool_result(self, result: ToolResult) -> ScanResult:
        """Score tool output before it re-enters the model context.

        Error results carry the tool's own output in their message, so
        payload and message are scanned together.
        """
        parts = [_flatten(result.payload)] if result.payload is not None else []
        if result.message:
            parts.append(result.message)
        return self.scan_text("\n".join(parts))


def _flatten(value: Any) -> str:
    """Collect every string in a payload into one scannable text."""
    if isinstance(value, str):
        return value
    parts: list[str] = []

    def walk(v: Any) -> None:
        if isinstance(v, str):
            parts.append(v)
        elif isinstance(v, dict):
            for key, item in v.items():
                parts.append(str(key))
                walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                walk(item)
        elif v is not None:
            parts.append(json.dumps(v, default=str))

    walk(value)
    return "\n".join(parts)
