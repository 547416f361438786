"""Tool-permission rules as CEL expressions.

Each rule is a CEL expression evaluated against a `call` map:

    call.extension   string
    call.tool        string
    call.name        string   ("extension__tool")
    call.read_only   bool
    call.arguments   map

e.g. `call.extension == "developer" && call.tool == "shell"` with verdict
"ask_user". CEL is sandboxed: no I/O, no side effects, deterministic.
Rules are checked in order; the first match wins.
"""

from __future__ import annotations

import concurrent.futures
import logging
from functools import lru_cache
from typing import Any

import celpy
from celpy import celtypes
from celpy.evaluation import CELEvalError

from gosling.config import PermissionRule
from gosling.session.schemas import PermissionVerdict, ToolCall

logger = logging.getLogger(__name__)

# Shared CEL environment, safe to reuse across threads
_CEL_ENV = celpy.Environment()

# Thread pool for CEL evaluation with timeout protection
_EVAL_EXECUTOR = concurrent.futures.ThreadPoolExecutor(max_workers=2)

_EVAL_TIMEOUT_SECONDS = 0.1

_VERDICTS = {
    "allow": PermissionVerdict.ALLOW,
    "deny": PermissionVerdict.DENY,
    "ask_user": PermissionVerdict.ASK_USER,
}


def _to_cel_value(value: Any) -> Any:
    """Convert Python values to CEL-compatible types."""
    if isinstance(value, bool):
        return celtypes.BoolType(value)
    if isinstance(value, int):
        return celtypes.IntType(value)
    if isinstance(value, float):
        return celtypes.DoubleType(value)
    if isinstance(value, str):
        return celtypes.StringType(value)
    if isinstance(value, (list, tuple)):
        return celtypes.ListType([_to_cel_value(v) for v in value])
    if isinstance(value, dict):
        return celtypes.MapType({celtypes.StringType(str(k)): _to_cel_value(v) for k, v in value.items()})
    if value is None:
        return celtypes.BoolType(False)  # CEL has no null; treat as false
    return celtypes.StringType(str(value))


def build_activation(call: ToolCall, read_only: bool = False) -> dict[str, Any]:
    """Build the CEL activation context as a 'call' map."""
    return {
        "call": _to_cel_value(
            {
                "extension": call.extension,
                "tool": call.tool,
                "name": call.qualified_name,
                "read_only": read_only,
                "arguments": call.arguments,
            }
        )
    }


@lru_cache(maxsize=100)
def _compile_program(expression: str) -> celpy.Runner:
    """Compile and cache a CEL expression."""
    try:
        ast = _CEL_ENV.compile(expression)
        return _CEL_ENV.program(ast)
    except Exception:
        logger.error("Failed to compile CEL expression: %s", expression)
        raise


class PermissionRules:
    """Ordered CEL rules mapping tool calls to verdicts."""

    def __init__(self, rules: list[PermissionRule]) -> None:
        self._rules = list(rules)
        for rule in self._rules:
            valid, error = self.validate_expression(rule.expression)
            if not valid:
                raise ValueError(f"Invalid permission rule '{rule.name}': {error}")

    def __len__(self) -> int:
        return len(self._rules)

    @staticmethod
    def validate_expression(expression: str) -> tuple[bool, str | None]:
        """Validate CEL expression syntax. Returns (is_valid, error_message)."""
        try:
            _compile_program(expression)
            return True, None
        except Exception as e:
            return False, str(e)

    def _evaluate(self, rule: PermissionRule, activation: dict[str, Any]) -> bool:
        """Evaluate one rule with a timeout.

        Deny rules fail closed: an evaluation error or timeout counts as a
        match. Allow and ask rules fail open (no match).
        """
        fail_closed = rule.verdict == "deny"
        try:
            program = _compile_program(rule.expression)
            future = _EVAL_EXECUTOR.submit(program.evaluate, activation)
            result = future.result(timeout=_EVAL_TIMEOUT_SECONDS)
            if isinstance(result, CELEvalError):
                raise result
            return bool(result)
        except concurrent.futures.TimeoutError:
            logger.error("CEL evaluation timed out: %s (rule=%s)", rule.expression, rule.name)
            return fail_closed
        except Exception:
            logger.error("CEL evaluation failed: %s (rule=%s)", rule.expression, rule.name, exc_info=True)
            return fail_closed

    def match(self, call: ToolCall, read_only: bool = False) -> tuple[PermissionVerdict, str] | None:
        """Return (verdict, rule name) for the first matching rule, else None."""
        if not self._rules:
            return None
        activation = build_activation(call, read_only)
        for rule in self._rules:
            if self._evaluate(rule, activation):
                return _VERDICTS[rule.verdict], rule.name
        return None
