"""Pydantic models for sessions, turns, messages and tool traffic.

These models define the data contract between the Turn Controller and
its collaborators, and the persisted form of a Session. A Session
round-trips through model_dump_json() / model_validate_json().
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from gosling.utils import qualify_tool_name, shape_key, split_tool_name

# Type aliases using Literal for validation at the model boundary
Role = Literal["user", "assistant", "tool"]
ExecutionMode = Literal["auto", "approve", "chat", "smart_approve"]
ModelRole = Literal["main", "lead", "worker", "planner"]

SESSION_SCHEMA_VERSION = 1


def _now() -> datetime:
    return datetime.now(UTC)


# --- Tool calls ---


class ToolCall(BaseModel):
    """A structured request from the model to invoke one tool."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}")
    extension: str
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_qualified(cls, call_id: str, name: str, arguments: dict[str, Any] | None = None) -> ToolCall:
        """Build a call from the `extension__tool` name a provider returns."""
        extension, tool = split_tool_name(name)
        return cls(id=call_id, extension=extension, tool=tool, arguments=arguments or {})

    @property
    def qualified_name(self) -> str:
        return qualify_tool_name(self.extension, self.tool)

    def signature(self) -> str:
        """(extension, tool, argument-shape) key used by smart-approve."""
        return f"{self.extension}/{self.tool}/{shape_key(self.arguments)}"


class ToolOutcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ToolErrorKind(StrEnum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    APPLICATION = "application"
    UNAVAILABLE = "unavailable"
    INVALID = "invalid"


class ToolResult(BaseModel):
    """Resolution of exactly one ToolCall, correlated by call_id."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    outcome: ToolOutcome
    payload: Any = None
    error_kind: ToolErrorKind | None = None
    message: str | None = None
    duration_ms: int = 0
    risk_score: float | None = None  # set when tool output was scanned

    @classmethod
    def success(cls, call_id: str, payload: Any, duration_ms: int = 0) -> ToolResult:
        return cls(call_id=call_id, outcome=ToolOutcome.SUCCESS, payload=payload, duration_ms=duration_ms)

    @classmethod
    def error(cls, call_id: str, kind: ToolErrorKind, message: str, duration_ms: int = 0) -> ToolResult:
        return cls(
            call_id=call_id,
            outcome=ToolOutcome.ERROR,
            error_kind=kind,
            message=message,
            duration_ms=duration_ms,
        )

    @classmethod
    def denied(cls, call_id: str, message: str = "Tool call denied") -> ToolResult:
        return cls(call_id=call_id, outcome=ToolOutcome.DENIED, message=message)

    @classmethod
    def timed_out(cls, call_id: str, timeout: float, duration_ms: int = 0) -> ToolResult:
        return cls(
            call_id=call_id,
            outcome=ToolOutcome.TIMED_OUT,
            error_kind=ToolErrorKind.TIMEOUT,
            message=f"Tool call timed out after {timeout:g}s",
            duration_ms=duration_ms,
        )

    @classmethod
    def cancelled(cls, call_id: str, duration_ms: int = 0) -> ToolResult:
        return cls(
            call_id=call_id,
            outcome=ToolOutcome.CANCELLED,
            message="Tool call cancelled",
            duration_ms=duration_ms,
        )

    @property
    def is_error(self) -> bool:
        return self.outcome is not ToolOutcome.SUCCESS

    def as_text(self) -> str:
        """Render the result the way it is fed back to the model."""
        if self.outcome is ToolOutcome.SUCCESS:
            if isinstance(self.payload, str):
                return self.payload
            return "" if self.payload is None else json.dumps(self.payload, default=str)
        if self.outcome is ToolOutcome.ERROR:
            return f"Error ({self.error_kind}): {self.message}"
        if self.message:
            return f"{self.outcome.value}: {self.message}"
        return self.outcome.value


# --- Messages and turns ---


class Usage(BaseModel):
    """Token usage counters for one provider call or an accumulation."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class Message(BaseModel):
    """A single message: text and/or structured tool-call/result payload."""

    model_config = ConfigDict(frozen=True)

    role: Role
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    token_count: int = 0
    created_at: datetime = Field(default_factory=_now)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", text=text)

    @classmethod
    def assistant(cls, text: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", text=text, tool_calls=tool_calls or [])

    @classmethod
    def tool(cls, results: list[ToolResult]) -> Message:
        return cls(role="tool", tool_results=results)


class Turn(BaseModel):
    """One request/response cycle. Immutable once committed."""

    model_config = ConfigDict(frozen=True)

    index: int
    messages: list[Message]
    role: ModelRole = "main"
    model: str = ""
    usage: Usage = Field(default_factory=Usage)
    summary: bool = False  # synthetic turn produced by compaction
    compacted_range: tuple[int, int] | None = None  # inclusive turn indices replaced

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [c for m in self.messages for c in m.tool_calls]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [r for m in self.messages for r in m.tool_results]

    def unresolved_calls(self) -> list[str]:
        """Ids of ToolCalls in this turn that have no matching ToolResult."""
        resolved = {r.call_id for r in self.tool_results}
        return [c.id for c in self.tool_calls if c.id not in resolved]

    def max_risk(self) -> float:
        scores = [r.risk_score for r in self.tool_results if r.risk_score is not None]
        return max(scores, default=0.0)


# --- Policy records ---


class PermissionVerdict(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK_USER = "ask_user"


class UserDecision(StrEnum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


class PermissionDecision(BaseModel):
    """Record of one gate decision. Never retroactively changed."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    mode: ExecutionMode
    verdict: PermissionVerdict
    override: UserDecision | None = None
    reason: str = ""
    risk_score: float = 0.0
    decided_at: datetime = Field(default_factory=_now)

    @property
    def allowed(self) -> bool:
        if self.override is not None:
            return self.override is not UserDecision.DENY
        return self.verdict is PermissionVerdict.ALLOW


class ModelRoleBinding(BaseModel):
    """A logical role resolved to a concrete provider/model/parameters."""

    model_config = ConfigDict(frozen=True)

    role: ModelRole
    provider: str
    model: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    context_limit: int = 128_000


class CompactionEvent(BaseModel):
    """A summary replacing a contiguous prefix of committed turns."""

    model_config = ConfigDict(frozen=True)

    turn_index: int  # next turn index at the time compaction ran
    compacted_range: tuple[int, int]
    tokens_before: int
    tokens_after: int
    summary: str
    occurred_at: datetime = Field(default_factory=_now)


class RoutingState(BaseModel):
    """Lead/worker switchover counters, carried per session."""

    consecutive_failures: int = 0  # worker turns in a row with failed tool calls
    fallback_remaining: int = 0  # lead turns left before returning to the worker


# --- Session ---


class Session(BaseModel):
    """One agent session. Owned by a single Turn Controller while live."""

    schema_version: int = SESSION_SCHEMA_VERSION
    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = ""
    instructions: str = ""  # recipe / system instructions
    mode: ExecutionMode = "smart_approve"
    bindings: dict[ModelRole, ModelRoleBinding] = Field(default_factory=dict)
    turns: list[Turn] = Field(default_factory=list)
    next_turn_index: int = 0

    # Accounting: the last call's usage sizes the context; the accumulation is for reporting
    last_usage: Usage = Field(default_factory=Usage)
    accumulated_usage: Usage = Field(default_factory=Usage)
    context_tokens: int = 0

    permissions: list[PermissionDecision] = Field(default_factory=list)
    approved_signatures: list[str] = Field(default_factory=list)
    compactions: list[CompactionEvent] = Field(default_factory=list)
    routing: RoutingState = Field(default_factory=RoutingState)
    cancelled: bool = False

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def commit(self, turn: Turn) -> None:
        """Append a closed turn to the history."""
        if turn.index != self.next_turn_index:
            raise ValueError(f"Turn index {turn.index} out of order (expected {self.next_turn_index})")
        unresolved = turn.unresolved_calls()
        if unresolved:
            raise ValueError(f"Turn {turn.index} has unresolved tool calls: {unresolved}")
        self.turns.append(turn)
        self.next_turn_index += 1
        self.updated_at = _now()

    def history(self) -> list[Message]:
        """All committed messages in order."""
        return [m for t in self.turns for m in t.messages]

    def context_risk(self) -> float:
        """Highest injection risk among tool outputs still present in history."""
        return max((t.max_risk() for t in self.turns), default=0.0)

    def is_approved(self, call: ToolCall) -> bool:
        return call.signature() in self.approved_signatures

    def approve(self, call: ToolCall) -> None:
        signature = call.signature()
        if signature not in self.approved_signatures:
            self.approved_signatures.append(signature)
