"""Turn Controller — the per-session state machine.

    Idle -> AwaitingModel -> Responding -> PermissionPending -> Executing
         -> Accounting -> AwaitingModel (loop)
         | Completed | TurnLimitReached | Cancelled | Fatal

One reply() call drives the loop for one user message. Each
AwaitingModel cycle produces one Turn, committed to the Session only
after every ToolCall in it has a ToolResult. Cancellation is checked at
every state boundary and raced against every await; a cancelled or
fatal reply never commits its in-flight turn.

Every transition is visible on the EventBus. Tool failures and denials
resolve into ToolResults the model sees on the next cycle; only provider
failures that survive the retry policy, unresolvable model bindings and
corrupt state end a reply as Fatal.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from gosling.config import Settings
from gosling.context.compaction import ContextManager, render_message
from gosling.engine.cancellation import CancellationToken
from gosling.errors import (
    CompactionFailed,
    ContextOverflow,
    ModelResolutionError,
    ProviderError,
    SessionCancelled,
    SessionCorrupt,
)
from gosling.events import Event, EventBus, EventType
from gosling.extensions.base import ToolSchema
from gosling.extensions.dispatcher import ToolDispatcher
from gosling.extensions.frontend import HostToolBroker
from gosling.extensions.registry import RegistrySnapshot
from gosling.permissions.gate import PermissionBroker, PermissionGate
from gosling.prompts import build_system_prompt
from gosling.providers.base import Provider, ProviderResponse, open_stream
from gosling.routing.router import ModelRouter
from gosling.security.scanner import SecurityScanner
from gosling.session.schemas import (
    Message,
    ModelRoleBinding,
    PermissionVerdict,
    Session,
    ToolCall,
    ToolErrorKind,
    ToolOutcome,
    ToolResult,
    Turn,
    UserDecision,
)
from gosling.storage.store import SessionStore

logger = logging.getLogger(__name__)


class TurnState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    RESPONDING = "responding"
    PERMISSION_PENDING = "permission_pending"
    EXECUTING = "executing"
    ACCOUNTING = "accounting"
    COMPLETED = "completed"
    TURN_LIMIT_REACHED = "turn_limit_reached"
    CANCELLED = "cancelled"
    FATAL = "fatal"


_FAILED_OUTCOMES = frozenset({ToolOutcome.ERROR, ToolOutcome.TIMED_OUT})
# Outcomes whose text comes from the tool itself
_SCANNED_OUTCOMES = frozenset({ToolOutcome.SUCCESS, ToolOutcome.ERROR})


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class ReplyOutcome:
    """How one reply() ended."""

    state: TurnState
    text: str = ""
    model_calls: int = 0
    error: str | None = None


@dataclass
class _InFlightTurn:
    """Work for the turn being built. Discarded if the reply does not finish it."""

    index: int
    binding: ModelRoleBinding
    snapshot: RegistrySnapshot
    messages: list[Message] = field(default_factory=list)
    calls: list[ToolCall] = field(default_factory=list)
    results: dict[str, ToolResult] = field(default_factory=dict)
    permitted: set[str] = field(default_factory=set)


class TurnController:
    """Sequences router, provider, gate, dispatcher and context manager for one Session."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        router: ModelRouter,
        dispatcher: ToolDispatcher,
        gate: PermissionGate,
        scanner: SecurityScanner,
        context: ContextManager,
        events: EventBus,
        *,
        broker: PermissionBroker | None = None,
        host_tools: HostToolBroker | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self.session = session
        self._settings = settings
        self._router = router
        self._dispatcher = dispatcher
        self._gate = gate
        self._scanner = scanner
        self._context = context
        self._events = events
        self._broker = broker or PermissionBroker()
        self._host_tools = host_tools or HostToolBroker()
        self._store = store
        self._state = TurnState.IDLE
        self._token = CancellationToken()
        self._turn: _InFlightTurn | None = None
        self._last_binding: ModelRoleBinding | None = None
        self._running = False

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def broker(self) -> PermissionBroker:
        return self._broker

    @property
    def host_tools(self) -> HostToolBroker:
        return self._host_tools

    # ------------------------------------------------------------------
    # External controls
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "user") -> None:
        """Cancel the running reply. Pending tool calls resolve Denied/Cancelled."""
        self._token.cancel(reason)

    def resolve_permission(self, call_id: str, decision: UserDecision) -> bool:
        """Answer a PERMISSION_NEEDED event."""
        return self._broker.resolve(call_id, decision)

    def resolve_frontend_tool(self, call_id: str, content: Any, is_error: bool = False) -> bool:
        """Answer a FRONTEND_TOOL_REQUESTED event with the host's result."""
        return self._host_tools.resolve(call_id, content, is_error)

    async def plan(self, request: str) -> str:
        """Out-of-band planning on the planner role. Never part of a tool turn."""
        return await self._router.plan(self.session, request)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def reply(self, user_text: str) -> ReplyOutcome:
        """Run the turn loop for one user message until a terminal state."""
        if self._running:
            raise RuntimeError(f"Reply already in progress (state={self._state})")

        self._running = True
        self._token = CancellationToken()
        self._state = TurnState.IDLE
        self.session.cancelled = False
        pending_user: Message | None = Message.user(user_text)
        model_calls = 0
        final_text = ""

        try:
            while True:
                if model_calls >= self._settings.max_turns:
                    logger.warning("Session %s reached max_turns=%d", self.session.id, self._settings.max_turns)
                    return await self._finish(TurnState.TURN_LIMIT_REACHED, final_text, model_calls)

                await self._maybe_compact()

                self._enter(TurnState.AWAITING_MODEL)
                model_calls += 1
                turn = await self._start_turn(pending_user)
                pending_user = None

                response = await self._call_model(turn)

                self._enter(TurnState.RESPONDING)
                final_text = response.text
                turn.calls = list(response.tool_calls)
                turn.messages.append(Message.assistant(response.text, turn.calls))

                if turn.calls:
                    self._enter(TurnState.PERMISSION_PENDING)
                    allowed = await self._resolve_permissions(turn)
                    self._enter(TurnState.EXECUTING)
                    await self._execute(turn, allowed)

                self._enter(TurnState.ACCOUNTING)
                await self._commit(turn, response)

                if not turn.calls:
                    return await self._finish(TurnState.COMPLETED, final_text, model_calls)

        except SessionCancelled:
            await self._resolve_abandoned()
            self.session.cancelled = True
            return await self._finish(TurnState.CANCELLED, final_text, model_calls, error=self._token.reason)
        except (ProviderError, ModelResolutionError, SessionCorrupt) as e:
            logger.error("Session %s fatal: %s", self.session.id, e)
            await self._resolve_abandoned()
            return await self._finish(TurnState.FATAL, final_text, model_calls, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error in turn loop for session %s", self.session.id)
            await self._resolve_abandoned()
            return await self._finish(TurnState.FATAL, final_text, model_calls, error=f"{type(e).__name__}: {e}")
        finally:
            self._broker.cancel_all()
            self._host_tools.cancel_all()
            self._turn = None
            self._running = False

    def _enter(self, state: TurnState) -> None:
        """Transition to a non-terminal state, honouring cancellation."""
        self._token.raise_if_cancelled()
        logger.debug("Session %s: %s -> %s", self.session.id, self._state, state)
        self._state = state

    async def _emit(self, event_type: EventType, data: dict[str, Any] | None = None, turn_index: int | None = None) -> None:
        if turn_index is None and self._turn is not None:
            turn_index = self._turn.index
        await self._events.emit(Event(event_type, self.session.id, data or {}, turn_index=turn_index))

    async def _finish(self, state: TurnState, text: str, model_calls: int, error: str | None = None) -> ReplyOutcome:
        logger.debug("Session %s: %s -> %s", self.session.id, self._state, state)
        self._state = state
        await self._persist()
        data: dict[str, Any] = {"reason": state.value, "model_calls": model_calls}
        if error:
            data["error"] = error
        await self._emit(EventType.SESSION_ENDED, data)
        return ReplyOutcome(state=state, text=text, model_calls=model_calls, error=error)

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(self.session)
        except Exception:
            logger.exception("Failed to persist session %s", self.session.id)

    # ------------------------------------------------------------------
    # AwaitingModel
    # ------------------------------------------------------------------

    async def _start_turn(self, pending_user: Message | None) -> _InFlightTurn:
        binding = self._router.binding_for_turn(self.session)
        turn = _InFlightTurn(
            index=self.session.next_turn_index,
            binding=binding,
            snapshot=self._dispatcher.registry.snapshot(),
        )
        if pending_user is not None:
            turn.messages.append(pending_user)
        self._turn = turn

        if self._last_binding is not None and (
            (self._last_binding.provider, self._last_binding.model) != (binding.provider, binding.model)
        ):
            await self._emit(
                EventType.MODEL_CHANGED,
                {"role": binding.role, "provider": binding.provider, "model": binding.model},
            )
        self._last_binding = binding
        await self._emit(
            EventType.TURN_STARTED,
            {"role": binding.role, "provider": binding.provider, "model": binding.model},
        )
        return turn

    def _prompt_tools(self, turn: _InFlightTurn) -> list[ToolSchema]:
        if self.session.mode == "chat":
            return []
        return self._dispatcher.prompt_tools(turn.snapshot)

    async def _call_model(self, turn: _InFlightTurn) -> ProviderResponse:
        """Call the provider for this turn, retrying transient failures."""
        provider = self._router.provider_for(turn.binding)
        tools = self._prompt_tools(turn)
        system = build_system_prompt(
            self._dispatcher.registry.extension_info(turn.snapshot),
            tools,
            instructions=self.session.instructions,
            mode=self.session.mode,
        )
        messages = self.session.history() + turn.messages

        attempt = 0
        while True:
            try:
                response = await self._token.race(self._consume_stream(provider, system, messages, tools, turn))
                break
            except ProviderError as e:
                if not e.transient or attempt >= self._settings.provider_max_retries:
                    raise
                attempt += 1
                delay = e.retry_after
                if delay is None:
                    delay = self._settings.provider_retry_backoff * (2 ** (attempt - 1))
                delay = min(delay, self._settings.provider_retry_backoff_max)
                logger.warning(
                    "Provider %s transient error (attempt %d/%d), retrying in %.1fs: %s",
                    turn.binding.provider,
                    attempt,
                    self._settings.provider_max_retries,
                    delay,
                    e,
                )
                await self._emit(
                    EventType.PROVIDER_RETRY,
                    {"attempt": attempt, "delay": delay, "error": str(e), "status_code": e.status_code},
                )
                await self._token.race(asyncio.sleep(delay))

        input_chars = len(system) + sum(len(render_message(m)) for m in messages)
        self._context.record_usage(self.session, response.usage, input_chars)
        return response

    async def _consume_stream(
        self,
        provider: Provider,
        system: str,
        messages: list[Message],
        tools: list[ToolSchema],
        turn: _InFlightTurn,
    ) -> ProviderResponse:
        binding = turn.binding
        parts: list[str] = []
        response = ProviderResponse(model=binding.model)
        async for chunk in open_stream(provider, system, messages, tools, binding.model, dict(binding.parameters)):
            if chunk.type == "text_delta":
                parts.append(chunk.text)
                await self._emit(EventType.MODEL_TEXT_DELTA, {"text": chunk.text})
            elif chunk.type == "done":
                response.tool_calls = list(chunk.tool_calls)
                if chunk.usage is not None:
                    response.usage = chunk.usage
                response.model = chunk.model or binding.model
        response.text = "".join(parts)
        return response

    # ------------------------------------------------------------------
    # PermissionPending
    # ------------------------------------------------------------------

    async def _resolve_permissions(self, turn: _InFlightTurn) -> list[ToolCall]:
        """Gate every call in order. Returns the calls allowed to run."""
        for call in turn.calls:
            await self._emit(
                EventType.TOOL_CALL_REQUESTED,
                {"call_id": call.id, "extension": call.extension, "tool": call.tool, "arguments": call.arguments},
            )

        allowed: list[ToolCall] = []
        for call in turn.calls:
            self._token.raise_if_cancelled()
            schema = turn.snapshot.find_tool(call.extension, call.tool)
            result = self._gate.evaluate(call, self.session, schema)

            if result.findings or result.escalated:
                await self._emit(
                    EventType.SECURITY_FINDING,
                    {"call_id": call.id, "score": result.risk_score, "findings": result.findings, "source": "arguments"},
                )

            override: UserDecision | None = None
            if result.verdict is PermissionVerdict.ASK_USER:
                await self._emit(
                    EventType.PERMISSION_NEEDED,
                    {
                        "call_id": call.id,
                        "extension": call.extension,
                        "tool": call.tool,
                        "arguments": call.arguments,
                        "reason": result.reason,
                        "risk_score": result.risk_score,
                    },
                )
                override = await self._token.race(self._broker.request(call.id))

            decision = self._gate.record(self.session, call, result, override)
            await self._emit(
                EventType.PERMISSION_DECIDED,
                {
                    "call_id": call.id,
                    "verdict": decision.verdict.value,
                    "override": decision.override.value if decision.override else None,
                    "reason": decision.reason,
                    "risk_score": decision.risk_score,
                },
            )

            if decision.allowed:
                turn.permitted.add(call.id)
                allowed.append(call)
            else:
                reason = "Denied by user" if override is UserDecision.DENY else f"Denied: {decision.reason}"
                logger.warning("Tool call %s denied (%s)", call.qualified_name, reason)
                await self._deliver(turn, ToolResult.denied(call.id, reason))
        return allowed

    # ------------------------------------------------------------------
    # Executing
    # ------------------------------------------------------------------

    async def _execute(self, turn: _InFlightTurn, calls: list[ToolCall]) -> None:
        if not calls:
            return

        async def on_result(result: ToolResult) -> None:
            await self._deliver(turn, await self._scan(result))

        host_calls = [c for c in calls if turn.snapshot.is_frontend(c.extension)]
        dispatched = [c for c in calls if not turn.snapshot.is_frontend(c.extension)]
        work = [self._run_host_call(turn, call, on_result) for call in host_calls]
        if dispatched:
            work.append(self._dispatcher.dispatch_all(dispatched, turn.snapshot, on_result))
        await self._token.race(asyncio.gather(*work))

    async def _run_host_call(self, turn: _InFlightTurn, call: ToolCall, on_result) -> None:
        """Hand a frontend tool call to the host and wait for its answer."""
        timeout = self._dispatcher.timeout_for(turn.snapshot, call)
        future = self._host_tools.request(call.id)
        await self._emit(
            EventType.FRONTEND_TOOL_REQUESTED,
            {"call_id": call.id, "extension": call.extension, "tool": call.tool, "arguments": call.arguments},
        )
        start = time.monotonic()
        try:
            output = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Frontend tool %s got no answer within %.1fs", call.qualified_name, timeout)
            await on_result(ToolResult.timed_out(call.id, timeout, _elapsed_ms(start)))
            return
        finally:
            self._host_tools.discard(call.id)

        duration_ms = _elapsed_ms(start)
        if output.is_error:
            content = output.content
            message = content if isinstance(content, str) else json.dumps(content, default=str)
            await on_result(ToolResult.error(call.id, ToolErrorKind.APPLICATION, message, duration_ms))
        else:
            await on_result(ToolResult.success(call.id, output.content, duration_ms))

    async def _scan(self, result: ToolResult) -> ToolResult:
        """Score tool output that will re-enter the model context."""
        if not self._scanner.enabled or result.outcome not in _SCANNED_OUTCOMES:
            return result
        scan = self._scanner.scan_tool_result(result)
        if scan.findings:
            await self._emit(
                EventType.SECURITY_FINDING,
                {"call_id": result.call_id, "score": scan.score, "findings": scan.labels(), "source": "tool_output"},
            )
        return result.model_copy(update={"risk_score": scan.score})

    async def _deliver(self, turn: _InFlightTurn, result: ToolResult) -> None:
        """Attribute a result to its call by id and publish it."""
        if result.call_id in turn.results:
            return
        turn.results[result.call_id] = result
        await self._emit(
            EventType.TOOL_RESULT_READY,
            {
                "call_id": result.call_id,
                "outcome": result.outcome.value,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "message": result.message,
                "duration_ms": result.duration_ms,
                "risk_score": result.risk_score,
            },
        )

    async def _resolve_abandoned(self) -> None:
        """Resolve every call of the in-flight turn that has no result yet.

        Calls that never got permission resolve Denied; calls that were
        dispatched resolve Cancelled. The turn itself is not committed.
        """
        turn = self._turn
        if turn is None:
            return
        for call in turn.calls:
            if call.id in turn.results:
                continue
            if call.id in turn.permitted:
                result = ToolResult.cancelled(call.id)
            else:
                result = ToolResult.denied(call.id, "Cancelled before approval")
            await self._deliver(turn, result)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    async def _commit(self, turn: _InFlightTurn, response: ProviderResponse) -> None:
        if turn.calls:
            turn.messages.append(Message.tool([turn.results[c.id] for c in turn.calls]))

        committed = Turn(
            index=turn.index,
            messages=turn.messages,
            role=turn.binding.role,
            model=response.model or turn.binding.model,
            usage=response.usage,
        )
        self.session.commit(committed)

        failed = any(r.outcome in _FAILED_OUTCOMES for r in turn.results.values())
        self._router.record_turn_outcome(self.session, turn.binding, failed)

        await self._emit(
            EventType.TURN_COMPLETED,
            {
                "tool_calls": len(turn.calls),
                "failed": failed,
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "context_tokens": self.session.context_tokens,
            },
            turn_index=turn.index,
        )
        self._turn = None
        await self._persist()

    async def _maybe_compact(self) -> None:
        """Compact before the next model call when usage crosses the threshold."""
        limit = self._router.resolve("main", self.session).context_limit
        if not self._context.should_compact(self.session, limit):
            return
        ratio = self._context.usage_ratio(self.session, limit)

        async def summarize(system: str, transcript: str) -> str:
            return await self._router.summarize(self.session, system, transcript)

        try:
            event = await self._token.race(self._context.compact(self.session, summarize))
        except CompactionFailed as e:
            logger.warning("Compaction failed for session %s: %s", self.session.id, e)
            await self._emit(EventType.COMPACTION_FAILED, {"error": str(e), "ratio": ratio})
            if ratio >= 1.0:
                overflow = ContextOverflow(ratio)
                logger.warning("Session %s: %s", self.session.id, overflow)
                await self._emit(EventType.CONTEXT_OVERFLOW, {"ratio": ratio, "error": str(overflow)})
            return

        await self._emit(
            EventType.COMPACTION_OCCURRED,
            {
                "compacted_range": list(event.compacted_range),
                "tokens_before": event.tokens_before,
                "tokens_after": event.tokens_after,
            },
            turn_index=event.turn_index,
        )
        await self._persist()


__all__ = ["ReplyOutcome", "TurnController", "TurnState"]
