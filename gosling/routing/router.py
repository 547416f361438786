"""Model Router — maps logical roles to concrete provider/model bindings.

Roles: main, lead, worker, planner. A Session may carry its own
bindings; anything it does not name comes from Settings.role_bindings().

Lead/worker delegation is active when the lead or the worker binding
differs from the main one. Which role a turn uses is decided by a
SwitchoverPolicy; the default TurnCountPolicy uses the lead for the first
`lead_turns` turns of a session and the worker afterwards, returning to
the lead for a few turns when the worker keeps producing failed tool
calls. Policies hold no state of their own: the failure streak and the
remaining fallback turns live on the Session, so they survive a resume
and never leak between sessions sharing one router.

The planner is only used out-of-band through plan(); it is never offered
tools and never takes part in a tool-call turn.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from gosling.config import Settings
from gosling.errors import ModelResolutionError
from gosling.providers.base import Provider, ProviderResponse
from gosling.session.schemas import Message, ModelRole, ModelRoleBinding, RoutingState, Session

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = """\
You are a planning assistant. Break the request into a short, ordered
plan of concrete steps. Name the tools or commands each step needs when
you know them. Do not execute anything. Output ONLY the plan."""


class SwitchoverPolicy(Protocol):
    """Decides which of lead/worker handles a turn."""

    def role_for_turn(self, state: RoutingState, turn_number: int) -> ModelRole: ...

    def record_outcome(self, state: RoutingState, role: ModelRole, failed: bool) -> None: ...


class TurnCountPolicy:
    """Lead for the first N turns, then worker, with a failure fallback."""

    def __init__(self, lead_turns: int = 3, failure_threshold: int = 2, fallback_turns: int = 2) -> None:
        self.lead_turns = lead_turns
        self.failure_threshold = failure_threshold
        self.fallback_turns = fallback_turns

    @classmethod
    def from_settings(cls, settings: Settings) -> TurnCountPolicy:
        return cls(
            lead_turns=settings.lead_turns,
            failure_threshold=settings.lead_failure_threshold,
            fallback_turns=settings.lead_fallback_turns,
        )

    def role_for_turn(self, state: RoutingState, turn_number: int) -> ModelRole:
        """turn_number is 1-based across the session."""
        if turn_number <= self.lead_turns or state.fallback_remaining > 0:
            return "lead"
        return "worker"

    def record_outcome(self, state: RoutingState, role: ModelRole, failed: bool) -> None:
        if role == "lead":
            # Only committed fallback turns use up the fallback window
            if state.fallback_remaining > 0:
                state.fallback_remaining -= 1
            return
        if role != "worker":
            return
        if not failed:
            state.consecutive_failures = 0
            return
        state.consecutive_failures += 1
        if self.failure_threshold > 0 and state.consecutive_failures >= self.failure_threshold:
            logger.warning(
                "Worker failed %d consecutive turns, falling back to lead for %d turns",
                state.consecutive_failures,
                self.fallback_turns,
            )
            state.fallback_remaining = self.fallback_turns
            state.consecutive_failures = 0


class ModelRouter:
    """Resolves roles to bindings and bindings to provider instances."""

    def __init__(
        self,
        settings: Settings,
        providers: Mapping[str, Provider],
        policy: SwitchoverPolicy | None = None,
    ) -> None:
        self._defaults = settings.role_bindings()
        self._providers = dict(providers)
        self._policy = policy or TurnCountPolicy.from_settings(settings)

    @property
    def policy(self) -> SwitchoverPolicy:
        return self._policy

    def resolve(self, role: ModelRole, session: Session | None = None) -> ModelRoleBinding:
        if session is not None and role in session.bindings:
            return session.bindings[role]
        return self._defaults[role]

    def lead_worker_enabled(self, session: Session | None = None) -> bool:
        main = self.resolve("main", session)
        target = (main.provider, main.model)
        return any(
            (binding.provider, binding.model) != target
            for binding in (self.resolve("lead", session), self.resolve("worker", session))
        )

    def binding_for_turn(self, session: Session) -> ModelRoleBinding:
        """Binding for the next AwaitingModel cycle of a session."""
        if not self.lead_worker_enabled(session):
            return self.resolve("main", session)
        role = self._policy.role_for_turn(session.routing, session.next_turn_index + 1)
        return self.resolve(role, session)

    def record_turn_outcome(self, session: Session, binding: ModelRoleBinding, failed: bool) -> None:
        self._policy.record_outcome(session.routing, binding.role, failed)

    def provider_for(self, binding: ModelRoleBinding) -> Provider:
        provider = self._providers.get(binding.provider)
        if provider is None:
            raise ModelResolutionError(
                f"No provider '{binding.provider}' for role '{binding.role}'",
                role=binding.role,
                provider=binding.provider,
            )
        return provider

    def validate(self, session: Session | None = None) -> None:
        """Fail fast if any role resolves to an unknown provider."""
        for role in ("main", "lead", "worker", "planner"):
            self.provider_for(self.resolve(role, session))

    # ------------------------------------------------------------------
    # Out-of-band calls
    # ------------------------------------------------------------------

    async def _complete(self, binding: ModelRoleBinding, system: str, text: str) -> ProviderResponse:
        provider = self.provider_for(binding)
        return await provider.complete(system, [Message.user(text)], [], binding.model, dict(binding.parameters))

    async def summarize(self, session: Session, system: str, transcript: str) -> str:
        """Summarization call used by compaction, on the main binding."""
        response = await self._complete(self.resolve("main", session), system, transcript)
        return response.text

    async def plan(self, session: Session, request: str) -> str:
        """Out-of-band planning call on the planner binding. No tools."""
        binding = self.resolve("planner", session)
        logger.info("Planning with %s/%s", binding.provider, binding.model)
        system = PLANNER_SYSTEM_PROMPT
        if session.instructions:
            system = f"{system}\n\n# Session instructions\n\n{session.instructions}"
        response = await self._complete(binding, system, request)
        return response.text
