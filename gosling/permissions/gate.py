"""Permission Gate — decides whether a requested tool call may run.

Order of evaluation for one call:
1. chat mode denies every call.
2. A matching CEL permission rule supplies the verdict.
3. Otherwise the mode decides:
   auto          -> allow
   approve       -> allow read-only tools, ask for everything else
   smart_approve -> allow read-only tools and signatures approved
                    "always" earlier in this session, ask otherwise
4. Security escalation: if the call's arguments or tool output still
   in the session history score above the threshold, an allow becomes
   ask_user. A deny is never lowered.

AskUser verdicts are resolved through a PermissionBroker: the controller
awaits a future that the external caller completes with a UserDecision.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from gosling.config import Settings
from gosling.extensions.base import ToolSchema
from gosling.permissions.rules import PermissionRules
from gosling.security.scanner import SecurityScanner
from gosling.session.schemas import (
    PermissionDecision,
    PermissionVerdict,
    Session,
    ToolCall,
    UserDecision,
)

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    verdict: PermissionVerdict
    reason: str
    risk_score: float = 0.0
    findings: list[str] = field(default_factory=list)
    escalated: bool = False


class PermissionGate:
    """Stateless policy evaluation; per-session state lives on the Session."""

    def __init__(
        self,
        settings: Settings,
        scanner: SecurityScanner,
        rules: PermissionRules | None = None,
    ) -> None:
        self._settings = settings
        self._scanner = scanner
        self._rules = rules if rules is not None else PermissionRules(settings.permission_rules)

    def evaluate(self, call: ToolCall, session: Session, tool: ToolSchema | None = None) -> GateResult:
        mode = session.mode
        read_only = tool.read_only if tool is not None else False

        if mode == "chat":
            return GateResult(PermissionVerdict.DENY, "chat mode: tool calls are disabled")

        verdict, reason = self._base_verdict(call, session, read_only)

        scan = self._scanner.scan_tool_call(call)
        context_risk = session.context_risk()
        risk = max(scan.score, context_risk)
        result = GateResult(verdict, reason, risk_score=risk, findings=scan.labels())

        if self._scanner.exceeds(risk) and verdict is PermissionVerdict.ALLOW:
            source = "arguments" if scan.score >= context_risk else "earlier tool output"
            result.verdict = PermissionVerdict.ASK_USER
            result.reason = f"risk {risk:.2f} from {source} above threshold {self._scanner.threshold:.2f}"
            result.escalated = True
            logger.warning("Escalated %s to ask_user: %s", call.qualified_name, result.reason)
        return result

    def _base_verdict(self, call: ToolCall, session: Session, read_only: bool) -> tuple[PermissionVerdict, str]:
        matched = self._rules.match(call, read_only)
        if matched is not None:
            verdict, rule_name = matched
            return verdict, f"rule '{rule_name}'"

        mode = session.mode
        if mode == "auto":
            return PermissionVerdict.ALLOW, "auto mode"
        if read_only:
            return PermissionVerdict.ALLOW, "read-only tool"
        if mode == "smart_approve" and session.is_approved(call):
            return PermissionVerdict.ALLOW, "previously approved signature"
        return PermissionVerdict.ASK_USER, f"{mode} mode requires approval"

    def record(
        self,
        session: Session,
        call: ToolCall,
        result: GateResult,
        override: UserDecision | None = None,
    ) -> PermissionDecision:
        """Append the final decision for a call to the session."""
        decision = PermissionDecision(
            call_id=call.id,
            mode=session.mode,
            verdict=result.verdict,
            override=override,
            reason=result.reason,
            risk_score=result.risk_score,
        )
        session.permissions.append(decision)
        if override is UserDecision.ALLOW_ALWAYS:
            session.approve(call)
        return decision


class PermissionBroker:
    """Explicit wait points for AskUser verdicts, keyed by call id."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[UserDecision]] = {}

    def request(self, call_id: str) -> asyncio.Future[UserDecision]:
        if call_id in self._pending:
            return self._pending[call_id]
        future: asyncio.Future[UserDecision] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        return future

    def resolve(self, call_id: str, decision: UserDecision) -> bool:
        """Deliver a human decision. Returns False if nothing was waiting."""
        future = self._pending.pop(call_id, None)
        if future is None or future.done():
            logger.warning("No pending permission request for call %s", call_id)
            return False
        future.set_result(decision)
        return True

    def discard(self, call_id: str) -> None:
        future = self._pending.pop(call_id, None)
        if future is not None and not future.done():
            future.cancel()

    def pending(self) -> list[str]:
        return list(self._pending)

    def cancel_all(self) -> None:
        for call_id in list(self._pending):
            self.discard(call_id)
