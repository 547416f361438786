"""Context accounting and auto-compaction.

The Context Manager sizes the context from the provider-reported token
usage of the most recent call and compares it with the main model's
window. When usage / window reaches the configured threshold, the oldest
contiguous prefix of committed turns (excluding a protected tail of
recent turns) is replaced by one synthetic summary turn.

Compaction only runs between turns, before the next model call, so the
in-flight turn is never touched. A failed summarization is not fatal:
the session proceeds uncompacted and compaction is retried on the next
threshold breach.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from gosling.config import Settings
from gosling.errors import CompactionFailed
from gosling.session.schemas import CompactionEvent, Message, Session, Turn, Usage
from gosling.utils import truncate

logger = logging.getLogger(__name__)

# (system_prompt, transcript) -> summary text
Summarizer = Callable[[str, str], Awaitable[str]]

SUMMARY_PREFIX = "[Previous conversation summary]"
SUMMARY_ACK = "I have the context. Let's continue."

_TOOL_OUTPUT_LIMIT = 2000

# ------------------------------------------------------------------
# Summarization Prompts
# ------------------------------------------------------------------

CHECKPOINT_SYSTEM_PROMPT = """\
You are summarizing an agent session so it can continue in a smaller
context window. Output ONLY a structured summary.

## Goal
[1-2 sentences]

## Progress
### Done
- [x] [Completed items, including tools that were run and what they showed]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Next Steps
1. [Ordered list]

## Critical Context
- [File paths, commands, error messages, identifiers]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating an agent session summary with newer conversation.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, decisions, context
3. MOVE In Progress -> Done when completed
4. PRESERVE exact file paths, commands and error messages
5. Use SAME format as existing summary

Output ONLY the updated summary."""


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts, calibrated from provider-reported usage.

    Starts with a chars/4 heuristic and moves toward the observed ratio
    with an EMA (alpha=0.1) each time calibrate() is called.
    """

    def __init__(self, ratio: float = 0.25, alpha: float = 0.1) -> None:
        self._ratio = ratio  # tokens per char
        self._alpha = alpha
        self._samples = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        if not isinstance(text, str):
            text = str(text)
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Message) -> int:
        return self.estimate(render_message(message)) + 4

    def estimate_turns(self, turns: list[Turn]) -> int:
        return sum(self.estimate_message(m) for t in turns for m in t.messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update the ratio from an actual input_tokens count."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = self._alpha * observed + (1 - self._alpha) * self._ratio
        self._samples += 1


def render_message(message: Message) -> str:
    """Plain-text rendering of one message for estimation and summaries."""
    parts: list[str] = []
    if message.text:
        parts.append(message.text)
    for call in message.tool_calls:
        parts.append(f"[called {call.qualified_name} with {json.dumps(call.arguments, default=str)}]")
    for result in message.tool_results:
        parts.append(f"[result {result.call_id}: {truncate(result.as_text(), _TOOL_OUTPUT_LIMIT)}]")
    return "\n".join(parts)


# ------------------------------------------------------------------
# Context Manager
# ------------------------------------------------------------------


class ContextManager:
    """Tracks context usage for a session and compacts old turns."""

    def __init__(self, settings: Settings, estimator: TokenEstimator | None = None) -> None:
        self._threshold = settings.auto_compact_threshold
        self._keep_recent = settings.compaction_keep_recent_turns
        self.estimator = estimator or TokenEstimator()

    @property
    def threshold(self) -> float:
        return self._threshold

    def record_usage(self, session: Session, usage: Usage, input_chars: int = 0) -> None:
        """Account one provider call.

        The last call's total tokens become the context-size signal; the
        accumulation is kept separately for reporting.
        """
        session.last_usage = usage
        session.accumulated_usage = session.accumulated_usage + usage
        session.context_tokens = usage.total_tokens
        if input_chars:
            self.estimator.calibrate(input_chars, usage.input_tokens)

    def usage_ratio(self, session: Session, context_limit: int) -> float:
        if context_limit <= 0:
            return 0.0
        return session.context_tokens / context_limit

    def compactable_prefix(self, session: Session) -> list[Turn]:
        """Oldest turns eligible for compaction, excluding the protected tail.

        A prefix that is only the previous summary turn is not worth
        re-summarizing and yields nothing.
        """
        cut = len(session.turns) - self._keep_recent
        if cut <= 0:
            return []
        prefix = session.turns[:cut]
        if all(t.summary for t in prefix):
            return []
        return prefix

    def should_compact(self, session: Session, context_limit: int) -> bool:
        if self._threshold <= 0.0:
            return False
        if self.usage_ratio(session, context_limit) < self._threshold:
            return False
        return bool(self.compactable_prefix(session))

    async def compact(self, session: Session, summarize: Summarizer) -> CompactionEvent:
        """Replace the compactable prefix with one summary turn.

        Raises CompactionFailed when there is nothing to compact, the
        summarizer errors, or it returns an empty summary. The session is
        left untouched in that case.
        """
        prefix = self.compactable_prefix(session)
        if not prefix:
            raise CompactionFailed("No turns outside the protected tail")

        start_time = time.monotonic()
        existing = _summary_text(prefix[0]) if prefix[0].summary else None
        body = prefix[1:] if existing is not None else prefix
        transcript = serialize_turns(body)
        if existing is not None:
            system = UPDATE_SYSTEM_PROMPT
            transcript = f"## Existing Summary\n\n{existing}\n\n## New Conversation\n\n{transcript}"
        else:
            system = CHECKPOINT_SYSTEM_PROMPT

        try:
            summary = (await summarize(system, transcript)).strip()
        except Exception as e:
            raise CompactionFailed(f"Summarization call failed: {e}") from e
        if not summary:
            raise CompactionFailed("Summarizer returned an empty summary")

        first, last = prefix[0], prefix[-1]
        start = first.compacted_range[0] if first.compacted_range else first.index
        summary_turn = Turn(
            index=first.index,
            messages=[
                Message.user(f"{SUMMARY_PREFIX}\n\n{summary}"),
                Message.assistant(SUMMARY_ACK),
            ],
            summary=True,
            compacted_range=(start, last.index),
        )

        tokens_before = session.context_tokens
        removed = self.estimator.estimate_turns(prefix)
        added = self.estimator.estimate_turns([summary_turn])
        tokens_after = max(0, tokens_before - removed + added)

        session.turns = [summary_turn, *session.turns[len(prefix):]]
        session.context_tokens = tokens_after
        event = CompactionEvent(
            turn_index=session.next_turn_index,
            compacted_range=(start, last.index),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            summary=summary,
        )
        session.compactions.append(event)

        logger.info(
            "Compacted session %s: turns %d-%d -> summary (%d chars, ~%d -> ~%d tokens, %d ms)",
            session.id,
            start,
            last.index,
            len(summary),
            tokens_before,
            tokens_after,
            int((time.monotonic() - start_time) * 1000),
        )
        return event


def _summary_text(turn: Turn) -> str:
    text = turn.messages[0].text if turn.messages else ""
    return text.removeprefix(SUMMARY_PREFIX).strip()


def serialize_turns(turns: list[Turn]) -> str:
    """Serialize turns as readable text for summarization."""
    lines = []
    for turn in turns:
        for msg in turn.messages:
            role = {"user": "User", "assistant": "Assistant", "tool": "Tool"}[msg.role]
            lines.append(f"**{role}:** {render_message(msg)}")
    return "\n\n".join(lines)
