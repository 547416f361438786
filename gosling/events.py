"""In-process async event stream for the turn engine.

The Turn Controller is the single producer. Consumers either subscribe()
for an ordered async iterator of every event (CLI renderers, SSE routes),
or register handlers with on() that run on a background task with
error isolation — one broken handler never crashes the bus or blocks
other handlers.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]


class EventType(StrEnum):
    TURN_STARTED = "turn_started"
    MODEL_CHANGED = "model_changed"
    MODEL_TEXT_DELTA = "model_text_delta"
    PROVIDER_RETRY = "provider_retry"
    TOOL_CALL_REQUESTED = "tool_call_requested"
    SECURITY_FINDING = "security_finding"
    PERMISSION_NEEDED = "permission_needed"
    PERMISSION_DECIDED = "permission_decided"
    FRONTEND_TOOL_REQUESTED = "frontend_tool_requested"
    TOOL_RESULT_READY = "tool_result_ready"
    COMPACTION_OCCURRED = "compaction_occurred"
    COMPACTION_FAILED = "compaction_failed"
    CONTEXT_OVERFLOW = "context_overflow"
    TURN_COMPLETED = "turn_completed"
    SESSION_ENDED = "session_ended"


@dataclass
class Event:
    """A typed event flowing through the stream."""

    type: EventType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    turn_index: int | None = None
    seq: int = 0  # assigned by the bus on emit
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


_CLOSED = object()


class Subscription:
    """Ordered view of the stream for one consumer.

    Iterates until the bus closes it. Unbounded so the producer never
    blocks on a slow renderer.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def _push(self, event: Event) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)
            self._bus._unsubscribe(self)

    def drain(self) -> list[Event]:
        """Return every event queued so far without waiting."""
        events: list[Event] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class EventBus:
    """Single-producer, multi-consumer event stream.

    Subscribers receive every event synchronously at emit time, so their
    view is totally ordered by seq. Handlers registered via on() are fed
    through a bounded queue processed by a background task; if that
    queue is full the event is dropped for handlers only (logged).
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._subscribers: list[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False
        self._seq = itertools.count(1)

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        """Register a handler for an event type. Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def subscribe(self) -> Subscription:
        """Open an ordered subscription starting at the next emitted event."""
        sub = Subscription(self)
        self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    async def emit(self, event: Event) -> None:
        """Emit an event. Never blocks the caller."""
        event.seq = next(self._seq)
        for sub in list(self._subscribers):
            sub._push(event)

        if not self._handlers.get(event.type):
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event for handlers: %s", event.type)

    async def start(self) -> None:
        """Start the background handler loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus, drain pending handler events, close subscriptions."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        for sub in list(self._subscribers):
            sub.close()
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        """Main processing loop — runs as background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: Event) -> None:
        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting for handlers."""
        return self._queue.qsize()
