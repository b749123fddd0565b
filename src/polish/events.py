from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from polish.models import _utcnow_iso

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    PHASE = "phase"
    STATUS = "status"
    INIT = "init"
    STRATEGY = "strategy"
    AGENT = "agent"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    SCORE = "score"
    IMPLEMENT_DONE = "implement_done"
    REVIEW_START = "review_start"
    REVIEW_RESULT = "review_result"
    REVIEW_REDIRECT = "review_redirect"
    REVIEW_COMPLETE = "review_complete"
    WORKTREE_CREATED = "worktree_created"
    WORKTREE_CLEANUP = "worktree_cleanup"
    RETRY = "retry"
    PLAN = "plan"
    PLAN_STREAM = "plan_stream"
    PLAN_MESSAGE = "plan_message"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    RESULT = "result"
    SESSION_SUMMARY = "session_summary"
    ERROR = "error"


@dataclass(slots=True)
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "data": dict(self.data), "timestamp": self.timestamp}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


EventSink = Callable[[Event], None]


class Subscription:
    """Async iterator over the events of one subscriber; ends when the channel closes."""

    def __init__(self, channel: EventChannel, queue: asyncio.Queue[Event | None]) -> None:
        self._channel = channel
        self.queue = queue
        self.dropped = 0

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Per-session event fan-out.

    ``emit`` never blocks: every subscriber owns a bounded queue and a full
    queue loses the event for that subscriber only. ``history`` keeps the most
    recent ``max_history`` events; a store sink holds the full record.
    """

    def __init__(
        self,
        session_id: str | None = None,
        *,
        max_queue_size: int = 1000,
        max_history: int | None = 2000,
    ) -> None:
        self.session_id = session_id
        self.max_queue_size = max_queue_size
        self.history: deque[Event] = deque(maxlen=max_history)
        self._subscriptions: list[Subscription] = []
        self._sinks: list[EventSink] = []
        self.closed = False

    def emit(self, type: EventType | str, data: dict[str, Any] | None = None) -> Event:
        event = Event(type=EventType(type), data=dict(data or {}))
        self.history.append(event)
        for subscription in list(self._subscriptions):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
        for sink in list(self._sinks):
            try:
                sink(event)
            except Exception:
                logger.warning("Event sink failed for %s event", event.type, exc_info=True)
        return event

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, asyncio.Queue(maxsize=self.max_queue_size))
        if self.closed:
            subscription.queue.put_nowait(None)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_sink(self, sink: EventSink) -> Callable[[], None]:
        self._sinks.append(sink)

        def _remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return _remove

    def events_of(self, type: EventType | str) -> list[Event]:
        wanted = EventType(type)
        return [event for event in self.history if event.type is wanted]

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for subscription in self._subscriptions:
            try:
                subscription.queue.put_nowait(None)
            except asyncio.QueueFull:
                # Make room for the end-of-stream marker.
                subscription.queue.get_nowait()
                subscription.dropped += 1
                subscription.queue.put_nowait(None)
        self._subscriptions.clear()
