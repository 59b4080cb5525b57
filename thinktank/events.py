"""Deliberation events and the bounded broadcast channel that carries them.

Publishing never blocks. Each subscriber owns a bounded deque; when a slow
subscriber falls behind, its oldest unread event is dropped.
"""

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from thinktank.models import RoundStatus, RoundType, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256


@dataclass
class ForgeEvent:
    """Base class for everything the orchestrator publishes."""

    kind = "event"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return {"type": self.kind, **data}


@dataclass
class RoundStarted(ForgeEvent):
    round: int
    round_type: RoundType
    kind = "round_started"


@dataclass
class ParticipantThinking(ForgeEvent):
    participant_id: str
    participant_name: str
    kind = "participant_thinking"


@dataclass
class ContentDelta(ForgeEvent):
    participant_id: str
    delta: str
    kind = "content_delta"


@dataclass
class ParticipantComplete(ForgeEvent):
    participant_id: str
    content: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    kind = "participant_complete"


@dataclass
class ParticipantError(ForgeEvent):
    participant_id: str
    error: str
    retrying_with: str | None = None
    kind = "participant_error"


@dataclass
class RoundComplete(ForgeEvent):
    round: int
    status: RoundStatus = RoundStatus.COMPLETE
    kind = "round_complete"


@dataclass
class Error(ForgeEvent):
    message: str
    kind = "error"


class SubscriptionClosed(Exception):
    """Raised by ``recv`` once a subscription is closed and drained."""


class EventSubscription:
    """One observer's view of the broadcast channel."""

    def __init__(self, broadcaster: "EventBroadcaster", capacity: int) -> None:
        self._broadcaster = broadcaster
        self._queue: deque[ForgeEvent] = deque(maxlen=capacity)
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def _push(self, event: ForgeEvent) -> None:
        if len(self._queue) == self._queue.maxlen:
            self.dropped += 1
        self._queue.append(event)
        self._ready.set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def try_recv(self) -> ForgeEvent | None:
        """Return the oldest unread event, or None when nothing is queued."""
        if not self._queue:
            return None
        event = self._queue.popleft()
        if not self._queue:
            self._ready.clear()
        return event

    def drain(self) -> list[ForgeEvent]:
        events = list(self._queue)
        self._queue.clear()
        self._ready.clear()
        return events

    async def recv(self, timeout: float | None = None) -> ForgeEvent:
        """Wait for the next event.

        Raises:
            TimeoutError: nothing arrived within ``timeout`` seconds.
            SubscriptionClosed: the subscription is closed and empty.
        """
        while not self._queue:
            if self._closed:
                raise SubscriptionClosed()
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        return self.try_recv()  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        self._broadcaster._unsubscribe(self)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> ForgeEvent:
        try:
            return await self.recv()
        except SubscriptionClosed:
            raise StopAsyncIteration from None


class EventBroadcaster:
    """Multi-subscriber, fire-and-forget event channel."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._subscribers: list[EventSubscription] = []

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self, self.capacity)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ForgeEvent) -> int:
        """Deliver ``event`` to every subscriber. Returns the number of receivers."""
        for subscription in self._subscribers:
            subscription._push(event)
        logger.debug("Event %s -> %d subscriber(s)", event.kind, len(self._subscribers))
        return len(self._subscribers)

    def close(self) -> None:
        """Close every subscription; queued events stay readable."""
        for subscription in list(self._subscribers):
            subscription.close()
