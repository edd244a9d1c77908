from __future__ import annotations

"""
Fan out live session events (fragments, flags, state changes) to subscribers.

Design intent:
- Publishing never blocks on a slow subscriber.
- Each subscriber sees events in publish order, at most once.
- A subscriber that falls behind loses its oldest events and is marked lagging.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiveEvent:
    seq: int
    kind: str
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "type": self.kind, "session_id": self.session_id, "payload": self.payload}


class Subscription:
    def __init__(self, channel: "LiveBroadcastChannel", subscriber_id: int, buffer_size: int) -> None:
        self._channel = channel
        self.subscriber_id = subscriber_id
        self._events: deque[LiveEvent] = deque(maxlen=buffer_size)
        self._cond = threading.Condition()
        self._closed = False
        self.lagging = False
        self.dropped = 0

    def _offer(self, event: LiveEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._events) == self._events.maxlen:
                self.dropped += 1
                if not self.lagging:
                    self.lagging = True
                    logger.warning(
                        "subscriber_lagging session_id=%s subscriber_id=%s",
                        self._channel.session_id,
                        self.subscriber_id,
                    )
            self._events.append(event)
            self._cond.notify_all()

    def _end(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed and not self._events

    def get(self, timeout: Optional[float] = None) -> Optional[LiveEvent]:
        """Next event, or None on timeout or once the channel is closed and drained."""
        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait(timeout=timeout)
            if self._events:
                return self._events.popleft()
            return None

    def __iter__(self) -> Iterator[LiveEvent]:
        while True:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event
            elif self.closed:
                return

    def close(self) -> None:
        self._channel._detach(self)
        self._end()


class LiveBroadcastChannel:
    def __init__(self, session_id: str, buffer_size: int = 256) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.session_id = session_id
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscribers: dict[int, Subscription] = {}
        self._next_subscriber_id = 1
        self._seq = 0
        self._closed = False

    def subscribe(self) -> Subscription:
        with self._lock:
            subscription = Subscription(self, self._next_subscriber_id, self._buffer_size)
            self._next_subscriber_id += 1
            if self._closed:
                subscription._end()
                return subscription
            self._subscribers[subscription.subscriber_id] = subscription
        logger.info("subscriber_attached session_id=%s subscriber_id=%s", self.session_id, subscription.subscriber_id)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.pop(subscription.subscriber_id, None)

    def publish(self, kind: str, payload: Optional[dict[str, Any]] = None) -> int:
        with self._lock:
            if self._closed:
                return self._seq
            self._seq += 1
            event = LiveEvent(seq=self._seq, kind=kind, session_id=self.session_id, payload=dict(payload or {}))
            # Offer under the channel lock so every subscriber observes one global order.
            for subscription in self._subscribers.values():
                subscription._offer(event)
            return event.seq

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._end()

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq
