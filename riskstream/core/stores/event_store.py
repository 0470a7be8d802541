"""
Time-bounded event buffer.

Holds ingested activity events for the monitoring window, indexed per user
and ordered by event time. Under overload the oldest events are dropped
rather than rejecting new ones.
"""

import itertools
import threading
import uuid
from typing import Callable, Dict, List, Optional

import structlog

from riskstream.core.models.events import BaseEvent
from riskstream.core.utils.metrics import EVENTS_DROPPED, EVENT_STORE_SIZE
from riskstream.core.utils.windowing import SlidingWindow, current_timestamp_ms

logger = structlog.get_logger(__name__)


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:12]}"


class EventStore:
    """Append-only event buffer with per-user event-time windows."""

    def __init__(self, max_events: int = 10000, clock: Optional[Callable[[], int]] = None):
        self.max_events = max_events
        self.clock = clock or current_timestamp_ms
        self.dropped_count = 0
        self.appended_count = 0

        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._all = SlidingWindow()
        self._by_user: Dict[str, SlidingWindow] = {}

    def append(self, event: BaseEvent) -> BaseEvent:
        """
        Store an event, filling in a generated id and arrival timestamp if missing.

        Returns:
            The stored event
        """
        with self._lock:
            sequence = next(self._sequence)
            event = event.with_defaults(generate_event_id(), self.clock())

            self._all.add_event(event.timestamp, sequence, event)
            self._by_user.setdefault(event.user_id, SlidingWindow()).add_event(
                event.timestamp, sequence, event
            )
            self.appended_count += 1

            while self._all.size() > self.max_events:
                self._drop_oldest()

            EVENT_STORE_SIZE.set(self._all.size())
        return event

    def _drop_oldest(self):
        timestamp, sequence, dropped = self._all.pop_oldest()
        self._remove_from_user(dropped.user_id, timestamp, sequence)
        self.dropped_count += 1
        EVENTS_DROPPED.inc()
        if self.dropped_count % 1000 == 1:
            logger.warning("Event buffer full, dropping oldest events",
                           max_events=self.max_events, dropped_total=self.dropped_count)

    def _remove_from_user(self, user_id: str, timestamp: int, sequence: int):
        window = self._by_user.get(user_id)
        if window is None:
            return
        window.remove_event(timestamp, sequence)
        if window.size() == 0:
            del self._by_user[user_id]

    def window(self, user_id: str, since_timestamp: int, until_timestamp: Optional[int] = None) -> List[BaseEvent]:
        """Events for a user with since <= timestamp (<= until), chronological."""
        with self._lock:
            window = self._by_user.get(user_id)
            if window is None:
                return []
            if until_timestamp is None:
                until_timestamp = window.latest_timestamp()
            return window.get_events_in_range(since_timestamp, until_timestamp)

    def user_events(self, user_id: str) -> List[BaseEvent]:
        """All buffered events for a user, chronological."""
        with self._lock:
            window = self._by_user.get(user_id)
            return window.get_events() if window else []

    def all(self) -> List[BaseEvent]:
        """All buffered events across users, chronological."""
        with self._lock:
            return self._all.get_events()

    def latest_timestamp(self) -> Optional[int]:
        with self._lock:
            return self._all.latest_timestamp()

    def evict_before(self, cutoff: int) -> int:
        """Delete events older than the cutoff. Returns the number removed."""
        with self._lock:
            removed = self._all.evict_before(cutoff)
            for user_id in list(self._by_user):
                window = self._by_user[user_id]
                window.evict_before(cutoff)
                if window.size() == 0:
                    del self._by_user[user_id]
            EVENT_STORE_SIZE.set(self._all.size())
            return len(removed)

    def size(self) -> int:
        with self._lock:
            return self._all.size()

    def __len__(self) -> int:
        return self.size()
