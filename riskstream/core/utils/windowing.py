"""
Windowing utilities for stream processing.

Implements an event-time ordered window for trailing-interval queries.
"""

import bisect
import time
from typing import Any, List, Optional, Tuple


class SlidingWindow:
    """Event-time ordered window of (timestamp, sequence, item) entries.

    Entries stay sorted by timestamp, ties broken by arrival sequence, so
    out-of-order arrivals land where they belong.
    """

    def __init__(self):
        self.entries: List[Tuple[int, int, Any]] = []

    def add_event(self, timestamp: int, sequence: int, item: Any):
        """Insert an item at its event-time position."""
        bisect.insort(self.entries, (timestamp, sequence, item))

    def remove_event(self, timestamp: int, sequence: int) -> bool:
        """Remove a specific entry. Returns True if it was present."""
        index = bisect.bisect_left(self.entries, (timestamp, sequence))
        if index < len(self.entries) and self.entries[index][:2] == (timestamp, sequence):
            del self.entries[index]
            return True
        return False

    def pop_oldest(self) -> Optional[Tuple[int, int, Any]]:
        """Remove and return the entry with the smallest timestamp."""
        if not self.entries:
            return None
        return self.entries.pop(0)

    def evict_before(self, cutoff: int) -> List[Tuple[int, int, Any]]:
        """Remove entries with timestamp strictly below the cutoff."""
        index = bisect.bisect_left(self.entries, (cutoff, -1))
        removed = self.entries[:index]
        del self.entries[:index]
        return removed

    def get_events(self) -> List[Any]:
        """Get all items in chronological order."""
        return [item for _, _, item in self.entries]

    def get_events_in_range(self, start_timestamp: int, end_timestamp: int) -> List[Any]:
        """Get items with start_timestamp <= timestamp <= end_timestamp."""
        lo = bisect.bisect_left(self.entries, (start_timestamp, -1))
        hi = bisect.bisect_right(self.entries, (end_timestamp, float('inf')))
        return [item for _, _, item in self.entries[lo:hi]]

    def latest_timestamp(self) -> Optional[int]:
        return self.entries[-1][0] if self.entries else None

    def size(self) -> int:
        """Get number of entries in window."""
        return len(self.entries)

    def clear(self):
        """Clear all entries from window."""
        self.entries.clear()


def current_timestamp_ms() -> int:
    """Get current wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)
