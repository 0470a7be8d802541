"""
Live risk score entries, one per user, overwritten on every evaluation.
"""

import threading
from typing import Dict, List, Optional

from riskstream.core.models.state import RiskScoreEntry


class RiskScoreStore:
    """Current risk per user, distinct from the risk history on the profile."""

    def __init__(self):
        self._entries: Dict[str, RiskScoreEntry] = {}
        self._lock = threading.RLock()

    def put(self, entry: RiskScoreEntry):
        with self._lock:
            self._entries[entry.user_id] = entry

    def get(self, user_id: str) -> Optional[RiskScoreEntry]:
        with self._lock:
            return self._entries.get(user_id)

    def entries(self) -> List[RiskScoreEntry]:
        with self._lock:
            return list(self._entries.values())

    def average_score(self) -> float:
        """Mean score over entries that had enough data to be scored."""
        with self._lock:
            scores = [e.score for e in self._entries.values() if not e.insufficient_data]
        return sum(scores) / len(scores) if scores else 0.0

    def above(self, threshold: float) -> List[RiskScoreEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.score >= threshold and not e.insufficient_data]

    def evict_before(self, cutoff: int) -> int:
        with self._lock:
            stale = [u for u, e in self._entries.items() if e.timestamp < cutoff]
            for user_id in stale:
                del self._entries[user_id]
        return len(stale)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)
