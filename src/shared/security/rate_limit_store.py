"""
Fixed-window counter storage for the rate limiter.

One entry per derived key (``ip:path`` by default). Entries are evicted by
``sweep`` once their window has expired.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class RateLimitEntry:
    """Counting window for a single key. Timestamps are epoch milliseconds."""
    count: int
    window_start: int
    reset_time: int

    def is_expired(self, now: int, window_ms: int) -> bool:
        """A window is over once ``now`` falls outside [window_start, reset_time)."""
        return self.window_start < now - window_ms or now >= self.reset_time

    def elapsed_seconds(self, now: int) -> float:
        return max(0, now - self.window_start) / 1000


class RateLimitStore:
    """Lock-guarded map of key -> RateLimitEntry."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry):
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self, now: int) -> int:
        """Remove entries whose window ended before ``now``. Returns the number removed."""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_time < now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        return removed

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
