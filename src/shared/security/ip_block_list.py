"""
Time-bounded IP denylist.

Consulted by the rate limiter before any counting happens, so a blocked client
never opens a fresh window. Re-blocking an IP replaces its expiry; durations
do not stack.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class BlockEntry:
    """A blocked client and the epoch-millisecond time it is released."""
    ip: str
    unblock_time: int
    reason: str = ""

    def remaining_ms(self, now: int) -> int:
        return max(0, self.unblock_time - now)


class IPBlockList:
    """Lock-guarded map of ip -> BlockEntry."""

    def __init__(self):
        self._blocks: Dict[str, BlockEntry] = {}
        self._lock = threading.Lock()

    def block(self, ip: str, duration_ms: int, now: int, reason: str = "") -> BlockEntry:
        entry = BlockEntry(ip=ip, unblock_time=now + duration_ms, reason=reason)
        with self._lock:
            self._blocks[ip] = entry
        return entry

    def is_blocked(self, ip: str, now: int) -> bool:
        return self.get_block(ip, now) is not None

    def get_block(self, ip: str, now: int) -> Optional[BlockEntry]:
        """Active block for ``ip``; an expired entry is dropped on read."""
        with self._lock:
            entry = self._blocks.get(ip)
            if entry is None:
                return None
            if entry.unblock_time > now:
                return entry
            del self._blocks[ip]
            return None

    def get_unblock_time(self, ip: str) -> Optional[int]:
        with self._lock:
            entry = self._blocks.get(ip)
        return entry.unblock_time if entry else None

    def unblock(self, ip: str) -> bool:
        with self._lock:
            return self._blocks.pop(ip, None) is not None

    def sweep(self, now: int) -> int:
        """Remove expired blocks. Returns the number removed."""
        with self._lock:
            expired = [ip for ip, entry in self._blocks.items() if entry.unblock_time <= now]
            for ip in expired:
                del self._blocks[ip]
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._blocks)
            self._blocks.clear()
        return removed

    def snapshot(self) -> Dict[str, BlockEntry]:
        with self._lock:
            return dict(self._blocks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)
