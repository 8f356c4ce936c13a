"""TTL-keyed in-memory caches shared across discovery cycles."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

CLUSTER_MEMBERSHIP_TTL = 300
NAMESPACE_TTL = 300
DIRECT_CONNECTION_TTL = 300
LAST_KNOWN_NODE_TTL = 60


class TTLCache:
    """Thread-safe map whose entries expire ``ttl_seconds`` after being written.

    Every cache owns its own lock; unrelated caches never contend.

    Example:
        cache = TTLCache(ttl_seconds=300)
        cache.set('primary', membership)
        cache.get('primary')  # membership, until 300 seconds have passed
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        """Initialize cache.

        Args:
            ttl_seconds: Entry lifetime in seconds
            clock: Time source returning seconds (injectable for tests)
        """
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _is_fresh(self, written_at: float, now: float) -> bool:
        return now - written_at <= self.ttl

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            value, written_at = entry
            if not self._is_fresh(written_at, self._clock()):
                del self._entries[key]
                self._misses += 1
                return None

            self._hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def items(self) -> List[Tuple[Hashable, Any]]:
        """Snapshot of all fresh entries."""
        with self._lock:
            now = self._clock()
            return [
                (key, value)
                for key, (value, written_at) in self._entries.items()
                if self._is_fresh(written_at, now)
            ]

    def cleanup_expired(self) -> int:
        """Drop all expired entries.

        Returns:
            Number of removed entries
        """
        with self._lock:
            now = self._clock()
            expired = [
                key for key, (_, written_at) in self._entries.items()
                if not self._is_fresh(written_at, now)
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'size': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total else 0.0,
                'ttl_seconds': self.ttl,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __repr__(self) -> str:
        stats = self.get_stats()
        return f"TTLCache(size={stats['size']}, ttl={stats['ttl_seconds']}s)"


@dataclass
class DiscoveryCaches:
    """The four process-wide caches, created once and injected into components."""
    clock: Callable[[], float] = time.monotonic
    cluster_membership: TTLCache = field(init=False)
    namespaces: TTLCache = field(init=False)
    direct_connections: TTLCache = field(init=False)
    last_known_nodes: TTLCache = field(init=False)

    def __post_init__(self):
        self.cluster_membership = TTLCache(CLUSTER_MEMBERSHIP_TTL, self.clock)
        self.namespaces = TTLCache(NAMESPACE_TTL, self.clock)
        self.direct_connections = TTLCache(DIRECT_CONNECTION_TTL, self.clock)
        self.last_known_nodes = TTLCache(LAST_KNOWN_NODE_TTL, self.clock)

    def clear(self) -> None:
        for cache in (self.cluster_membership, self.namespaces,
                      self.direct_connections, self.last_known_nodes):
            cache.clear()
