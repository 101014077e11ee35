"""
TROUBLESHOOT VIEW CACHE - Read-Through Cache of Derived Graph Views

Holds per-category derived views (flattened trees, editor graphs, adjacency
maps) in front of GraphStore reads.

Properties:
- Keyed by (ViewKind, category)
- TTL and maximum size configured independently per view kind
- Least-recently-used eviction once a kind reaches its bound
- Single-flight loading: concurrent misses on one key run the loader once
- InvalidateCategory drops every kind for that category, including a load
  that is still in flight (its result is returned to its callers but never
  stored)

The cache owns no source-of-truth data; clearing it at any time is safe.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from core.ontology import ViewKind
from core.schemas import CacheStats
from infrastructure.config import CacheConfig
from infrastructure.event_bus import GraphEvent


logger = logging.getLogger("troubleshoot.view_cache")


class CacheUnavailableError(Exception):
    """Raised when the cache is closed; callers fall back to the store."""
    pass


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at


class _Flight:
    """One in-progress load that other callers can wait on."""
    __slots__ = ("done", "ok", "value")

    def __init__(self):
        self.done = threading.Event()
        self.ok = False
        self.value: Any = None


class _KindCounters:
    __slots__ = ("hits", "misses", "evictions")

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.evictions = 0


class ViewCache:
    """
    Thread-safe TTL + LRU cache with at-most-one concurrent load per key.

    Usage:
        cache = ViewCache(config.cache)
        tree = cache.get(ViewKind.FLATTENED_TREE, "brush",
                         lambda: build_flattened_tree(store, "brush"))
        cache.invalidate_category("brush")

    The clock is injectable (monotonic seconds) so expiry can be tested
    without sleeping.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[ViewKind, "OrderedDict[str, _Entry]"] = {
            kind: OrderedDict() for kind in ViewKind
        }
        self._flights: Dict[Tuple[ViewKind, str], _Flight] = {}
        self._counters: Dict[ViewKind, _KindCounters] = {kind: _KindCounters() for kind in ViewKind}
        self._closed = False

    # =========================================================================
    # READ-THROUGH
    # =========================================================================

    def get(self, kind: ViewKind, category: str, loader: Callable[[], Any]) -> Any:
        """
        Return the cached view, loading it on a miss.

        Raises:
            CacheUnavailableError: If the cache has been closed
            Exception: Whatever the loader raises (nothing is cached)
        """
        kind = ViewKind(kind)
        key = (kind, category)

        while True:
            with self._lock:
                if self._closed:
                    raise CacheUnavailableError("view cache is closed")

                bucket = self._entries[kind]
                entry = bucket.get(category)
                if entry is not None:
                    if entry.expires_at > self._clock():
                        bucket.move_to_end(category)
                        self._counters[kind].hits += 1
                        logger.debug(f"Cache hit {kind.value}:{category}")
                        return entry.value
                    del bucket[category]

                flight = self._flights.get(key)
                leader = flight is None
                if leader:
                    flight = _Flight()
                    self._flights[key] = flight
                    self._counters[kind].misses += 1
                    logger.debug(f"Cache miss {kind.value}:{category}")

            if leader:
                return self._load(kind, category, flight, loader)

            flight.done.wait()
            if flight.ok:
                with self._lock:
                    self._counters[kind].hits += 1
                return flight.value
            # Leader failed; retry, possibly as the new leader.

    def _load(self, kind: ViewKind, category: str, flight: _Flight, loader: Callable[[], Any]) -> Any:
        key = (kind, category)
        try:
            value = loader()
        except BaseException:
            with self._lock:
                if self._flights.get(key) is flight:
                    del self._flights[key]
            flight.done.set()
            raise

        with self._lock:
            if self._flights.get(key) is flight:
                del self._flights[key]
                self._store(kind, category, value)
            flight.value = value
            flight.ok = True
        flight.done.set()
        return value

    def _store(self, kind: ViewKind, category: str, value: Any) -> None:
        """Insert under the lock and evict least-recently-used entries."""
        settings = self.config.for_kind(kind)
        if settings.max_entries <= 0:
            return
        bucket = self._entries[kind]
        bucket[category] = _Entry(value, self._clock() + settings.ttl_seconds)
        bucket.move_to_end(category)
        while len(bucket) > settings.max_entries:
            evicted, _ = bucket.popitem(last=False)
            self._counters[kind].evictions += 1
            logger.debug(f"Evicted {kind.value}:{evicted}")

    def peek(self, kind: ViewKind, category: str) -> Optional[Any]:
        """Cached value without loading or touching LRU order (None if absent/expired)."""
        with self._lock:
            entry = self._entries[ViewKind(kind)].get(category)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def invalidate_category(self, category: str) -> int:
        """
        Drop every view kind cached for category.

        Returns:
            Number of entries removed
        """
        removed = 0
        with self._lock:
            for kind, bucket in self._entries.items():
                if bucket.pop(category, None) is not None:
                    removed += 1
                self._flights.pop((kind, category), None)
        if removed:
            logger.debug(f"Invalidated {removed} view(s) for '{category}'")
        return removed

    def invalidate_categories(self, categories: Iterable[str]) -> int:
        return sum(self.invalidate_category(category) for category in categories)

    def on_graph_event(self, event: GraphEvent) -> None:
        """EventBus handler: invalidate every category a mutation touched."""
        self.invalidate_categories(event.categories)

    def clear(self) -> None:
        with self._lock:
            for bucket in self._entries.values():
                bucket.clear()
            self._flights.clear()
        logger.info("View cache cleared")

    def sweep_expired(self) -> int:
        """Remove expired entries eagerly. Returns the number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for bucket in self._entries.values():
                stale = [category for category, entry in bucket.items() if entry.expires_at <= now]
                for category in stale:
                    del bucket[category]
                removed += len(stale)
        return removed

    def close(self) -> None:
        """Drop everything and refuse further reads."""
        self.clear()
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    def stats(self) -> List[CacheStats]:
        """Per-kind counters; read-only, never load-bearing."""
        with self._lock:
            result = []
            for kind in ViewKind:
                counters = self._counters[kind]
                settings = self.config.for_kind(kind)
                lookups = counters.hits + counters.misses
                result.append(CacheStats(
                    view_kind=kind.value,
                    entries=len(self._entries[kind]),
                    hits=counters.hits,
                    misses=counters.misses,
                    hit_rate=counters.hits / lookups if lookups else 0.0,
                    evictions=counters.evictions,
                    max_size=settings.max_entries,
                    ttl_seconds=settings.ttl_seconds,
                ))
            return result

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._entries.values())
