"""
Process-wide cache and call budget for apartment searches.

SearchServices owns every piece of cross-request mutable state:
  - route_cache:   geocodes, routes and per-route search results (10 min)
  - nearby_cache:  per (rounded point, provider, query) results (10 min)
  - details_cache: lazily fetched place details (30 min)
  - budget:        rolling provider call budget

Construct one per process (get_services()) or inject a fresh instance in
tests.  reset() clears everything.  Cache entries are re-derivable, so
concurrent sets are last-write-wins; the budget counter is lock-guarded.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from search_config import CacheConfig, QuotaConfig, SEARCH_CONFIG, load_search_config
from search_trace import get_trace

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


def make_cache_key(*parts: Any) -> str:
    return "|".join(str(p) for p in parts)


@dataclass
class CacheEntry(Generic[T]):
    key: Hashable
    value: T
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class TTLCache(Generic[T]):
    """Thread-safe LRU cache with per-entry TTL."""

    def __init__(
        self,
        name: str,
        max_entries: int = 500,
        ttl_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_entries = max_entries
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, CacheEntry[T]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(now):
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                hit = False
                value = default
            else:
                self._entries.move_to_end(key)
                self.hits += 1
                hit = True
                value = entry.value
        trace = get_trace()
        if trace:
            trace.record_cache(self.name, hit)
        return value

    def set(self, key: Hashable, value: T, ttl_s: Optional[float] = None) -> None:
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self.ttl_s if ttl_s is None else ttl_s,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                logger.debug("Cache %s evicted %s (capacity %d)", self.name, evicted_key, self.max_entries)

    def __contains__(self, key: Hashable) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.expired(now)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / total, 3) if total else None,
            }


class CallBudget:
    """Rolling provider call budget (N calls per window).

    The window restarts the first time a call is attempted after it has
    elapsed.  try_acquire() is atomic across threads.
    """

    def __init__(
        self,
        calls_per_window: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.calls_per_window = calls_per_window
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._used = 0
        self._window_start = clock()
        self._exhausted_logged = False

    def _roll(self, now: float) -> None:
        if now - self._window_start >= self.window_s:
            self._used = 0
            self._window_start = now
            self._exhausted_logged = False

    def try_acquire(self) -> bool:
        now = self._clock()
        with self._lock:
            self._roll(now)
            if self._used >= self.calls_per_window:
                if not self._exhausted_logged:
                    logger.warning(
                        "Provider call budget exhausted (%d calls / %.0fs window)",
                        self.calls_per_window, self.window_s,
                    )
                    self._exhausted_logged = True
                return False
            self._used += 1
            return True

    @property
    def used(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self._used

    @property
    def remaining(self) -> int:
        return max(0, self.calls_per_window - self.used)

    def reset(self) -> None:
        with self._lock:
            self._used = 0
            self._window_start = self._clock()
            self._exhausted_logged = False


class SearchServices:
    """Owns the caches and budget shared by all searches in this process."""

    def __init__(
        self,
        cache_config: CacheConfig = SEARCH_CONFIG.cache,
        quota_config: QuotaConfig = SEARCH_CONFIG.quota,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.route_cache: TTLCache = TTLCache(
            "route", cache_config.route_max_entries, cache_config.route_ttl_s, clock,
        )
        self.nearby_cache: TTLCache = TTLCache(
            "nearby", cache_config.point_max_entries, cache_config.point_ttl_s, clock,
        )
        self.details_cache: TTLCache = TTLCache(
            "details", cache_config.details_max_entries, cache_config.details_ttl_s, clock,
        )
        # Raw Overpass bodies keyed by query text.
        self.overpass_cache: TTLCache = TTLCache(
            "overpass", cache_config.point_max_entries, cache_config.point_ttl_s, clock,
        )
        self.budget = CallBudget(quota_config.calls_per_window, quota_config.window_s, clock)

    def reset(self) -> None:
        self.route_cache.clear()
        self.nearby_cache.clear()
        self.details_cache.clear()
        self.overpass_cache.clear()
        self.budget.reset()

    def stats(self) -> Dict[str, Any]:
        return {
            "route_cache": self.route_cache.stats(),
            "nearby_cache": self.nearby_cache.stats(),
            "details_cache": self.details_cache.stats(),
            "overpass_cache": self.overpass_cache.stats(),
            "budget": {
                "used": self.budget.used,
                "remaining": self.budget.remaining,
                "calls_per_window": self.budget.calls_per_window,
            },
        }


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_services: Optional[SearchServices] = None
_services_lock = threading.Lock()


def get_services() -> SearchServices:
    """Return the process-wide SearchServices, creating it on first use."""
    global _services
    with _services_lock:
        if _services is None:
            config = load_search_config()
            _services = SearchServices(config.cache, config.quota)
        return _services


def reset_services() -> None:
    """Clear the process-wide caches and budget (tests, post-fork)."""
    global _services
    with _services_lock:
        if _services is not None:
            _services.reset()
