"""
Passive health tracking for the external providers a search depends on.

Each HTTP client reports the outcome of every real call through
record_call().  A provider's status comes from its most recent calls:

  success rate >= 95%  -> "healthy"
  success rate >= 70%  -> "degraded"
  otherwise            -> "down"
  no calls yet         -> "unknown"

Nothing is probed actively.  Google is metered and the OSM services ask
for light use, so only traffic a search already sends is measured.
Rate-limit answers are counted separately because they usually mean the
call budget or Overpass spacing needs tuning rather than an outage.

All callers in a process share one HealthMonitor (module singleton).
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

WINDOW_SIZE = 50

HEALTHY_RATE = 0.95
DEGRADED_RATE = 0.70

KNOWN_SERVICES = ("google_maps", "nominatim", "openrouteservice", "overpass")

# Error labels clients pass for throttled calls.
_RATE_LIMIT_ERRORS = ("rate_limit", "OVER_QUERY_LIMIT")


@dataclass
class ProviderStatus:
    service: str
    status: str            # "healthy" | "degraded" | "down" | "unknown"
    latency_ms: int        # mean over the window
    last_call: Optional[str] = None   # ISO-8601, UTC
    error: Optional[str] = None       # most recent failure label
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status, "latency_ms": self.latency_ms}
        if self.last_call:
            d["last_call"] = self.last_call
        if self.error:
            d["error"] = self.error
        d.update(self.details)
        return d


@dataclass
class _Outcome:
    at: float
    ok: bool
    latency_ms: int
    error: Optional[str]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _classify(rate: float) -> str:
    if rate >= HEALTHY_RATE:
        return "healthy"
    if rate >= DEGRADED_RATE:
        return "degraded"
    return "down"


class HealthMonitor:
    """Rolling per-provider call outcomes.  Thread-safe."""

    def __init__(self, window_size: int = WINDOW_SIZE) -> None:
        self.window_size = window_size
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[_Outcome]] = {
            name: deque(maxlen=window_size) for name in KNOWN_SERVICES
        }
        self._last_status: Dict[str, str] = {}

    def record_call(self, service: str, success: bool, latency_ms: int,
                    error: Optional[str] = None) -> None:
        outcome = _Outcome(time.time(), success, latency_ms, error)
        with self._lock:
            window = self._windows.setdefault(service, deque(maxlen=self.window_size))
            window.append(outcome)

    def compute_status(self, service: str) -> ProviderStatus:
        with self._lock:
            window = list(self._windows.get(service, ()))
        if not window:
            return ProviderStatus(service, "unknown", 0, details={"sample_size": 0})

        ok = sum(1 for o in window if o.ok)
        rate = ok / len(window)
        status = _classify(rate)
        failures = [o for o in window if not o.ok]
        streak = 0
        for o in reversed(window):
            if o.ok:
                break
            streak += 1

        self._note_transition(service, status, failures[-1].error if failures else None)
        return ProviderStatus(
            service=service,
            status=status,
            latency_ms=int(sum(o.latency_ms for o in window) / len(window)),
            last_call=_iso(window[-1].at),
            error=next((o.error for o in reversed(failures) if o.error), None),
            details={
                "success_rate": round(rate, 3),
                "sample_size": len(window),
                "consecutive_failures": streak,
                "rate_limited": sum(1 for o in failures if o.error in _RATE_LIMIT_ERRORS),
            },
        )

    def _note_transition(self, service: str, status: str, error: Optional[str]) -> None:
        with self._lock:
            previous = self._last_status.get(service)
            self._last_status[service] = status
        if previous and previous != status:
            logger.warning("[health] %s %s -> %s (last error: %s)", service, previous, status, error)

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            services = sorted(self._windows)
        return {name: self.compute_status(name).to_dict() for name in services}

    def reset(self) -> None:
        with self._lock:
            for window in self._windows.values():
                window.clear()
            self._last_status.clear()


_monitor = HealthMonitor()


def record_call(service: str, success: bool, latency_ms: int, error: Optional[str] = None) -> None:
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    """Current status of every provider seen (or expected) in this process."""
    return _monitor.get_all_status()


def reset_monitor() -> None:
    _monitor.reset()
