"""
Request-scoped tracing for apartment searches.

One TraceContext follows a search through geocoding, routing, the
concurrent place sweep and post-processing.  It collects:

  stages    wall time per pipeline stage, with the provider calls and
            cache lookups made while it ran
  calls     one record per outbound HTTP request
  cache     hit/miss events from every TTLCache lookup

Usage:
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    try:
        ...
    finally:
        ctx.log_summary()
        clear_trace()

The context lives in a thread local.  Search workers do not inherit it;
place_search hands the parent context to each worker, so recording methods
take a lock.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Per-call rows kept in debug output; a long transit route can issue hundreds.
MAX_CALL_ROWS = 500


@dataclass
class ProviderCall:
    service: str          # "google_maps" | "nominatim" | "openrouteservice" | "overpass"
    endpoint: str         # "geocode", "directions", "places_nearby", "residential_around", ...
    elapsed_ms: int
    status_code: int      # 0 when no HTTP response arrived
    provider_status: str = ""
    stage: str = ""


@dataclass
class CacheLookup:
    cache: str            # "route" | "nearby" | "details" | "overpass"
    hit: bool
    stage: str = ""


@dataclass
class StageTiming:
    name: str
    elapsed_ms: int
    provider_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    skipped: bool = False
    error: str = ""       # "ExceptionClass: message"


@dataclass
class TraceContext:
    """Everything observed while serving one search."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageTiming] = field(default_factory=list)
    api_calls: List[ProviderCall] = field(default_factory=list)
    cache_events: List[CacheLookup] = field(default_factory=list)
    config_version: str = ""
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # -- stages ---------------------------------------------------------

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            lookups = [e for e in self.cache_events if e.stage == stage_name]
            timing = StageTiming(
                name=stage_name,
                elapsed_ms=int(round((end_ts - start_ts) * 1000)),
                provider_calls=calls,
                cache_hits=sum(1 for e in lookups if e.hit),
                cache_misses=sum(1 for e in lookups if not e.hit),
                skipped=skipped,
                error=f"{error_class}: {error_message}" if error_class else "",
            )
            self.stages.append(timing)

        if timing.error:
            logger.info("  [stage] trace=%s %s ERR %dms calls=%d err=%s",
                        self.trace_id, stage_name, timing.elapsed_ms, calls, timing.error)
        else:
            logger.info("  [stage] trace=%s %s %s %dms calls=%d cache=%d/%d",
                        self.trace_id, stage_name, "SKIP" if skipped else "OK",
                        timing.elapsed_ms, calls, timing.cache_hits,
                        timing.cache_hits + timing.cache_misses)

    # -- provider calls and cache lookups -------------------------------

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        call = ProviderCall(service, endpoint, elapsed_ms, status_code, provider_status,
                            stage=self._current_stage)
        with self._lock:
            self.api_calls.append(call)
        logger.debug("  [api] trace=%s stage=%s %s/%s %dms http=%d %s",
                     self.trace_id, call.stage or "-", service, endpoint,
                     elapsed_ms, status_code, provider_status)

    def record_cache(self, cache: str, hit: bool):
        with self._lock:
            self.cache_events.append(CacheLookup(cache, hit, stage=self._current_stage))

    def cache_counts(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        with self._lock:
            events = list(self.cache_events)
        for ev in events:
            per_cache = counts.setdefault(ev.cache, {"hits": 0, "misses": 0})
            per_cache["hits" if ev.hit else "misses"] += 1
        return counts

    def calls_by_service(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(c.service for c in self.api_calls))

    # -- reporting ------------------------------------------------------

    def outcome(self) -> str:
        """"success", "partial" (something skipped or failed), "error" or "empty"."""
        failed = [s for s in self.stages if s.error and not s.skipped]
        ok = [s for s in self.stages if not s.error and not s.skipped]
        if not self.stages or (not ok and not failed):
            return "empty"
        if failed and not ok:
            return "error"
        if failed or len(ok) < len(self.stages):
            return "partial"
        return "success"

    def summary_dict(self) -> Dict[str, Any]:
        summary = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(self.api_calls),
            "api_calls_by_service": self.calls_by_service(),
            "stages_completed": sum(1 for s in self.stages if not s.error and not s.skipped),
            "stages_skipped": sum(1 for s in self.stages if s.skipped),
            "stages_errored": sum(1 for s in self.stages if s.error and not s.skipped),
            "final_outcome": self.outcome(),
            "cache": self.cache_counts(),
        }
        if self.config_version:
            summary["config_version"] = self.config_version
        return summary

    def log_summary(self):
        s = self.summary_dict()
        hits = sum(c["hits"] for c in s["cache"].values())
        lookups = hits + sum(c["misses"] for c in s["cache"].values())
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d (%s) cache=%d/%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            ",".join(f"{k}={v}" for k, v in sorted(s["api_calls_by_service"].items())) or "none",
            hits,
            lookups,
            s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus per-stage and per-call rows (the ?debug payload)."""
        full = self.summary_dict()
        full["stages"] = [
            {
                "stage": s.name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.provider_calls,
                "cache_hits": s.cache_hits,
                "cache_misses": s.cache_misses,
                "skipped": s.skipped,
                "error": s.error or None,
            }
            for s in self.stages
        ]
        with self._lock:
            rows = self.api_calls[:MAX_CALL_ROWS]
            full["calls"] = [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "stage": c.stage,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "provider_status": c.provider_status,
                }
                for c in rows
            ]
        return full


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Trace for the current thread, or None outside a traced search."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
