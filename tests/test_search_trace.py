"""Tests for search_trace.py."""

import threading
import time

from search_trace import TraceContext, clear_trace, get_trace, set_trace


class TestTraceContext:
    def test_stage_attribution(self):
        ctx = TraceContext(trace_id="abc")
        ctx.start_stage("route")
        ctx.record_api_call("google_maps", "directions", 120, 200, "OK")
        t0 = 1000.0
        ctx.record_stage("route", t0, t0 + 0.12)
        ctx.end_stage()
        ctx.record_api_call("nominatim", "search", 50, 200)

        assert ctx.api_calls[0].stage == "route"
        assert ctx.api_calls[1].stage == ""
        assert ctx.stages[0].provider_calls == 1
        assert ctx.stages[0].elapsed_ms == 120

    def test_summary_outcomes(self):
        ctx = TraceContext(trace_id="abc")
        assert ctx.summary_dict()["final_outcome"] == "empty"
        t0 = time.time()
        ctx.record_stage("geocode_origin", t0, t0)
        assert ctx.summary_dict()["final_outcome"] == "success"
        ctx.record_stage("route", t0, t0, error_class="RouteUnavailable", error_message="x")
        assert ctx.summary_dict()["final_outcome"] == "partial"

    def test_summary_includes_cache_counts(self):
        ctx = TraceContext(trace_id="abc", config_version="1.2.0")
        ctx.record_cache("route", True)
        ctx.record_cache("route", False)
        ctx.record_cache("nearby", False)
        summary = ctx.summary_dict()
        assert summary["cache"] == {"route": {"hits": 1, "misses": 1}, "nearby": {"hits": 0, "misses": 1}}
        assert summary["config_version"] == "1.2.0"

    def test_full_trace_has_stages(self):
        ctx = TraceContext(trace_id="abc")
        t0 = time.time()
        ctx.record_stage("search", t0, t0, skipped=True)
        full = ctx.full_trace_dict()
        assert full["stages"][0]["stage"] == "search"
        assert full["stages"][0]["skipped"] is True


class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_not_inherited_by_threads(self):
        set_trace(TraceContext(trace_id="parent"))
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        clear_trace()
        assert seen == [None]


class TestAggregates:
    def test_calls_by_service(self):
        ctx = TraceContext(trace_id="abc")
        ctx.record_api_call("google_maps", "places_nearby", 80, 200, "OK")
        ctx.record_api_call("google_maps", "places_nearby", 90, 200, "OK")
        ctx.record_api_call("overpass", "residential_around", 900, 200)
        assert ctx.summary_dict()["api_calls_by_service"] == {"google_maps": 2, "overpass": 1}

    def test_stage_cache_counts(self):
        ctx = TraceContext(trace_id="abc")
        ctx.start_stage("search")
        ctx.record_cache("nearby", True)
        ctx.record_cache("nearby", False)
        ctx.record_stage("search", 1000.0, 1000.5)
        ctx.end_stage()
        stage = ctx.full_trace_dict()["stages"][0]
        assert stage["cache_hits"] == 1
        assert stage["cache_misses"] == 1
        assert stage["elapsed_ms"] == 500

    def test_error_stage_formatted(self):
        ctx = TraceContext(trace_id="abc")
        ctx.record_stage("geocode_origin", 1000.0, 1000.0, error_class="LocationNotFound", error_message="nope")
        assert ctx.summary_dict()["final_outcome"] == "error"
        assert ctx.full_trace_dict()["stages"][0]["error"] == "LocationNotFound: nope"

    def test_worker_threads_record_safely(self):
        ctx = TraceContext(trace_id="abc")

        def worker():
            for _ in range(200):
                ctx.record_api_call("google_maps", "places_nearby", 1, 200)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ctx.api_calls) == 800
        assert len(ctx.full_trace_dict()["calls"]) == 500
