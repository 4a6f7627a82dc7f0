"""
Concurrent place search around route sample points.

Sample points fan out over a bounded ThreadPoolExecutor (max_concurrency
workers).  Inside one point, provider queries run sequentially:

  keyword providers:  one query per configured keyword, then a single
                      type-scoped fallback when the point came back sparse
  type-scoped ones:   one building-tag query

Every network call first takes a slot from the shared call budget.  Rate
limits and timeouts are retried with capped exponential backoff plus
jitter; any other provider failure, or exhausted retries, skips that query
and keeps what was already collected.  Results are cached per (rounded
point, provider, query) and per route polyline.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from geo_math import round_coordinate
from place_providers import PlacePage, QUERY_KEYWORD, QUERY_TYPE, SearchQuery
from polyline_codec import decode
from route_sampler import sample_route
from search_cache import SearchServices, make_cache_key
from search_config import PlaceSearchConfig, SamplingConfig, SEARCH_CONFIG
from search_models import (
    ApartmentSearchError,
    Coordinate,
    ProviderTimeout,
    RateLimited,
    RawPlaceResult,
    Route,
)
from search_trace import get_trace, set_trace

logger = logging.getLogger(__name__)


class _BudgetExhausted(Exception):
    """Internal signal: stop issuing calls for the rest of this point."""

    def __init__(self, partial=()):
        super().__init__("call budget exhausted")
        self.partial = list(partial)


class PlaceSearchEngine:
    def __init__(
        self,
        providers: Sequence,
        services: SearchServices,
        config: PlaceSearchConfig = SEARCH_CONFIG.search,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.providers = list(providers)
        self.services = services
        self.config = config
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Single call with retry
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        cfg = self.config
        delay = min(cfg.backoff_base_s * (2 ** attempt), cfg.backoff_cap_s)
        return delay + self._rng.uniform(0, cfg.backoff_jitter_s)

    def _fetch_page(self, provider, coordinate: Coordinate, query: SearchQuery,
                    page_token: Optional[str]) -> Optional[PlacePage]:
        """One page with retry.  None when the query should be abandoned."""
        attempts = max(1, self.config.max_retries)
        for attempt in range(attempts):
            if not self.services.budget.try_acquire():
                raise _BudgetExhausted()
            try:
                return provider.search_page(coordinate, query, self.config.radius_m, page_token)
            except (RateLimited, ProviderTimeout) as e:
                if attempt + 1 >= attempts:
                    logger.warning(
                        "%s %s gave up after %d attempts at %s: %s",
                        provider.name, query.cache_part, attempts, coordinate.as_tuple(), e,
                    )
                    return None
                delay = self.backoff_delay(attempt)
                logger.info(
                    "%s %s %s (attempt %d/%d), retrying in %.1fs",
                    provider.name, query.cache_part, type(e).__name__, attempt + 1, attempts, delay,
                )
                self._sleep(delay)
            except ApartmentSearchError as e:
                logger.warning(
                    "%s %s failed at %s (%s): %s",
                    provider.name, query.cache_part, coordinate.as_tuple(), type(e).__name__, e,
                )
                return None
        return None

    # ------------------------------------------------------------------
    # One (point, provider, query)
    # ------------------------------------------------------------------

    def _query_cache_key(self, provider, coordinate: Coordinate, query: SearchQuery) -> str:
        return make_cache_key(
            "nearby",
            round_coordinate(coordinate, self.config.coordinate_precision),
            provider.name,
            query.cache_part,
            self.config.radius_m,
        )

    def run_query(self, provider, coordinate: Coordinate, query: SearchQuery) -> List[RawPlaceResult]:
        key = self._query_cache_key(provider, coordinate, query)
        cached = self.services.nearby_cache.get(key)
        if cached is not None:
            return list(cached)

        results: List[RawPlaceResult] = []
        page_token: Optional[str] = None
        max_pages = self.config.max_pages if provider.paginates else 1
        complete = False
        try:
            for page_number in range(max_pages):
                if page_number > 0:
                    self._sleep(self.config.page_token_delay_s)
                page = self._fetch_page(provider, coordinate, query, page_token)
                if page is None:
                    break
                results.extend(page.results)
                if page_number == 0:
                    complete = True
                page_token = page.next_page_token
                if not page_token:
                    break
        except _BudgetExhausted:
            raise _BudgetExhausted(results)
        finally:
            if complete:
                self.services.nearby_cache.set(key, tuple(results))
        return results

    # ------------------------------------------------------------------
    # One sample point
    # ------------------------------------------------------------------

    def search_near(self, coordinate: Coordinate) -> List[RawPlaceResult]:
        """All provider hits around one coordinate (unfiltered, may repeat)."""
        results: List[RawPlaceResult] = []
        try:
            for provider in self.providers:
                if provider.type_scoped:
                    results.extend(self.run_query(provider, coordinate, provider.default_query))
                    continue
                provider_start = len(results)
                for keyword in self.config.keywords:
                    results.extend(
                        self.run_query(provider, coordinate, SearchQuery(QUERY_KEYWORD, keyword))
                    )
                sparse = len(results) - provider_start < self.config.sparse_threshold
                if sparse and self.config.fallback_type:
                    results.extend(
                        self.run_query(provider, coordinate, SearchQuery(QUERY_TYPE, self.config.fallback_type))
                    )
        except _BudgetExhausted as e:
            results.extend(e.partial)
            logger.warning(
                "Call budget exhausted at %s; returning %d results collected so far",
                coordinate.as_tuple(), len(results),
            )
        return results

    # ------------------------------------------------------------------
    # Many sample points
    # ------------------------------------------------------------------

    def search_points(self, points: Sequence[Coordinate]) -> List[List[RawPlaceResult]]:
        """Per-point result batches, in the order of *points*."""
        if not points:
            return []
        parent_trace = get_trace()

        def _search_in_thread(coordinate: Coordinate) -> List[RawPlaceResult]:
            set_trace(parent_trace)
            try:
                return self.search_near(coordinate)
            finally:
                set_trace(None)

        workers = max(1, min(self.config.max_concurrency, len(points)))
        batches: List[List[RawPlaceResult]] = []
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_search_in_thread, p) for p in points]
            for point, future in zip(points, futures):
                try:
                    batches.append(future.result())
                except Exception:
                    # One point failing must not sink the route.
                    logger.warning("Search at %s failed", point.as_tuple(), exc_info=True)
                    batches.append([])
        logger.info(
            "Searched %d points with %d workers: %d raw results",
            len(points), workers, sum(len(b) for b in batches),
        )
        return batches

    def search_route_batches(
        self,
        route: Route,
        sampling: SamplingConfig = SEARCH_CONFIG.sampling,
    ) -> List[List[RawPlaceResult]]:
        """Sample *route* and search every point, cached per polyline."""
        key = make_cache_key(
            "route_results",
            route.encoded_polyline,
            ",".join(p.name for p in self.providers),
            self.config.radius_m,
        )
        cached = self.services.route_cache.get(key)
        if cached is not None:
            return [list(batch) for batch in cached]

        points = sample_route(decode(route.encoded_polyline), sampling)
        batches = self.search_points(points)
        # An all-empty sweep usually means an outage; let the next search retry.
        if any(batches):
            self.services.route_cache.set(key, tuple(tuple(b) for b in batches))
        return batches

    def search_along_route(
        self,
        route: Route,
        sampling: SamplingConfig = SEARCH_CONFIG.sampling,
    ) -> List[RawPlaceResult]:
        return [r for batch in self.search_route_batches(route, sampling) for r in batch]
