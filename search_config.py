"""
Search configuration for the route apartment finder.

Owns every numeric constant and keyword list that affects which sample
points are searched, how providers are queried, and how results are
filtered and bucketed.  Earlier revisions of the pipeline hardcoded a
different set of constants per variant; they are collapsed here into one
SearchConfig passed through the whole pipeline.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class SamplingConfig:
    """How a decoded route polyline is reduced to search points."""
    index_interval: int = 5            # every Nth vertex
    distance_interval_m: float = 300.0  # emit a point every ~300 m of travel
    min_separation_m: float = 200.0     # drop points closer than this to an accepted one
    max_sample_points: int = 25         # hard cap on provider fan-out per route


@dataclass(frozen=True)
class PlaceSearchConfig:
    """Provider query strategy for each sample point."""
    keywords: Tuple[str, ...] = ("apartment", "apartment complex", "condo", "housing")
    # Secondary category query, issued only when a point's keyword results are sparse.
    fallback_type: str = "apartment_complex"
    sparse_threshold: int = 5
    radius_m: int = 1500
    max_pages: int = 2
    # Google requires a short delay before a next_page_token becomes valid.
    page_token_delay_s: float = 2.0
    max_concurrency: int = 3
    max_retries: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 10.0
    backoff_jitter_s: float = 1.0
    request_timeout_s: float = 10.0
    coordinate_precision: int = 4  # cache-key rounding (~11 m)


@dataclass(frozen=True)
class ResidentialKeywords:
    """Keyword heuristic for residential buildings.

    Exclusion always wins: a name carrying both an inclusion and an
    exclusion token is rejected.
    """
    include: Tuple[str, ...] = (
        "apartment", "apts", "condo", "residence", "residential", "complex",
        "tower", "village", "loft", "housing", "manor", "court", "plaza",
        "villa", "flats",
    )
    exclude: Tuple[str, ...] = (
        "hotel", "motel", "hospital", "school", "restaurant", "office",
        "lodging", "inn", "suites", "hostel", "extended stay",
        "church", "warehouse", "parking", "clinic", "bank", "storage", "store",
    )


@dataclass(frozen=True)
class DedupeConfig:
    geohash_precision: int = 4          # decimal degrees for the full-route merge
    batch_min_separation_m: float = 30.0  # pairwise radius within one point's batch


@dataclass(frozen=True)
class DistanceConfig:
    """Distance buckets (miles, closed upper bounds)."""
    near_mi: float = 1.0
    mid_mi: float = 2.0
    outer_radius_mi: float = 3.0  # beyond this, candidates are dropped


@dataclass(frozen=True)
class CacheConfig:
    route_ttl_s: float = 600.0
    route_max_entries: int = 100
    point_ttl_s: float = 600.0
    point_max_entries: int = 1000
    details_ttl_s: float = 1800.0
    details_max_entries: int = 2000


@dataclass(frozen=True)
class QuotaConfig:
    """Rolling provider call budget shared by every search in the process."""
    calls_per_window: int = 650
    window_s: float = 3600.0


@dataclass(frozen=True)
class SearchConfig:
    """Top-level container for all search parameters.

    A single module-level instance (SEARCH_CONFIG) is the default.  Use
    dataclasses.replace() to derive per-request variants.
    """
    version: str
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    search: PlaceSearchConfig = field(default_factory=PlaceSearchConfig)
    residential: ResidentialKeywords = field(default_factory=ResidentialKeywords)
    dedupe: DedupeConfig = field(default_factory=DedupeConfig)
    distance: DistanceConfig = field(default_factory=DistanceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)


# =============================================================================
# Environment overrides
# =============================================================================

def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_search_config(base: "SearchConfig" = None) -> SearchConfig:
    """Return *base* (default SEARCH_CONFIG) with environment overrides applied.

    Recognised variables:
        APT_MAX_CONCURRENCY      worker pool size for per-point searches
        APT_SEARCH_RADIUS_M      nearby-search radius in meters
        APT_SAMPLE_INTERVAL      index interval for route sampling
        APT_ROUTE_RADIUS_MI      outer distance cutoff in miles
        APT_MAX_CALLS_PER_HOUR   rolling provider call budget
    """
    base = base or SEARCH_CONFIG
    search = replace(
        base.search,
        max_concurrency=max(1, _env_int("APT_MAX_CONCURRENCY", base.search.max_concurrency)),
        radius_m=_env_int("APT_SEARCH_RADIUS_M", base.search.radius_m),
    )
    sampling = replace(
        base.sampling,
        index_interval=max(1, _env_int("APT_SAMPLE_INTERVAL", base.sampling.index_interval)),
    )
    distance = replace(
        base.distance,
        outer_radius_mi=_env_float("APT_ROUTE_RADIUS_MI", base.distance.outer_radius_mi),
    )
    quota = replace(
        base.quota,
        calls_per_window=_env_int("APT_MAX_CALLS_PER_HOUR", base.quota.calls_per_window),
    )
    return replace(base, search=search, sampling=sampling, distance=distance, quota=quota)


# =============================================================================
# Default configuration
# =============================================================================

SEARCH_CONFIG = SearchConfig(version="1.2.0")
