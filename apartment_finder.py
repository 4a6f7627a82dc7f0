#!/usr/bin/env python3
"""
Route Apartment Finder
======================
Finds apartment buildings near a commute route.

Pipeline: geocode both ends -> compute routes -> sample the selected route
-> search providers around each sample point (concurrently) -> keep
residential results -> dedupe -> measure distance to the route -> bucket
into <=1 / <=2 / <=3 miles.

Usage:
    python apartment_finder.py "Rice University, Houston" "University of Houston"
    python apartment_finder.py ORIGIN DESTINATION --mode TRANSIT --route-index 1 --json

Requires GOOGLE_MAPS_API_KEY for Google directions and places.  Without it,
routing falls back to OpenRouteService (OPENROUTESERVICE_API_KEY) or a
straight-line estimate, and place search uses Overpass.
"""

import argparse
import json
import logging
import os
import sys
import time
import uuid
from typing import List, Optional, Union

from dotenv import load_dotenv

from dedupe import dedupe, dedupe_nearby
from geocoder import Geocoder
from maps_clients import GoogleMapsClient, NominatimClient, OpenRouteServiceClient
from place_providers import GooglePlacesProvider, OverpassPlacesProvider
from place_search import PlaceSearchEngine
from polyline_codec import decode
from residential import classify
from route_distance import build_listings, group_by_bucket
from router import Router, normalize_travel_mode, select_route
from search_cache import SearchServices, get_services
from search_config import SearchConfig, load_search_config
from search_models import (
    BUCKET_1MI,
    BUCKET_2MI,
    BUCKET_3MI,
    BUCKETS,
    Candidate,
    Coordinate,
    InvalidSearchInput,
    LocationNotFound,
    ApartmentSearchError,
    NotFound,
    RouteUnavailable,
    SearchResult,
    search_result_to_dict,
)
from search_trace import TraceContext, clear_trace, get_trace, set_trace

load_dotenv()

logger = logging.getLogger(__name__)


# =============================================================================
# Stage timing
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0)
        raise
    finally:
        if trace:
            trace.end_stage()


# =============================================================================
# Input handling
# =============================================================================

def parse_max_distance(value: Union[None, str, float, int], config: SearchConfig) -> float:
    """Outer cutoff in miles from a bucket label, a number, or None (config default).

    Values above the configured outer radius are capped to it.
    """
    outer = config.distance.outer_radius_mi
    if value is None or value == "":
        return outer
    if isinstance(value, str):
        labels = {
            BUCKET_1MI: config.distance.near_mi,
            BUCKET_2MI: config.distance.mid_mi,
            BUCKET_3MI: outer,
        }
        if value in labels:
            return labels[value]
        try:
            value = float(value.strip().lower().rstrip("mi").lstrip("≤<="))
        except ValueError:
            raise InvalidSearchInput(
                f"max_distance must be a number of miles or one of {', '.join(BUCKETS)}"
            )
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidSearchInput("max_distance must be a number of miles")
    if value <= 0:
        raise InvalidSearchInput("max_distance must be positive")
    return min(float(value), outer)


def _require_text(value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidSearchInput(f"{label} is required")
    return value.strip()


# =============================================================================
# Finder
# =============================================================================

class ApartmentFinder:
    """Wires geocoder, router and search engine into the search pipeline."""

    def __init__(
        self,
        geocoder: Geocoder,
        router: Router,
        search_engine: PlaceSearchEngine,
        services: SearchServices,
        config: SearchConfig,
    ):
        self.geocoder = geocoder
        self.router = router
        self.search_engine = search_engine
        self.services = services
        self.config = config

    def _geocode(self, text: str, role: str) -> Coordinate:
        outcome = self.geocoder.geocode(text)
        if isinstance(outcome, NotFound):
            raise LocationNotFound(role, text)
        return outcome

    def _filter_batches(self, batches) -> List[Candidate]:
        candidates: List[Candidate] = []
        for batch in batches:
            kept = classify(batch, self.config.residential, self.config.dedupe)
            candidates.extend(dedupe_nearby(kept, self.config.dedupe.batch_min_separation_m))
        return candidates

    def get_route_and_apartments(
        self,
        origin: str,
        destination: str,
        travel_mode: str = "DRIVE",
        route_index: int = 0,
        max_distance: Union[None, str, float, int] = None,
    ) -> SearchResult:
        """Run the whole pipeline for one origin/destination pair.

        Raises:
            InvalidSearchInput: empty endpoints, unknown mode, bad max_distance.
            LocationNotFound: either endpoint geocoded to nothing.
            GeocodeFailure: the address-lookup provider failed.
            RouteUnavailable: no route could be built.
        """
        origin = _require_text(origin, "Origin")
        destination = _require_text(destination, "Destination")
        mode = normalize_travel_mode(travel_mode)
        if isinstance(route_index, bool) or not isinstance(route_index, int):
            raise InvalidSearchInput("route_index must be an integer")
        cutoff_mi = parse_max_distance(max_distance, self.config)

        trace = get_trace()
        if trace:
            trace.config_version = self.config.version

        # Origin failure is reported before the destination is looked up.
        start = _timed_stage("geocode_origin", self._geocode, origin, "origin")
        end = _timed_stage("geocode_destination", self._geocode, destination, "destination")

        routes = _timed_stage("route", self.router.compute_routes, start, end, mode)
        selected, index_warning = select_route(routes, route_index)
        polyline = decode(selected.encoded_polyline)
        if not polyline:
            raise RouteUnavailable("route has no geometry")

        batches = _timed_stage(
            "search", self.search_engine.search_route_batches, selected, self.config.sampling,
        )
        candidates = _timed_stage("classify", self._filter_batches, batches)
        unique = _timed_stage(
            "dedupe", dedupe, candidates, self.config.dedupe.geohash_precision, "route",
        )
        listings = _timed_stage(
            "distance", build_listings, unique, polyline, cutoff_mi, self.config.distance,
        )

        result = SearchResult(
            route_options=routes,
            selected_route=selected,
            apartments=group_by_bucket(listings),
            total_found=len(listings),
            warnings=[w for w in (index_warning,) if w] + list(selected.warnings),
        )
        logger.info(
            "Found %d apartments along %s route (%s): %s",
            result.total_found,
            mode,
            result.route_source,
            ", ".join(f"{b}={len(result.apartments[b])}" for b in BUCKETS),
        )
        return result


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def build_finder_from_env(
    services: Optional[SearchServices] = None,
    config: Optional[SearchConfig] = None,
) -> ApartmentFinder:
    """Build an ApartmentFinder from environment credentials.

    GOOGLE_MAPS_API_KEY        Google directions, places (and geocoding when
                               GEOCODE_PROVIDER=google)
    OPENROUTESERVICE_API_KEY   directions fallback
    APT_ENABLE_OVERPASS        OSM building search; on by default only when
                               no Google key is configured
    """
    config = config or load_search_config()
    services = services or get_services()
    timeout = config.search.request_timeout_s

    google_key = os.environ.get("GOOGLE_MAPS_API_KEY", "").strip()
    ors_key = os.environ.get("OPENROUTESERVICE_API_KEY", "").strip()
    google = GoogleMapsClient(google_key, timeout=timeout) if google_key else None
    ors = OpenRouteServiceClient(ors_key, timeout=timeout) if ors_key else None

    if os.environ.get("GEOCODE_PROVIDER", "nominatim").strip().lower() == "google" and google:
        geocoder = Geocoder(services, google=google)
    else:
        geocoder = Geocoder(services, nominatim=NominatimClient(timeout=timeout))

    providers = []
    if google:
        providers.append(GooglePlacesProvider(google))
    if _env_flag("APT_ENABLE_OVERPASS", default=google is None):
        providers.append(OverpassPlacesProvider(cache=services.overpass_cache))
    if not providers:
        logger.warning("No place providers enabled; searches will return no apartments")

    return ApartmentFinder(
        geocoder=geocoder,
        router=Router(services, google=google, ors=ors),
        search_engine=PlaceSearchEngine(providers, services, config.search),
        services=services,
        config=config,
    )


def get_route_and_apartments(
    origin: str,
    destination: str,
    travel_mode: str = "DRIVE",
    route_index: int = 0,
    max_distance: Union[None, str, float, int] = None,
) -> SearchResult:
    """Library entry point using environment configuration and the process-wide caches."""
    return build_finder_from_env().get_route_and_apartments(
        origin, destination, travel_mode, route_index, max_distance,
    )


# =============================================================================
# Output
# =============================================================================

def format_result(result: SearchResult) -> str:
    """Format a search result as a readable report"""
    route = result.selected_route
    lines = []

    lines.append("=" * 70)
    lines.append(f"ROUTE: {route.summary}")
    lines.append(
        f"DISTANCE: {route.distance_m / 1000:.1f} km   "
        f"DURATION: {round(route.duration_s / 60)} min   SOURCE: {result.route_source}"
    )
    if len(result.route_options) > 1:
        lines.append(f"ALTERNATIVES: {len(result.route_options)} routes")
    lines.append("=" * 70)

    for warning in result.warnings:
        lines.append(f"  ! {warning}")

    lines.append(f"\nAPARTMENTS FOUND: {result.total_found}")
    for bucket in BUCKETS:
        listings = result.apartments.get(bucket, [])
        lines.append(f"\n{bucket} ({len(listings)}):")
        for listing in listings:
            place = listing.place
            rating = f"  ★{place.rating}" if place.rating is not None else ""
            lines.append(f"  - {place.name} ({listing.distance_to_route_miles:.2f} mi){rating}")
            if place.formatted_address:
                lines.append(f"      {place.formatted_address}")

    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Find apartment buildings near the route between two places"
    )
    parser.add_argument("origin", nargs="?", help="Start address or place name")
    parser.add_argument("destination", nargs="?", help="End address or place name")
    parser.add_argument(
        "--mode",
        default="DRIVE",
        help="Travel mode: DRIVE, WALK, BICYCLE or TRANSIT (default DRIVE)"
    )
    parser.add_argument(
        "--route-index",
        type=int,
        default=0,
        help="Which alternative route to search along (default 0)"
    )
    parser.add_argument(
        "--max-distance",
        default=None,
        help="Outer cutoff: miles, or a bucket label such as '≤2mi'"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()

    if not args.origin or not args.destination:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    trace = TraceContext(trace_id=uuid.uuid4().hex[:12])
    set_trace(trace)
    try:
        result = get_route_and_apartments(
            args.origin, args.destination, args.mode, args.route_index, args.max_distance,
        )
    except ApartmentSearchError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        trace.log_summary()
        clear_trace()

    if args.json:
        print(json.dumps(search_result_to_dict(result), indent=2, ensure_ascii=False))
    else:
        print(format_result(result))


if __name__ == "__main__":
    main()
