"""Distance from candidates to the selected route, and bucketing by miles."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from geo_math import distance_to_polyline_km, km_to_miles
from search_config import DistanceConfig, SEARCH_CONFIG
from search_models import (
    ApartmentListing,
    BUCKET_1MI,
    BUCKET_2MI,
    BUCKET_3MI,
    BUCKETS,
    Candidate,
    Coordinate,
    PlaceDetails,
    RawPlaceResult,
)

logger = logging.getLogger(__name__)


def distance_to_route_km(coordinate: Coordinate, polyline: Sequence[Coordinate]) -> float:
    return distance_to_polyline_km(coordinate, polyline)


def distance_to_route_miles(coordinate: Coordinate, polyline: Sequence[Coordinate]) -> float:
    return km_to_miles(distance_to_route_km(coordinate, polyline))


def bucket_for_distance(miles: float, config: DistanceConfig = SEARCH_CONFIG.distance) -> str:
    """Closed upper bounds: exactly 1.0 mi is in the first bucket."""
    if miles <= config.near_mi:
        return BUCKET_1MI
    if miles <= config.mid_mi:
        return BUCKET_2MI
    return BUCKET_3MI


def details_from_result(result: RawPlaceResult) -> PlaceDetails:
    """Listing-level details available without a Place Details call."""
    return PlaceDetails(
        place_id=result.place_id or f"{result.provider}:{result.coordinate.latitude:.5f},{result.coordinate.longitude:.5f}",
        name=result.name,
        coordinate=result.coordinate,
        formatted_address=result.address,
        rating=result.rating,
        user_ratings_total=result.user_ratings_total,
        photos=result.photos,
        vicinity=result.address or None,
    )


def build_listings(
    candidates: Iterable[Candidate],
    polyline: Sequence[Coordinate],
    outer_radius_mi: Optional[float] = None,
    config: DistanceConfig = SEARCH_CONFIG.distance,
) -> List[ApartmentListing]:
    """Measure every candidate against *polyline*; drop those beyond the outer radius."""
    limit = config.outer_radius_mi if outer_radius_mi is None else outer_radius_mi
    listings = []
    dropped = 0
    for c in candidates:
        miles = distance_to_route_miles(c.coordinate, polyline)
        if miles > limit:
            dropped += 1
            continue
        listings.append(ApartmentListing(
            place=details_from_result(c.result),
            distance_to_route_miles=miles,
            bucket=bucket_for_distance(miles, config),
        ))
    if dropped:
        logger.info("Dropped %d candidates beyond %.2f mi of the route", dropped, limit)
    return listings


def group_by_bucket(listings: Iterable[ApartmentListing]) -> Dict[str, List[ApartmentListing]]:
    grouped: Dict[str, List[ApartmentListing]] = {b: [] for b in BUCKETS}
    for listing in listings:
        grouped[listing.bucket].append(listing)
    for bucket in grouped.values():
        bucket.sort(key=lambda l: l.distance_to_route_miles)
    return grouped
