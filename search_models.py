"""
Data model and error taxonomy for the route apartment finder.

Everything a single search produces is built from the types below.  Provider
payloads never leave the client modules as raw dicts: they are parsed into
RawPlaceResult / Route records, and shape mismatches raise MalformedResponse.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# ERRORS
# =============================================================================

class ApartmentSearchError(Exception):
    """Base class for every error raised by the search pipeline."""


class InvalidSearchInput(ApartmentSearchError):
    """Empty origin/destination, unknown travel mode, bad route index."""


class LocationNotFound(ApartmentSearchError):
    """Geocoding returned zero matches for the origin or destination."""

    def __init__(self, role: str, query: str):
        self.role = role
        self.query = query
        label = "start" if role == "origin" else "end"
        super().__init__(f"Could not find {label} location: {query}")


class GeocodeFailure(ApartmentSearchError):
    """Address-lookup provider failed (network error, bad status)."""


class ProviderUnavailable(ApartmentSearchError):
    """Provider unreachable, misconfigured, or returned an error status."""


class RateLimited(ProviderUnavailable):
    """Provider signalled a rate limit (HTTP 429 / OVER_QUERY_LIMIT)."""


class ProviderTimeout(ProviderUnavailable):
    """Outbound call exceeded its timeout."""


class MalformedResponse(ApartmentSearchError):
    """Provider payload does not match the expected shape."""


class RouteUnavailable(ApartmentSearchError):
    """No route could be established by any means."""

    def __init__(self, detail: str = ""):
        message = "Could not compute a route"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


# =============================================================================
# CONSTANTS
# =============================================================================

TRAVEL_MODES = ("DRIVE", "WALK", "BICYCLE", "TRANSIT")

BUCKET_1MI = "≤1mi"
BUCKET_2MI = "≤2mi"
BUCKET_3MI = "≤3mi"
BUCKETS = (BUCKET_1MI, BUCKET_2MI, BUCKET_3MI)

ROUTE_SOURCE_PROVIDER = "provider"
ROUTE_SOURCE_SYNTHETIC = "synthetic"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinate:
    """WGS84 point in degrees."""
    latitude: float
    longitude: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.latitude, "lng": self.longitude}


@dataclass(frozen=True)
class NotFound:
    """Geocoding outcome for a query with zero matches.

    Returned as a value (not raised): an empty match set is a valid answer,
    distinct from GeocodeFailure.
    """
    query: str
    reason: str = "ZERO_RESULTS"


@dataclass(frozen=True)
class Bounds:
    northeast: Coordinate
    southwest: Coordinate

    def to_dict(self) -> Dict[str, Any]:
        return {"northeast": self.northeast.to_dict(), "southwest": self.southwest.to_dict()}


@dataclass(frozen=True)
class TransitDetails:
    line_name: str = ""
    line_short_name: str = ""
    line_color: str = ""
    vehicle_type: str = ""
    headsign: str = ""
    num_stops: int = 0


@dataclass(frozen=True)
class Step:
    travel_mode: str
    distance_m: float
    duration_s: float
    start: Optional[Coordinate] = None
    end: Optional[Coordinate] = None
    transit: Optional[TransitDetails] = None


@dataclass(frozen=True)
class Leg:
    distance_m: float
    duration_s: float
    start_address: str = ""
    end_address: str = ""
    start: Optional[Coordinate] = None
    end: Optional[Coordinate] = None
    steps: Tuple[Step, ...] = ()


@dataclass(frozen=True)
class Route:
    route_id: str
    encoded_polyline: str
    legs: Tuple[Leg, ...]
    summary: str
    bounds: Bounds
    source: str = ROUTE_SOURCE_PROVIDER   # "provider" | "synthetic"
    provider: str = ""
    warnings: Tuple[str, ...] = ()
    fare_text: Optional[str] = None

    @property
    def distance_m(self) -> float:
        return sum(leg.distance_m for leg in self.legs)

    @property
    def duration_s(self) -> float:
        return sum(leg.duration_s for leg in self.legs)

    @property
    def is_synthetic(self) -> bool:
        return self.source == ROUTE_SOURCE_SYNTHETIC


@dataclass(frozen=True)
class RawPlaceResult:
    """One upstream hit before classification."""
    provider: str
    place_id: Optional[str]
    name: str
    coordinate: Coordinate
    address: str = ""
    types: Tuple[str, ...] = ()
    tags: Tuple[Tuple[str, str], ...] = ()
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    photos: Tuple[str, ...] = ()   # provider photo references


@dataclass(frozen=True)
class Candidate:
    """A RawPlaceResult that passed residential classification."""
    result: RawPlaceResult
    dedupe_key: str

    @property
    def provider(self) -> str:
        return self.result.provider

    @property
    def place_id(self) -> Optional[str]:
        return self.result.place_id

    @property
    def coordinate(self) -> Coordinate:
        return self.result.coordinate


@dataclass(frozen=True)
class PlaceDetails:
    place_id: str
    name: str
    coordinate: Coordinate
    formatted_address: str = ""
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    photos: Tuple[str, ...] = ()
    website: Optional[str] = None
    vicinity: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class ApartmentListing:
    place: PlaceDetails
    distance_to_route_miles: float
    bucket: str


@dataclass
class SearchResult:
    """Top-level output of get_route_and_apartments()."""
    route_options: List[Route]
    selected_route: Route
    apartments: Dict[str, List[ApartmentListing]] = field(
        default_factory=lambda: {b: [] for b in BUCKETS}
    )
    total_found: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def route_source(self) -> str:
        return self.selected_route.source


# =============================================================================
# SERIALIZATION
# =============================================================================

def route_to_dict(route: Route) -> Dict[str, Any]:
    legs = []
    for leg in route.legs:
        steps = []
        for step in leg.steps:
            s: Dict[str, Any] = {
                "travel_mode": step.travel_mode,
                "distance_m": step.distance_m,
                "duration_s": step.duration_s,
            }
            if step.transit:
                s["transit"] = {
                    "line_name": step.transit.line_name,
                    "line_short_name": step.transit.line_short_name,
                    "line_color": step.transit.line_color,
                    "vehicle_type": step.transit.vehicle_type,
                    "headsign": step.transit.headsign,
                    "num_stops": step.transit.num_stops,
                }
            steps.append(s)
        legs.append({
            "distance_m": leg.distance_m,
            "duration_s": leg.duration_s,
            "start_address": leg.start_address,
            "end_address": leg.end_address,
            "start_location": leg.start.to_dict() if leg.start else None,
            "end_location": leg.end.to_dict() if leg.end else None,
            "steps": steps,
        })
    return {
        "route_id": route.route_id,
        "summary": route.summary,
        "polyline": route.encoded_polyline,
        "bounds": route.bounds.to_dict(),
        "source": route.source,
        "provider": route.provider,
        "distance_m": route.distance_m,
        "duration_s": route.duration_s,
        "warnings": list(route.warnings),
        "fare": route.fare_text,
        "legs": legs,
    }


def listing_to_dict(listing: ApartmentListing) -> Dict[str, Any]:
    place = listing.place
    return {
        "place": {
            "place_id": place.place_id,
            "name": place.name,
            "formatted_address": place.formatted_address,
            "location": place.coordinate.to_dict(),
            "rating": place.rating,
            "user_ratings_total": place.user_ratings_total,
            "photos": list(place.photos),
            "website": place.website,
            "vicinity": place.vicinity,
        },
        "distance_to_route_miles": round(listing.distance_to_route_miles, 3),
        "bucket": listing.bucket,
    }


def search_result_to_dict(result: SearchResult) -> Dict[str, Any]:
    return {
        "route_options": [route_to_dict(r) for r in result.route_options],
        "selected_route": route_to_dict(result.selected_route),
        "route_source": result.route_source,
        "apartments": {
            bucket: [listing_to_dict(l) for l in result.apartments.get(bucket, [])]
            for bucket in BUCKETS
        },
        "total_found": result.total_found,
        "warnings": list(result.warnings),
    }
