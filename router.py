"""
Route computation with provider fallback.

Provider order:
  1. Google Directions (alternatives requested, transit supported) when a
     Google key is configured.
  2. OpenRouteService when its key is configured.  One route, no transit:
     TRANSIT is routed as driving-car.
  3. A synthetic straight-line route.  Distance is great-circle, duration
     comes from an assumed average speed per mode, and the route is tagged
     source="synthetic" with a warning so callers can tell it apart.

Provider routes are cached per (origin, destination, mode).  Synthetic
routes are not cached, so a recovered provider is picked up on the next
search.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from geo_math import bounds_for, dedupe_consecutive, haversine_miles, miles_to_km, round_coordinate
from maps_clients import GoogleMapsClient, OpenRouteServiceClient
from polyline_codec import decode, encode
from search_cache import SearchServices, make_cache_key
from search_models import (
    ApartmentSearchError,
    Bounds,
    Coordinate,
    InvalidSearchInput,
    Leg,
    MalformedResponse,
    Route,
    RouteUnavailable,
    ROUTE_SOURCE_PROVIDER,
    ROUTE_SOURCE_SYNTHETIC,
    Step,
    TRAVEL_MODES,
    TransitDetails,
)

logger = logging.getLogger(__name__)

GOOGLE_MODES = {
    "DRIVE": "driving",
    "WALK": "walking",
    "BICYCLE": "bicycling",
    "TRANSIT": "transit",
}

ORS_PROFILES = {
    "DRIVE": "driving-car",
    "WALK": "foot-walking",
    "BICYCLE": "cycling-regular",
    "TRANSIT": "driving-car",
}

# Average speeds (km/h) for synthetic duration estimates.
SYNTHETIC_SPEEDS_KMH = {
    "DRIVE": 50.0,
    "WALK": 5.0,
    "BICYCLE": 15.0,
    "TRANSIT": 30.0,
}

SYNTHETIC_WARNING = "Estimated straight-line route; no directions provider was available"


def normalize_travel_mode(travel_mode: str) -> str:
    mode = (travel_mode or "").strip().upper()
    if mode not in TRAVEL_MODES:
        raise InvalidSearchInput(
            f"Unknown travel mode {travel_mode!r}; expected one of {', '.join(TRAVEL_MODES)}"
        )
    return mode


def synthetic_route(origin: Coordinate, destination: Coordinate, travel_mode: str) -> Route:
    """Straight-line origin->destination route with an estimated duration."""
    distance_mi = haversine_miles(origin, destination)
    distance_km = miles_to_km(distance_mi)
    speed = SYNTHETIC_SPEEDS_KMH.get(travel_mode, SYNTHETIC_SPEEDS_KMH["DRIVE"])
    duration_s = round(distance_km / speed * 3600)
    minutes = round(duration_s / 60)
    leg = Leg(
        distance_m=distance_km * 1000.0,
        duration_s=duration_s,
        start=origin,
        end=destination,
        steps=(Step(travel_mode=travel_mode, distance_m=distance_km * 1000.0,
                    duration_s=duration_s, start=origin, end=destination),),
    )
    return Route(
        route_id="synthetic_0",
        encoded_polyline=encode([origin, destination]),
        legs=(leg,),
        summary=f"{distance_km:.1f} km, {minutes} min",
        bounds=bounds_for([origin, destination]),
        source=ROUTE_SOURCE_SYNTHETIC,
        provider="synthetic",
        warnings=(SYNTHETIC_WARNING,),
    )


# =============================================================================
# Google Directions parsing
# =============================================================================

def _google_latlng(raw: Optional[Dict[str, Any]]) -> Optional[Coordinate]:
    if not isinstance(raw, dict) or "lat" not in raw or "lng" not in raw:
        return None
    return Coordinate(float(raw["lat"]), float(raw["lng"]))


def _value(raw: Any) -> float:
    """Extract numeric .value from a Google {text, value} pair."""
    if isinstance(raw, dict):
        return float(raw.get("value") or 0)
    return 0.0


def _parse_transit(raw: Optional[Dict[str, Any]]) -> Optional[TransitDetails]:
    if not isinstance(raw, dict):
        return None
    line = raw.get("line") or {}
    vehicle = line.get("vehicle") or {}
    return TransitDetails(
        line_name=line.get("name") or "",
        line_short_name=line.get("short_name") or "",
        line_color=line.get("color") or "",
        vehicle_type=vehicle.get("type") or "",
        headsign=raw.get("headsign") or "",
        num_stops=int(raw.get("num_stops") or 0),
    )


def _parse_google_leg(raw: Dict[str, Any]) -> Leg:
    steps = tuple(
        Step(
            travel_mode=step.get("travel_mode", ""),
            distance_m=_value(step.get("distance")),
            duration_s=_value(step.get("duration")),
            start=_google_latlng(step.get("start_location")),
            end=_google_latlng(step.get("end_location")),
            transit=_parse_transit(step.get("transit_details")),
        )
        for step in raw.get("steps") or []
    )
    return Leg(
        distance_m=_value(raw.get("distance")),
        duration_s=_value(raw.get("duration")),
        start_address=raw.get("start_address") or "",
        end_address=raw.get("end_address") or "",
        start=_google_latlng(raw.get("start_location")),
        end=_google_latlng(raw.get("end_location")),
        steps=steps,
    )


def google_route_summary(raw_route: Dict[str, Any]) -> str:
    """Transit: line names joined by arrows.  Otherwise provider summary or leg distance."""
    legs = raw_route.get("legs") or []
    first_leg = legs[0] if legs else {}
    steps = first_leg.get("steps") or []
    transit_steps = [s for s in steps if s.get("travel_mode") == "TRANSIT"]
    if transit_steps:
        lines = []
        for step in transit_steps:
            line = (step.get("transit_details") or {}).get("line") or {}
            label = line.get("short_name") or line.get("name")
            if label:
                lines.append(label)
        if lines:
            return " → ".join(lines)
        duration_text = (first_leg.get("duration") or {}).get("text") or "Route"
        return f"{duration_text} via transit"
    if raw_route.get("summary"):
        return raw_route["summary"]
    return (first_leg.get("distance") or {}).get("text") or "Route"


def parse_google_routes(data: Dict[str, Any]) -> List[Route]:
    raw_routes = data.get("routes", [])
    if not isinstance(raw_routes, list):
        raise MalformedResponse("Directions payload 'routes' is not a list")

    routes = []
    for index, raw in enumerate(raw_routes):
        if not isinstance(raw, dict):
            raise MalformedResponse(f"Directions route {index} is not an object")
        points = (raw.get("overview_polyline") or {}).get("points")
        if not points or not isinstance(points, str):
            raise MalformedResponse(f"Directions route {index} has no overview_polyline")
        path = decode(points)
        if not path:
            raise MalformedResponse(f"Directions route {index} polyline decodes to no points")

        raw_bounds = raw.get("bounds") or {}
        ne = _google_latlng(raw_bounds.get("northeast"))
        sw = _google_latlng(raw_bounds.get("southwest"))
        bounds = Bounds(northeast=ne, southwest=sw) if ne and sw else bounds_for(path)

        fare = raw.get("fare")
        routes.append(Route(
            route_id=f"route_{index}",
            encoded_polyline=points,
            legs=tuple(_parse_google_leg(leg) for leg in raw.get("legs") or []),
            summary=google_route_summary(raw),
            bounds=bounds,
            source=ROUTE_SOURCE_PROVIDER,
            provider="google",
            warnings=tuple(raw.get("warnings") or ()),
            fare_text=fare.get("text") if isinstance(fare, dict) else None,
        ))
    return routes


# =============================================================================
# OpenRouteService parsing
# =============================================================================

def parse_ors_route(data: Dict[str, Any], travel_mode: str) -> List[Route]:
    features = data.get("features")
    if not isinstance(features, list):
        raise MalformedResponse("OpenRouteService payload has no 'features' list")
    if not features:
        return []

    feature = features[0]
    try:
        coords = feature["geometry"]["coordinates"]
        points = dedupe_consecutive([Coordinate(float(lat), float(lng)) for lng, lat, *_ in coords])
        summary = feature["properties"].get("summary") or {}
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"OpenRouteService feature malformed: {e}") from e
    if len(points) < 2:
        raise MalformedResponse("OpenRouteService geometry has fewer than two points")

    distance_m = float(summary.get("distance") or 0)
    duration_s = float(summary.get("duration") or 0)
    steps = []
    for segment in feature["properties"].get("segments") or []:
        for step in segment.get("steps") or []:
            steps.append(Step(
                travel_mode=travel_mode,
                distance_m=float(step.get("distance") or 0),
                duration_s=float(step.get("duration") or 0),
            ))

    leg = Leg(
        distance_m=distance_m,
        duration_s=duration_s,
        start=points[0],
        end=points[-1],
        steps=tuple(steps),
    )
    return [Route(
        route_id="route_0",
        encoded_polyline=encode(points),
        legs=(leg,),
        summary=f"{distance_m / 1000:.1f} km, {round(duration_s / 60)} min",
        bounds=bounds_for(points),
        source=ROUTE_SOURCE_PROVIDER,
        provider="openrouteservice",
    )]


# =============================================================================
# Router
# =============================================================================

class Router:
    def __init__(
        self,
        services: SearchServices,
        google: Optional[GoogleMapsClient] = None,
        ors: Optional[OpenRouteServiceClient] = None,
        allow_synthetic: bool = True,
        coordinate_precision: int = 5,
    ):
        self.services = services
        self.google = google
        self.ors = ors
        self.allow_synthetic = allow_synthetic
        self.coordinate_precision = coordinate_precision

    def _cache_key(self, origin: Coordinate, destination: Coordinate, mode: str) -> str:
        return make_cache_key(
            "route",
            round_coordinate(origin, self.coordinate_precision),
            round_coordinate(destination, self.coordinate_precision),
            mode,
        )

    def compute_routes(self, origin: Coordinate, destination: Coordinate, travel_mode: str) -> List[Route]:
        """Routes between two coordinates, best first.  Never empty.

        Raises RouteUnavailable only when every provider fails and synthetic
        routes are disabled.
        """
        mode = normalize_travel_mode(travel_mode)
        key = self._cache_key(origin, destination, mode)
        cached = self.services.route_cache.get(key)
        if cached is not None:
            return cached

        failures = []
        for name, fetch in self._providers(mode):
            try:
                routes = fetch(origin, destination, mode)
            except ApartmentSearchError as e:
                logger.warning("Directions via %s failed (%s): %s", name, type(e).__name__, e)
                failures.append(f"{name}: {e}")
                continue
            if routes:
                self.services.route_cache.set(key, routes)
                return routes
            logger.info("Directions via %s returned no routes for %s", name, mode)
            failures.append(f"{name}: no route")

        if not self.allow_synthetic:
            raise RouteUnavailable("; ".join(failures) or "no directions provider configured")
        logger.warning(
            "Falling back to synthetic %s route (%s)", mode, "; ".join(failures) or "no provider configured",
        )
        return [synthetic_route(origin, destination, mode)]

    def _providers(self, mode: str):
        if self.google is not None:
            yield "google", self._google_routes
        if self.ors is not None:
            yield "openrouteservice", self._ors_routes

    def _google_routes(self, origin: Coordinate, destination: Coordinate, mode: str) -> List[Route]:
        data = self.google.directions(origin, destination, GOOGLE_MODES[mode], alternatives=True)
        return parse_google_routes(data)

    def _ors_routes(self, origin: Coordinate, destination: Coordinate, mode: str) -> List[Route]:
        data = self.ors.directions(origin, destination, ORS_PROFILES[mode])
        return parse_ors_route(data, mode)


def select_route(routes: List[Route], route_index: int = 0) -> Tuple[Route, Optional[str]]:
    """Pick the route at *route_index*; out-of-range indices fall back to 0 with a warning."""
    if not routes:
        raise RouteUnavailable("no routes to select from")
    if 0 <= route_index < len(routes):
        return routes[route_index], None
    warning = f"Route index {route_index} out of range (0-{len(routes) - 1}); using route 0"
    logger.warning("Route index %d out of range (%d routes); using route 0", route_index, len(routes))
    return routes[0], warning
