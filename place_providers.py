"""
Place-search providers.

A provider turns one (coordinate, query) pair into a page of
RawPlaceResult records.  Two implementations:

  GooglePlacesProvider   Google Places Nearby Search, paginated via
                         next_page_token, keyword or type scoped.
  OverpassPlacesProvider OSM residential buildings around a point.  The
                         Overpass query is inherently type scoped, so it
                         ignores keywords and is issued once per point.

Payload parsing lives in the parse_* functions so it can be tested
without HTTP.  A payload whose shape does not match raises
MalformedResponse.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from maps_clients import GoogleMapsClient
from overpass_http import OverpassHTTPClient, get_overpass_client
from search_cache import TTLCache
from search_models import Coordinate, MalformedResponse, RawPlaceResult

logger = logging.getLogger(__name__)

QUERY_KEYWORD = "keyword"
QUERY_TYPE = "type"


@dataclass(frozen=True)
class SearchQuery:
    kind: str    # "keyword" | "type"
    value: str

    @property
    def cache_part(self) -> str:
        return f"{self.kind}={self.value}"


@dataclass
class PlacePage:
    results: List[RawPlaceResult] = field(default_factory=list)
    next_page_token: Optional[str] = None


# =============================================================================
# Google Places
# =============================================================================

def parse_google_place(item: Dict[str, Any]) -> RawPlaceResult:
    """Convert one Nearby Search result into a RawPlaceResult."""
    if not isinstance(item, dict):
        raise MalformedResponse(f"Places result is {type(item).__name__}, expected object")
    try:
        loc = item["geometry"]["location"]
        coordinate = Coordinate(float(loc["lat"]), float(loc["lng"]))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Places result missing geometry.location: {e}") from e

    photos = tuple(
        p["photo_reference"]
        for p in item.get("photos") or []
        if isinstance(p, dict) and p.get("photo_reference")
    )
    return RawPlaceResult(
        provider="google",
        place_id=item.get("place_id"),
        name=item.get("name") or "",
        coordinate=coordinate,
        address=item.get("vicinity") or item.get("formatted_address") or "",
        types=tuple(item.get("types") or ()),
        rating=item.get("rating"),
        user_ratings_total=item.get("user_ratings_total"),
        photos=photos,
    )


def parse_google_page(data: Dict[str, Any]) -> PlacePage:
    results = data.get("results", [])
    if not isinstance(results, list):
        raise MalformedResponse("Places payload 'results' is not a list")
    return PlacePage(
        results=[parse_google_place(item) for item in results],
        next_page_token=data.get("next_page_token") or None,
    )


class GooglePlacesProvider:
    name = "google"
    paginates = True
    type_scoped = False

    def __init__(self, client: GoogleMapsClient):
        self.client = client

    def search_page(
        self,
        coordinate: Coordinate,
        query: SearchQuery,
        radius_m: int,
        page_token: Optional[str] = None,
    ) -> PlacePage:
        data = self.client.places_nearby(
            coordinate.latitude,
            coordinate.longitude,
            radius_meters=radius_m,
            keyword=query.value if query.kind == QUERY_KEYWORD else None,
            place_type=query.value if query.kind == QUERY_TYPE else None,
            page_token=page_token,
        )
        return parse_google_page(data)


# =============================================================================
# Overpass (OpenStreetMap)
# =============================================================================

RESIDENTIAL_AROUND_QUERY = """
[out:json][timeout:25];
(
  way["building"~"apartments|residential"]["name"](around:{radius},{lat},{lng});
  way["amenity"="residential"]["name"](around:{radius},{lat},{lng});
  way["landuse"="residential"]["name"](around:{radius},{lat},{lng});
  relation["building"~"apartments|residential"]["name"](around:{radius},{lat},{lng});
);
out center;
"""


def build_residential_query(coordinate: Coordinate, radius_m: int) -> str:
    return RESIDENTIAL_AROUND_QUERY.format(
        radius=int(radius_m), lat=coordinate.latitude, lng=coordinate.longitude,
    ).strip()


def build_osm_address(tags: Dict[str, str]) -> str:
    """'12 Main St, Houston, TX 77005' from addr:* tags; missing parts skipped."""
    street = " ".join(p for p in (tags.get("addr:housenumber"), tags.get("addr:street")) if p)
    region = " ".join(p for p in (tags.get("addr:state"), tags.get("addr:postcode")) if p)
    parts = [p for p in (street, tags.get("addr:city"), region) if p]
    return ", ".join(parts)


def parse_overpass_element(element: Dict[str, Any]) -> Optional[RawPlaceResult]:
    """Convert one Overpass element; unnamed or unlocated elements give None."""
    if not isinstance(element, dict):
        raise MalformedResponse(f"Overpass element is {type(element).__name__}, expected object")
    tags = element.get("tags") or {}
    name = tags.get("name")
    if not name:
        return None

    if "lat" in element and "lon" in element:
        lat, lng = element["lat"], element["lon"]
    elif isinstance(element.get("center"), dict):
        lat, lng = element["center"].get("lat"), element["center"].get("lon")
    else:
        return None
    if lat is None or lng is None:
        return None

    element_type = element.get("type", "way")
    element_id = element.get("id")
    types = tuple(
        v for k, v in (("building", tags.get("building")), ("amenity", tags.get("amenity")),
                       ("landuse", tags.get("landuse"))) if v
    )
    tag_pairs: Tuple[Tuple[str, str], ...] = tuple(
        sorted((str(k), str(v)) for k, v in tags.items())
    )
    return RawPlaceResult(
        provider="overpass",
        place_id=f"overpass_{element_type}/{element_id}" if element_id is not None else None,
        name=name,
        coordinate=Coordinate(float(lat), float(lng)),
        address=build_osm_address(tags),
        types=types,
        tags=tag_pairs,
    )


def parse_overpass_page(data: Dict[str, Any]) -> PlacePage:
    elements = data.get("elements", [])
    if not isinstance(elements, list):
        raise MalformedResponse("Overpass payload 'elements' is not a list")
    results = []
    for element in elements:
        parsed = parse_overpass_element(element)
        if parsed is not None:
            results.append(parsed)
    return PlacePage(results=results)


class OverpassPlacesProvider:
    name = "overpass"
    paginates = False
    # One building-tag query per point; keyword queries would all be identical.
    type_scoped = True
    default_query = SearchQuery(QUERY_TYPE, "residential_building")

    def __init__(self, client: Optional[OverpassHTTPClient] = None, cache: Optional[TTLCache] = None):
        self._client = client
        self.cache = cache

    @property
    def client(self) -> OverpassHTTPClient:
        return self._client or get_overpass_client()

    def search_page(
        self,
        coordinate: Coordinate,
        query: SearchQuery,
        radius_m: int,
        page_token: Optional[str] = None,
    ) -> PlacePage:
        # The around-query does not depend on the keyword; page_token is never issued.
        # PlaceSearchEngine owns retries and the call budget, so one attempt here.
        data = self.client.query(
            build_residential_query(coordinate, radius_m),
            caller="residential_around",
            cache=self.cache,
            retries=0,
        )
        return parse_overpass_page(data)
