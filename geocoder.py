"""Free-text address to coordinate lookup.

Nominatim is the default backend; Google Geocoding is used when the
finder is built with GEOCODE_PROVIDER=google.  A query with zero matches
returns a NotFound value.  Provider failures raise GeocodeFailure.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple, Union

from maps_clients import GoogleMapsClient, NominatimClient
from search_cache import SearchServices, make_cache_key
from search_models import (
    ApartmentSearchError,
    Coordinate,
    GeocodeFailure,
    InvalidSearchInput,
    MalformedResponse,
    NotFound,
)

logger = logging.getLogger(__name__)

Viewbox = Tuple[Coordinate, Coordinate]  # (southwest, northeast)


def parse_viewbox(raw: Optional[str]) -> Optional[Viewbox]:
    """Parse 'west,south,east,north' (degrees) into (southwest, northeast)."""
    if not raw or not raw.strip():
        return None
    try:
        west, south, east, north = (float(p) for p in raw.split(","))
    except ValueError:
        raise ValueError(f"GEOCODE_VIEWBOX must be 'west,south,east,north', got {raw!r}")
    return Coordinate(south, west), Coordinate(north, east)


def parse_nominatim_results(results: List[Dict[str, Any]]) -> Optional[Coordinate]:
    if not results:
        return None
    first = results[0]
    try:
        return Coordinate(float(first["lat"]), float(first["lon"]))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Nominatim result missing lat/lon: {e}") from e


def parse_google_geocode_results(results: List[Dict[str, Any]]) -> Optional[Coordinate]:
    if not results:
        return None
    try:
        loc = results[0]["geometry"]["location"]
        return Coordinate(float(loc["lat"]), float(loc["lng"]))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Geocoding result missing geometry.location: {e}") from e


class Geocoder:
    def __init__(
        self,
        services: SearchServices,
        nominatim: Optional[NominatimClient] = None,
        google: Optional[GoogleMapsClient] = None,
        viewbox: Optional[Viewbox] = None,
    ):
        if nominatim is None and google is None:
            nominatim = NominatimClient()
        self.services = services
        self.nominatim = nominatim
        self.google = google
        self.viewbox = viewbox if viewbox is not None else parse_viewbox(os.environ.get("GEOCODE_VIEWBOX"))

    @property
    def backend(self) -> str:
        return "google" if self.google is not None else "nominatim"

    def geocode(self, text: str) -> Union[Coordinate, NotFound]:
        """Resolve *text* to a coordinate.

        Raises InvalidSearchInput for blank input and GeocodeFailure when
        the provider cannot answer.
        """
        query = (text or "").strip()
        if not query:
            raise InvalidSearchInput("Address must not be empty")

        key = make_cache_key("geocode", self.backend, query.lower(), self.viewbox)
        cached = self.services.route_cache.get(key)
        if cached is not None:
            return cached

        try:
            if self.google is not None:
                coordinate = parse_google_geocode_results(self.google.geocode(query, bounds=self.viewbox))
            else:
                coordinate = parse_nominatim_results(self.nominatim.search(query, viewbox=self.viewbox))
        except ApartmentSearchError as e:
            logger.warning("Geocoding failed for %r via %s: %s", query, self.backend, e)
            raise GeocodeFailure(f"Geocoding failed for {query!r}: {e}") from e

        outcome: Union[Coordinate, NotFound] = coordinate if coordinate is not None else NotFound(query)
        if isinstance(outcome, NotFound):
            logger.info("Geocoding found no match for %r", query)
        self.services.route_cache.set(key, outcome)
        return outcome
