"""
HTTP clients for the address-lookup, directions and place-search providers.

Clients only speak HTTP: they attach credentials, enforce timeouts, map
transport failures and provider status codes onto the error taxonomy in
search_models, and record every call in the request trace and provider
health window.  Turning payloads into typed records is the job of the
parse functions in geocoder.py, router.py and place_providers.py.

Error mapping (all clients):
    requests Timeout                 -> ProviderTimeout
    other RequestException           -> ProviderUnavailable
    HTTP 429                         -> RateLimited
    HTTP 4xx/5xx                     -> ProviderUnavailable
    non-JSON body                    -> MalformedResponse
    Google OVER_QUERY_LIMIT          -> RateLimited
    Google REQUEST_DENIED, etc.      -> ProviderUnavailable
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from provider_health import record_call
from search_models import (
    Coordinate,
    MalformedResponse,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from search_trace import get_trace

logger = logging.getLogger(__name__)

# Google statuses that mean "request worked, maybe nothing matched".
_GOOGLE_OK_STATUSES = ("OK", "ZERO_RESULTS")


class _ProviderClient:
    """Shared request/trace plumbing for provider clients."""

    SERVICE = ""
    DEFAULT_TIMEOUT = 10

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        return {}

    def _traced_request(
        self,
        endpoint_name: str,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Issue one HTTP request with trace recording and error mapping."""
        t0 = time.time()
        trace = get_trace()
        # Fresh session per request: clients are shared across worker threads.
        session = requests.Session()
        session.trust_env = False
        try:
            response = session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            elapsed_ms = int((time.time() - t0) * 1000)
            self._record(trace, endpoint_name, elapsed_ms, 0, "timeout", success=False)
            raise ProviderTimeout(
                f"{self.SERVICE} {endpoint_name} timed out after {self.timeout}s"
            )
        except requests.exceptions.RequestException as e:
            elapsed_ms = int((time.time() - t0) * 1000)
            self._record(trace, endpoint_name, elapsed_ms, 0, "exception", success=False, error=str(e))
            raise ProviderUnavailable(f"{self.SERVICE} {endpoint_name} request failed: {e}") from e
        finally:
            session.close()

        elapsed_ms = int((time.time() - t0) * 1000)
        status_code = response.status_code

        if status_code == 429:
            self._record(trace, endpoint_name, elapsed_ms, 429, "rate_limit", success=False)
            raise RateLimited(f"{self.SERVICE} {endpoint_name} HTTP 429")
        if status_code >= 400:
            self._record(trace, endpoint_name, elapsed_ms, status_code, "http_error", success=False)
            raise ProviderUnavailable(f"{self.SERVICE} {endpoint_name} HTTP {status_code}")

        try:
            data = response.json()
        except ValueError:
            self._record(trace, endpoint_name, elapsed_ms, status_code, "parse_error", success=False)
            raise MalformedResponse(
                f"{self.SERVICE} {endpoint_name} returned non-JSON (HTTP {status_code})"
            )

        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        self._record(trace, endpoint_name, elapsed_ms, status_code, provider_status, success=True)
        return data

    def _record(
        self,
        trace,
        endpoint_name: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        if trace:
            trace.record_api_call(
                service=self.SERVICE,
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                provider_status=provider_status,
            )
        record_call(self.SERVICE, success, elapsed_ms, error or (None if success else provider_status))


# =============================================================================
# Google Maps
# =============================================================================

class GoogleMapsClient(_ProviderClient):
    """Client for the Google Geocoding, Directions and Places web services."""

    SERVICE = "google_maps"
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"

    def _get(self, endpoint_name: str, path: str, params: dict) -> Dict[str, Any]:
        params = dict(params, key=self.api_key)
        data = self._traced_request(endpoint_name, "GET", f"{self.base_url}/{path}", params=params)
        if not isinstance(data, dict):
            raise MalformedResponse(f"Google {endpoint_name} returned {type(data).__name__}, expected object")
        return data

    @staticmethod
    def _check_status(data: Dict[str, Any], endpoint_name: str, ok=_GOOGLE_OK_STATUSES) -> str:
        status = data.get("status")
        if status in ok:
            return status
        if status == "OVER_QUERY_LIMIT":
            raise RateLimited(f"Google {endpoint_name}: OVER_QUERY_LIMIT")
        message = data.get("error_message") or ""
        raise ProviderUnavailable(f"Google {endpoint_name} failed: {status} {message}".strip())

    def geocode(self, address: str, bounds: Optional[Tuple[Coordinate, Coordinate]] = None) -> List[Dict]:
        """Geocoding results for *address*; empty list on ZERO_RESULTS.

        bounds: optional (southwest, northeast) bias box.
        """
        params = {"address": address}
        if bounds:
            sw, ne = bounds
            params["bounds"] = f"{sw.latitude},{sw.longitude}|{ne.latitude},{ne.longitude}"
        data = self._get("geocode", "geocode/json", params)
        self._check_status(data, "geocode")
        return data.get("results", [])

    def directions(
        self,
        origin: Coordinate,
        destination: Coordinate,
        mode: str,
        alternatives: bool = True,
    ) -> Dict[str, Any]:
        """Raw Directions payload.  NOT_FOUND / ZERO_RESULTS return no routes."""
        params = {
            "origin": f"{origin.latitude},{origin.longitude}",
            "destination": f"{destination.latitude},{destination.longitude}",
            "mode": mode,
            "alternatives": "true" if alternatives else "false",
        }
        data = self._get("directions", "directions/json", params)
        self._check_status(data, "directions", ok=("OK", "ZERO_RESULTS", "NOT_FOUND"))
        return data

    def places_nearby(
        self,
        lat: float,
        lng: float,
        radius_meters: int = 1500,
        keyword: Optional[str] = None,
        place_type: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of Nearby Search.  Returns the raw payload (results + next_page_token)."""
        if page_token:
            # Google ignores all other parameters when a page token is present.
            params = {"pagetoken": page_token}
        else:
            params = {"location": f"{lat},{lng}", "radius": radius_meters}
            if keyword:
                params["keyword"] = keyword
            if place_type:
                params["type"] = place_type
        data = self._get("places_nearby", "place/nearbysearch/json", params)
        self._check_status(data, "places_nearby")
        return data

    def place_details(self, place_id: str, fields: Optional[Sequence[str]] = None) -> Dict:
        """Get detailed information about a place"""
        default_fields = [
            "place_id",
            "name",
            "formatted_address",
            "geometry",
            "rating",
            "user_ratings_total",
            "photos",
            "website",
            "vicinity",
            "formatted_phone_number",
        ]
        params = {"place_id": place_id, "fields": ",".join(fields or default_fields)}
        data = self._get("place_details", "place/details/json", params)
        self._check_status(data, "place_details", ok=("OK",))
        return data.get("result", {})


# =============================================================================
# Nominatim (OpenStreetMap address lookup)
# =============================================================================

class NominatimClient(_ProviderClient):
    SERVICE = "nominatim"
    DEFAULT_TIMEOUT = 10

    def __init__(self, user_agent: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(timeout)
        self.user_agent = user_agent or os.environ.get(
            "NOMINATIM_USER_AGENT", "RouteApartmentFinder/1.0"
        )
        self.base_url = base_url or os.environ.get(
            "NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org"
        )

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent}

    def search(
        self,
        query: str,
        viewbox: Optional[Tuple[Coordinate, Coordinate]] = None,
        limit: int = 1,
    ) -> List[Dict]:
        """Raw Nominatim matches for *query* (best first).

        viewbox: optional (southwest, northeast); results are bounded to it.
        """
        params: Dict[str, Any] = {"q": query, "format": "json", "limit": limit, "addressdetails": 1}
        if viewbox:
            sw, ne = viewbox
            params["viewbox"] = f"{sw.longitude},{ne.latitude},{ne.longitude},{sw.latitude}"
            params["bounded"] = 1
        data = self._traced_request("search", "GET", f"{self.base_url}/search", params=params)
        if not isinstance(data, list):
            raise MalformedResponse(f"Nominatim search returned {type(data).__name__}, expected list")
        return data


# =============================================================================
# OpenRouteService (directions)
# =============================================================================

class OpenRouteServiceClient(_ProviderClient):
    SERVICE = "openrouteservice"
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.api_key = api_key
        self.base_url = base_url or "https://api.openrouteservice.org"

    def directions(self, origin: Coordinate, destination: Coordinate, profile: str) -> Dict[str, Any]:
        """Raw GeoJSON FeatureCollection for one route (coordinates are lng,lat)."""
        params = {
            "api_key": self.api_key,
            "start": f"{origin.longitude},{origin.latitude}",
            "end": f"{destination.longitude},{destination.latitude}",
        }
        data = self._traced_request(
            "directions", "GET", f"{self.base_url}/v2/directions/{profile}", params=params,
        )
        if not isinstance(data, dict):
            raise MalformedResponse(f"OpenRouteService returned {type(data).__name__}, expected object")
        return data

