"""Lazy Place Details lookup for a single listing (cached 30 minutes)."""

import logging
from typing import Any, Dict

from maps_clients import GoogleMapsClient
from search_cache import SearchServices
from search_models import Coordinate, InvalidSearchInput, MalformedResponse, PlaceDetails

logger = logging.getLogger(__name__)

DETAILS_FIELDS = (
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
)


def parse_place_details(raw: Dict[str, Any], place_id: str) -> PlaceDetails:
    if not isinstance(raw, dict):
        raise MalformedResponse("Place Details 'result' is not an object")
    loc = (raw.get("geometry") or {}).get("location") or {}
    try:
        coordinate = Coordinate(float(loc.get("lat", 0)), float(loc.get("lng", 0)))
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"Place Details geometry malformed: {e}") from e
    return PlaceDetails(
        place_id=raw.get("place_id") or place_id,
        name=raw.get("name") or "Unknown",
        coordinate=coordinate,
        formatted_address=raw.get("formatted_address") or "",
        rating=raw.get("rating"),
        user_ratings_total=raw.get("user_ratings_total"),
        photos=tuple(
            p["photo_reference"] for p in raw.get("photos") or []
            if isinstance(p, dict) and p.get("photo_reference")
        ),
        website=raw.get("website"),
        vicinity=raw.get("vicinity"),
        phone=raw.get("formatted_phone_number"),
    )


def get_place_details(place_id: str, client: GoogleMapsClient, services: SearchServices) -> PlaceDetails:
    """Details for a Google place id, served from the details cache when fresh."""
    place_id = (place_id or "").strip()
    if not place_id:
        raise InvalidSearchInput("Place ID is required")
    if place_id.startswith("overpass_"):
        raise InvalidSearchInput("Details are only available for Google places")

    cached = services.details_cache.get(place_id)
    if cached is not None:
        return cached

    raw = client.place_details(place_id, fields=DETAILS_FIELDS)
    details = parse_place_details(raw, place_id)
    services.details_cache.set(place_id, details)
    logger.info("Fetched place details for %s (%s)", place_id, details.name)
    return details
