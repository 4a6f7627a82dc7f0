"""
End-to-end tests for the search pipeline with in-memory providers.

Geocoding, directions and place search are stubbed at the client level,
so everything between (caching, routing fallback, sampling, filtering,
dedupe, distance bucketing) runs for real.  Call counters on the stubs
stand in for network traffic.
"""

import json
import random
import sys
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

import apartment_finder
from apartment_finder import (
    ApartmentFinder,
    build_finder_from_env,
    format_result,
    parse_max_distance,
)
from geocoder import Geocoder
from place_providers import PlacePage, QUERY_TYPE, SearchQuery
from place_search import PlaceSearchEngine
from polyline_codec import encode
from router import Router, SYNTHETIC_WARNING
from search_config import SEARCH_CONFIG
from search_models import (
    BUCKET_1MI,
    BUCKET_2MI,
    BUCKET_3MI,
    BUCKETS,
    Coordinate,
    InvalidSearchInput,
    LocationNotFound,
    ProviderUnavailable,
    RawPlaceResult,
)

RICE = Coordinate(29.7174, -95.4018)
MIDTOWN = Coordinate(29.7185, -95.3700)
UH = Coordinate(29.7199, -95.3422)

KNOWN_PLACES = {
    "rice university, houston, tx": [{"lat": str(RICE.latitude), "lon": str(RICE.longitude)}],
    "university of houston, houston, tx": [{"lat": str(UH.latitude), "lon": str(UH.longitude)}],
}

CONFIG = replace(
    SEARCH_CONFIG,
    search=replace(SEARCH_CONFIG.search, keywords=("apartment",), sparse_threshold=0, max_retries=1),
)


def _place(name, lat, lng, place_id):
    return RawPlaceResult(
        provider="fake",
        place_id=place_id,
        name=name,
        coordinate=Coordinate(lat, lng),
        address=f"{place_id} Main St, Houston",
    )


NEARBY_RESULTS = [
    _place("Midtown Apartments", 29.7250, -95.3700, "p1"),
    _place("Montrose Lofts", 29.7450, -95.3900, "p2"),
    _place("Hilton Hotel Apartments Suites", 29.7190, -95.3710, "p3"),
    _place("Cypress Creek Apartments", 29.8500, -95.3700, "p4"),
    _place("Taqueria Arandas", 29.7180, -95.3650, "p5"),
]


class FakeProvider:
    name = "fake"
    paginates = False
    type_scoped = False
    default_query = SearchQuery(QUERY_TYPE, "residential_building")

    def __init__(self):
        self.calls = 0

    def search_page(self, coordinate, query, radius_m, page_token=None):
        self.calls += 1
        return PlacePage(list(NEARBY_RESULTS))


def _nominatim():
    client = MagicMock()
    client.search.side_effect = lambda query, viewbox=None, limit=1: KNOWN_PLACES.get(query.lower(), [])
    return client


def _google_directions():
    client = MagicMock()
    client.directions.return_value = {
        "status": "OK",
        "routes": [{
            "summary": "Bissonnet St",
            "overview_polyline": {"points": encode([RICE, MIDTOWN, UH])},
            "legs": [{
                "distance": {"text": "3.8 mi", "value": 6100},
                "duration": {"text": "14 mins", "value": 840},
                "steps": [],
            }],
        }],
    }
    return client


@pytest.fixture
def pipeline(services):
    nominatim = _nominatim()
    google = _google_directions()
    provider = FakeProvider()
    finder = ApartmentFinder(
        geocoder=Geocoder(services, nominatim=nominatim),
        router=Router(services, google=google),
        search_engine=PlaceSearchEngine(
            [provider], services, CONFIG.search, sleep=lambda s: None, rng=random.Random(0),
        ),
        services=services,
        config=CONFIG,
    )
    return finder, nominatim, google, provider


ORIGIN = "Rice University, Houston, TX"
DESTINATION = "University of Houston, Houston, TX"


class TestEndToEnd:
    def test_drive_route_with_bucketed_apartments(self, pipeline):
        finder, _, _, _ = pipeline
        result = finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE")

        assert len(result.route_options) >= 1
        assert result.route_source == "provider"
        assert set(result.apartments) == set(BUCKETS)
        listings = [l for b in BUCKETS for l in result.apartments[b]]
        assert result.total_found == len(listings)
        assert all(l.distance_to_route_miles <= 3.0 for l in listings)

        names = [l.place.name for l in listings]
        assert len(names) == len(set(names))
        assert "Midtown Apartments" in [l.place.name for l in result.apartments[BUCKET_1MI]]
        assert "Montrose Lofts" in [l.place.name for l in result.apartments[BUCKET_2MI]]
        # Hotel is excluded, far complex is beyond the cutoff, restaurant never matches.
        assert "Hilton Hotel Apartments Suites" not in names
        assert "Cypress Creek Apartments" not in names
        assert "Taqueria Arandas" not in names

        for bucket in BUCKETS:
            distances = [l.distance_to_route_miles for l in result.apartments[bucket]]
            assert distances == sorted(distances)

    def test_nonsense_origin_fails_before_routing(self, pipeline):
        finder, nominatim, google, provider = pipeline
        with pytest.raises(LocationNotFound) as exc_info:
            finder.get_route_and_apartments("asdkjfhaskdjfh", DESTINATION, "DRIVE")
        assert exc_info.value.role == "origin"
        assert nominatim.search.call_count == 1
        google.directions.assert_not_called()
        assert provider.calls == 0

    def test_unknown_destination(self, pipeline):
        finder, _, google, _ = pipeline
        with pytest.raises(LocationNotFound) as exc_info:
            finder.get_route_and_apartments(ORIGIN, "qqqqzzzz", "DRIVE")
        assert exc_info.value.role == "destination"
        google.directions.assert_not_called()

    def test_directions_failure_gives_synthetic_route(self, pipeline):
        finder, _, google, _ = pipeline
        google.directions.side_effect = ProviderUnavailable("REQUEST_DENIED")
        result = finder.get_route_and_apartments(ORIGIN, DESTINATION, "TRANSIT")
        assert result.route_source == "synthetic"
        assert result.selected_route.is_synthetic
        assert SYNTHETIC_WARNING in result.warnings

    def test_repeat_search_hits_caches(self, pipeline):
        finder, nominatim, google, provider = pipeline
        first = finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE")
        counts = (nominatim.search.call_count, google.directions.call_count, provider.calls)

        second = finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE")
        assert (nominatim.search.call_count, google.directions.call_count, provider.calls) == counts
        assert second.total_found == first.total_found

    def test_route_index_out_of_range_warns(self, pipeline):
        finder, _, _, _ = pipeline
        result = finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE", route_index=4)
        assert result.selected_route is result.route_options[0]
        assert any("out of range" in w for w in result.warnings)

    def test_max_distance_narrows_results(self, pipeline):
        finder, _, _, _ = pipeline
        result = finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE", max_distance=BUCKET_1MI)
        assert result.apartments[BUCKET_2MI] == []
        assert result.apartments[BUCKET_3MI] == []
        assert result.total_found == len(result.apartments[BUCKET_1MI])


class TestInputValidation:
    @pytest.mark.parametrize("origin,destination", [("", DESTINATION), (ORIGIN, "   "), (None, DESTINATION)])
    def test_missing_endpoint(self, pipeline, origin, destination):
        finder, nominatim, _, _ = pipeline
        with pytest.raises(InvalidSearchInput):
            finder.get_route_and_apartments(origin, destination)
        nominatim.search.assert_not_called()

    def test_unknown_mode(self, pipeline):
        finder, nominatim, _, _ = pipeline
        with pytest.raises(InvalidSearchInput):
            finder.get_route_and_apartments(ORIGIN, DESTINATION, "JETPACK")
        nominatim.search.assert_not_called()

    def test_non_integer_route_index(self, pipeline):
        finder, _, _, _ = pipeline
        with pytest.raises(InvalidSearchInput):
            finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE", route_index="1")


class TestParseMaxDistance:
    def test_default_is_outer_radius(self):
        assert parse_max_distance(None, CONFIG) == 3.0

    def test_bucket_labels(self):
        assert parse_max_distance(BUCKET_1MI, CONFIG) == 1.0
        assert parse_max_distance(BUCKET_2MI, CONFIG) == 2.0
        assert parse_max_distance(BUCKET_3MI, CONFIG) == 3.0

    def test_numbers(self):
        assert parse_max_distance(1.5, CONFIG) == 1.5
        assert parse_max_distance("2.5 mi", CONFIG) == 2.5

    def test_capped_at_outer_radius(self):
        assert parse_max_distance(10, CONFIG) == 3.0

    @pytest.mark.parametrize("value", [0, -1, "far", True])
    def test_invalid(self, value):
        with pytest.raises(InvalidSearchInput):
            parse_max_distance(value, CONFIG)


class TestBuildFinderFromEnv:
    def test_no_keys_uses_open_providers(self, services, monkeypatch):
        monkeypatch.delenv("APT_ENABLE_OVERPASS", raising=False)
        finder = build_finder_from_env(services=services)
        assert finder.geocoder.backend == "nominatim"
        assert finder.router.google is None
        assert [p.name for p in finder.search_engine.providers] == ["overpass"]
        assert finder.search_engine.providers[0].cache is services.overpass_cache

    def test_google_key(self, services, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        monkeypatch.delenv("APT_ENABLE_OVERPASS", raising=False)
        finder = build_finder_from_env(services=services)
        assert finder.router.google is not None
        assert [p.name for p in finder.search_engine.providers] == ["google"]

    def test_overpass_opt_in_with_google(self, services, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        monkeypatch.setenv("APT_ENABLE_OVERPASS", "1")
        finder = build_finder_from_env(services=services)
        assert [p.name for p in finder.search_engine.providers] == ["google", "overpass"]

    def test_google_geocoding(self, services, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        monkeypatch.setenv("GEOCODE_PROVIDER", "google")
        assert build_finder_from_env(services=services).geocoder.backend == "google"

    def test_ors_key(self, services, monkeypatch):
        monkeypatch.setenv("OPENROUTESERVICE_API_KEY", "ors")
        assert build_finder_from_env(services=services).router.ors is not None


class TestOutput:
    def test_format_result(self, pipeline):
        finder, _, _, _ = pipeline
        text = format_result(finder.get_route_and_apartments(ORIGIN, DESTINATION, "DRIVE"))
        assert "ROUTE: Bissonnet St" in text
        assert "Midtown Apartments" in text
        for bucket in BUCKETS:
            assert bucket in text

    def test_cli_json(self, pipeline, monkeypatch, capsys):
        finder, _, _, _ = pipeline
        monkeypatch.setattr(sys, "argv", ["apartment_finder.py", ORIGIN, DESTINATION, "--json"])
        with patch.object(apartment_finder, "build_finder_from_env", return_value=finder):
            apartment_finder.main()
        body = json.loads(capsys.readouterr().out)
        assert body["route_source"] == "provider"
        assert set(body["apartments"]) == set(BUCKETS)

    def test_cli_error_exits(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["apartment_finder.py", "nowhere", DESTINATION])
        with patch.object(
            apartment_finder, "get_route_and_apartments",
            side_effect=LocationNotFound("origin", "nowhere"),
        ):
            with pytest.raises(SystemExit) as exc_info:
                apartment_finder.main()
        assert exc_info.value.code == 1
        assert capsys.readouterr().out.startswith("Error:")
