"""Tests for the Flask endpoints in app.py.

The finder is replaced with a stub so these cover request parsing, status
mapping and response shape only.
"""

from unittest.mock import MagicMock, patch

import pytest

from router import synthetic_route
from search_models import (
    BUCKETS,
    Coordinate,
    GeocodeFailure,
    InvalidSearchInput,
    LocationNotFound,
    PlaceDetails,
    ProviderUnavailable,
    RouteUnavailable,
    SearchResult,
)

RICE = Coordinate(29.7174, -95.4018)
UH = Coordinate(29.7199, -95.3422)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    from app import limiter

    limiter.reset()
    yield


def _finder(result=None, error=None):
    finder = MagicMock()
    if error is not None:
        finder.get_route_and_apartments.side_effect = error
    else:
        route = synthetic_route(RICE, UH, "DRIVE")
        finder.get_route_and_apartments.return_value = result or SearchResult(
            route_options=[route], selected_route=route, warnings=list(route.warnings),
        )
    return finder


def _search(client, finder, body=None):
    with patch("app.build_finder_from_env", return_value=finder):
        return client.post("/api/search", json=body or {
            "origin": "Rice University",
            "destination": "University of Houston",
        })


class TestSearch:
    def test_success_shape(self, client):
        finder = _finder()
        resp = _search(client, finder)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["route_source"] == "synthetic"
        assert set(body["apartments"]) == set(BUCKETS)
        assert body["total_found"] == 0
        assert body["request_id"] == resp.headers["X-Request-ID"]
        assert "trace" not in body
        finder.get_route_and_apartments.assert_called_once_with(
            "Rice University", "University of Houston", "DRIVE", 0, None,
        )

    def test_passes_options(self, client):
        finder = _finder()
        _search(client, finder, {
            "origin": "A", "destination": "B", "travel_mode": "TRANSIT",
            "route_index": 2, "max_distance": "≤2mi",
        })
        finder.get_route_and_apartments.assert_called_once_with("A", "B", "TRANSIT", 2, "≤2mi")

    def test_debug_includes_trace(self, client):
        resp = _search(client, _finder(), {"origin": "A", "destination": "B", "debug": True})
        assert "trace" in resp.get_json()

    def test_request_id_echoed(self, client):
        with patch("app.build_finder_from_env", return_value=_finder()):
            resp = client.post(
                "/api/search", json={"origin": "A", "destination": "B"},
                headers={"X-Request-ID": "abc123"},
            )
        assert resp.get_json()["request_id"] == "abc123"

    @pytest.mark.parametrize("error,status", [
        (InvalidSearchInput("Origin is required"), 400),
        (LocationNotFound("origin", "asdkjfh"), 404),
        (GeocodeFailure("nominatim down"), 502),
        (ProviderUnavailable("google down"), 502),
        (RouteUnavailable("no provider"), 502),
    ])
    def test_error_mapping(self, client, error, status):
        resp = _search(client, _finder(error=error))
        assert resp.status_code == status
        body = resp.get_json()
        assert body["error"] == str(error)
        assert body["request_id"]

    def test_unexpected_error_is_generic(self, client):
        resp = _search(client, _finder(error=KeyError("secret internals")))
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "Unexpected failure"

    def test_non_json_body(self, client):
        finder = _finder(error=InvalidSearchInput("Origin is required"))
        with patch("app.build_finder_from_env", return_value=finder):
            resp = client.post("/api/search", data="not json", content_type="text/plain")
        assert resp.status_code == 400
        finder.get_route_and_apartments.assert_called_once_with(None, None, "DRIVE", 0, None)


class TestPlaceDetails:
    def test_missing_id(self, client):
        resp = client.get("/api/place-details")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Place ID is required"

    def test_not_configured(self, client):
        resp = client.get("/api/place-details?id=ChIJabc")
        assert resp.status_code == 503

    def test_success(self, client, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        details = PlaceDetails(place_id="ChIJabc", name="The Ivy", coordinate=Coordinate(29.74, -95.37),
                               rating=4.4, photos=("ref1",))
        with patch("app.get_place_details", return_value=details):
            resp = client.get("/api/place-details?id=ChIJabc")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["place"]["name"] == "The Ivy"
        assert body["place"]["location"] == {"lat": 29.74, "lng": -95.37}
        assert body["place"]["photos"] == ["ref1"]
        assert body["cached"] is False

    def test_overpass_id_rejected(self, client, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        resp = client.get("/api/place-details?id=overpass_way/42")
        assert resp.status_code == 400

    def test_provider_failure(self, client, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "k")
        with patch("app.get_place_details", side_effect=ProviderUnavailable("NOT_FOUND")):
            resp = client.get("/api/place-details?id=ChIJgone")
        assert resp.status_code == 502


class TestHealth:
    def test_ok_without_traffic(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "ok"
        assert "budget" in body["services"]

    def test_degraded_when_provider_down(self, client):
        from provider_health import record_call

        for _ in range(5):
            record_call("nominatim", False, 100, "timeout")
        body = client.get("/healthz").get_json()
        assert body["status"] == "degraded"
        assert body["providers"]["nominatim"]["status"] == "down"

    def test_unknown_route(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"
