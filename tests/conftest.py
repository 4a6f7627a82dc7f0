"""Shared fixtures for the route apartment finder test suite.

Process-wide state (caches, call budget, Overpass client, provider health,
trace context) is reset around every test so tests never see each other's
cache hits.
"""

import os

import pytest

# Provider credentials must never leak into tests from a developer .env.
for _var in ("GOOGLE_MAPS_API_KEY", "OPENROUTESERVICE_API_KEY", "SENTRY_DSN", "GEOCODE_VIEWBOX"):
    os.environ.pop(_var, None)

from overpass_http import reset_overpass_client  # noqa: E402
from provider_health import reset_monitor  # noqa: E402
from search_cache import SearchServices, reset_services  # noqa: E402
from search_trace import clear_trace  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_process_state():
    reset_services()
    reset_overpass_client()
    reset_monitor()
    clear_trace()
    yield
    clear_trace()


@pytest.fixture()
def services():
    """An isolated SearchServices instance with default limits."""
    return SearchServices()


@pytest.fixture()
def client():
    """Flask test client."""
    from app import app

    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
