import os
import logging
import uuid

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from apartment_finder import build_finder_from_env
from maps_clients import GoogleMapsClient
from place_details import get_place_details
from provider_health import get_status
from search_cache import get_services
from search_models import (
    ApartmentSearchError,
    GeocodeFailure,
    InvalidSearchInput,
    LocationNotFound,
    ProviderUnavailable,
    RouteUnavailable,
    search_result_to_dict,
)
from search_trace import TraceContext, clear_trace, set_trace

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN (unset in local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            expected = (InvalidSearchInput, LocationNotFound, GeocodeFailure, ProviderUnavailable)
            if exc_type is not None and issubclass(exc_type, expected):
                sentry_sdk.add_breadcrumb(
                    category="search",
                    message=str(exc_value) if exc_value else exc_type.__name__,
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RELEASE_SHA"),
        environment=os.environ.get("APP_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind a reverse proxy: rewrite remote_addr so rate limits see the client IP.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every search fans out into dozens of metered provider calls.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SEARCH = os.environ.get("RATE_LIMIT_SEARCH", "20/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Routing falls back to OpenRouteService or straight-line estimates, "
        "place search uses Overpass, and place details are unavailable."
    )


def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = request.headers.get("X-Request-ID") or _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


def _error(message, status, **extra):
    body = {"error": message, "request_id": getattr(g, "request_id", "unknown")}
    body.update(extra)
    return jsonify(body), status


def _status_for(exc: ApartmentSearchError) -> int:
    if isinstance(exc, InvalidSearchInput):
        return 400
    if isinstance(exc, LocationNotFound):
        return 404
    if isinstance(exc, (RouteUnavailable, GeocodeFailure, ProviderUnavailable)):
        return 502
    return 500


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@app.route("/api/search", methods=["POST"])
@limiter.limit(RATE_LIMIT_SEARCH)
def api_search():
    """Find apartments along a route.

    Accepts JSON: {"origin", "destination", "travel_mode"?, "route_index"?,
    "max_distance"?, "debug"?}
    """
    data = request.get_json(silent=True) or {}
    request_id = g.request_id
    origin = data.get("origin")
    destination = data.get("destination")
    logger.info(
        "[%s] POST /api/search origin=%r destination=%r mode=%s",
        request_id, origin, destination, data.get("travel_mode", "DRIVE"),
    )

    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        finder = build_finder_from_env()
        result = finder.get_route_and_apartments(
            origin,
            destination,
            data.get("travel_mode", "DRIVE"),
            data.get("route_index", 0),
            data.get("max_distance"),
        )
        body = search_result_to_dict(result)
        body["request_id"] = request_id
        if data.get("debug"):
            body["trace"] = trace_ctx.full_trace_dict()
        return jsonify(body)
    except ApartmentSearchError as e:
        status = _status_for(e)
        logger.warning("[%s] search failed (%s): %s", request_id, type(e).__name__, e)
        return _error(str(e), status)
    except Exception:
        logger.exception("[%s] unexpected search failure", request_id)
        return _error("Unexpected failure", 500)
    finally:
        trace_ctx.log_summary()
        clear_trace()


# ---------------------------------------------------------------------------
# Place details
# ---------------------------------------------------------------------------

@app.route("/api/place-details")
def api_place_details():
    place_id = request.args.get("id", "").strip()
    if not place_id:
        return _error("Place ID is required", 400)

    api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
    if not api_key:
        return _error("Place details are not configured", 503)

    services = get_services()
    cached = place_id in services.details_cache
    try:
        details = get_place_details(place_id, GoogleMapsClient(api_key), services)
    except InvalidSearchInput as e:
        return _error(str(e), 400)
    except ApartmentSearchError as e:
        logger.warning("[%s] place details failed for %s: %s", g.request_id, place_id, e)
        return _error("Failed to fetch place details", 502)

    return jsonify({
        "place": {
            "place_id": details.place_id,
            "name": details.name,
            "formatted_address": details.formatted_address,
            "location": details.coordinate.to_dict(),
            "rating": details.rating,
            "user_ratings_total": details.user_ratings_total,
            "photos": list(details.photos),
            "website": details.website,
            "vicinity": details.vicinity,
            "phone": details.phone,
        },
        "cached": cached,
    })


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Provider health from recent traffic, plus cache and budget stats."""
    providers = get_status()
    down = [name for name, s in providers.items() if s["status"] == "down"]
    return jsonify({
        "status": "degraded" if down else "ok",
        "providers": providers,
        "services": get_services().stats(),
    })


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Too many requests. Please wait and try again."}), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Unexpected failure"}), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
