"""
Coordinated Overpass API HTTP layer.

All Overpass requests go through this module.  It provides:
- In-memory TTL cache check before any HTTP request (keyed by query text)
- Process-local rate limiting: 1 request/second minimum spacing
- Thread-safe request execution (no shared requests.Session)
- Retry with exponential backoff plus jitter on 429/5xx/timeouts
- search_trace and provider_health integration

Rate limiting is per-process.  When self-hosting Overpass, set
OVERPASS_BASE_URL and lower MIN_SPACING.

Failures surface as the search error taxonomy: RateLimited when the
server keeps throttling, ProviderTimeout / ProviderUnavailable for
availability problems, MalformedResponse for a body that is not JSON.
"""

import hashlib
import logging
import os
import random
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from provider_health import record_call
from search_cache import TTLCache
from search_models import (
    MalformedResponse,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from search_trace import get_trace

logger = logging.getLogger(__name__)

SERVICE = "overpass"


def overpass_cache_key(overpass_ql: str) -> str:
    normalized = " ".join(overpass_ql.split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 25  # seconds
    MIN_SPACING = 1.0  # seconds between HTTP requests
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]  # seconds, before jitter
    RETRY_JITTER = 1.0

    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self._sleep = sleep
        self.base_url = base_url or os.environ.get(
            "OVERPASS_BASE_URL",
            "https://overpass-api.de/api/interpreter",
        )
        self.cache = cache if cache is not None else TTLCache("overpass", max_entries=500, ttl_s=600.0)

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
        cache: Optional[TTLCache] = None,
        retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query with cache-first, rate-limited HTTP.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier for trace attribution (e.g. "residential_around").
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.
            cache: Result cache for this call. Defaults to the client's own.
            retries: Retries after the first attempt. Defaults to MAX_RETRIES;
                callers that retry themselves pass 0.

        Returns:
            Parsed JSON response dict from Overpass.

        Raises:
            RateLimited: Overpass kept returning 429 or a rate-limit remark.
            ProviderTimeout: the last attempt timed out.
            ProviderUnavailable: non-retryable or persistent server error.
            MalformedResponse: the body was not a JSON object.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT
        if cache is None:
            cache = self.cache
        if retries is None:
            retries = self.MAX_RETRIES

        cache_key = overpass_cache_key(overpass_ql)
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        for attempt in range(1 + retries):
            try:
                result = self._do_request(overpass_ql, caller, timeout)
            except (RateLimited, ProviderTimeout, ProviderUnavailable) as e:
                if attempt < retries and self._is_retryable_error(e):
                    backoff = self.RETRY_BACKOFF[min(attempt, len(self.RETRY_BACKOFF) - 1)]
                    sleep_time = backoff + random.uniform(0, self.RETRY_JITTER)
                    logger.info(
                        "Overpass %s (attempt %d/%d), sleeping %.1fs before retry [caller=%s]",
                        type(e).__name__,
                        attempt + 1,
                        1 + retries,
                        sleep_time,
                        caller,
                    )
                    self._sleep(sleep_time)
                    continue
                raise
            cache.set(cache_key, result)
            return result

        raise ProviderUnavailable(f"Overpass query failed after all retries [caller={caller}]")

    def _wait_for_slot(self) -> None:
        with self._lock:
            now = time.monotonic()
            elapsed_since_last = now - self._last_request_time
            if elapsed_since_last < self.MIN_SPACING:
                self._sleep(self.MIN_SPACING - elapsed_since_last)
            self._last_request_time = time.monotonic()

    def _record(self, caller: str, elapsed_ms: int, status_code: int, provider_status: str,
                success: bool) -> None:
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service=SERVICE,
                endpoint=caller,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                provider_status=provider_status,
            )
        record_call(SERVICE, success, elapsed_ms, None if success else provider_status)

    def _do_request(self, overpass_ql: str, caller: str, timeout: int) -> Dict[str, Any]:
        """Make a single rate-limited HTTP request to Overpass."""
        self._wait_for_slot()

        start = time.monotonic()
        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.post(self.base_url, data={"data": overpass_ql}, timeout=timeout)
        except requests.exceptions.Timeout:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(caller, elapsed_ms, 0, "timeout", success=False)
            raise ProviderTimeout(f"Overpass request timeout after {timeout}s [caller={caller}]")
        except requests.exceptions.RequestException as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(caller, elapsed_ms, 0, "exception", success=False)
            raise ProviderUnavailable(f"Overpass request failed: {e} [caller={caller}]") from e
        finally:
            session.close()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status_code = resp.status_code

        if status_code == 429:
            self._record(caller, elapsed_ms, 429, "rate_limit", success=False)
            raise RateLimited(f"Overpass 429 Too Many Requests [caller={caller}]")
        if status_code == 504:
            self._record(caller, elapsed_ms, 504, "timeout", success=False)
            raise ProviderTimeout(f"Overpass 504 Gateway Timeout [caller={caller}]")
        if status_code >= 400:
            self._record(caller, elapsed_ms, status_code, "http_error", success=False)
            raise ProviderUnavailable(f"Overpass HTTP {status_code} [caller={caller}]")

        try:
            data = resp.json()
        except ValueError:
            self._record(caller, elapsed_ms, status_code, "parse_error", success=False)
            raise MalformedResponse(
                f"Overpass returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )
        if not isinstance(data, dict):
            self._record(caller, elapsed_ms, status_code, "parse_error", success=False)
            raise MalformedResponse(f"Overpass returned {type(data).__name__} [caller={caller}]")

        # Overpass reports some failures inside a 200 body.
        osm3s = data.get("osm3s", {}) or {}
        remark = str(osm3s.get("remark") or data.get("remark") or "")
        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            self._record(caller, elapsed_ms, status_code, "rate_limit", success=False)
            raise RateLimited(f"Overpass rate limit in response body [caller={caller}]")
        if any(s in remark_lower for s in ("runtime error", "timed out", "out of memory")):
            self._record(caller, elapsed_ms, status_code, "body_error", success=False)
            raise ProviderUnavailable(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]"
            )

        self._record(caller, elapsed_ms, status_code, "", success=True)
        return data

    @staticmethod
    def _is_retryable_error(e: Exception) -> bool:
        """Rate limits, timeouts, 5xx and server body errors are retryable. 4xx are not."""
        if isinstance(e, (RateLimited, ProviderTimeout)):
            return True
        msg = str(e).lower()
        if "server error" in msg:
            return True
        return any(f"http {code}" in msg for code in ("500", "502", "503"))


# Module-level singleton: all callers in this process share one spacing lock.
_client: Optional[OverpassHTTPClient] = None
_client_lock = threading.Lock()


def get_overpass_client() -> OverpassHTTPClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = OverpassHTTPClient()
        return _client


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[int] = None,
) -> Dict[str, Any]:
    """Module-level convenience function. All Overpass calls should use this."""
    return get_overpass_client().query(overpass_ql, caller=caller, timeout=timeout)


def reset_overpass_client() -> None:
    """Drop the shared client (and its cache); the next call builds a fresh one."""
    global _client
    with _client_lock:
        _client = None
