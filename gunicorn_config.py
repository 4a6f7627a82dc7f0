"""
Gunicorn config.  Each worker process starts with empty caches, a fresh
call budget and its own Overpass spacing lock (post_fork).

when_ready hook checks /healthz against localhost once the server is
accepting connections.
"""

import logging
import os
import threading


def when_ready(server):
    """Probe /healthz in a background thread once gunicorn is listening."""
    port = os.environ.get("PORT", "8000")
    url = f"http://127.0.0.1:{port}/healthz"

    def _probe():
        import time
        import requests

        time.sleep(2)  # brief grace period for workers to finish forking
        logger = logging.getLogger("gunicorn.error")
        try:
            resp = requests.get(url, timeout=5)
            logger.info("Post-deploy health check %s -> HTTP %d", url, resp.status_code)
        except requests.exceptions.RequestException:
            logger.exception("Post-deploy health check failed against %s", url)

    t = threading.Thread(target=_probe, daemon=True)
    t.start()


def post_fork(server, worker):
    """Reset process-wide search state inherited from the master."""
    from overpass_http import reset_overpass_client
    from provider_health import reset_monitor
    from search_cache import reset_services

    reset_services()
    reset_overpass_client()
    reset_monitor()
