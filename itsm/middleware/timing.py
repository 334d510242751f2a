"""
Request timing middleware.

Every response carries ``X-Request-ID`` (echoed from the caller or newly
minted) and ``X-Request-Duration-Ms``. Requests that touch a single change
are logged with its id, so an API call and the scheduler pass that later
acts on the same change share a searchable field.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Health checks are polled every few seconds; logging them is noise
_QUIET_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000


def _request_fields(response, duration_ms: float) -> dict:
    view_args = request.view_args or {}
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": g.get("request_id"),
        "actor_id": g.get("actor_id"),
        "change_id": view_args.get("change_id"),
    }


def init_request_timing(app: Flask):
    """Register the before/after hooks on ``app``."""

    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        started = g.get("request_started")
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id") or ""
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        fields = _request_fields(response, duration_ms)
        if response.status_code >= 500:
            level = logging.ERROR
        elif duration_ms > SLOW_THRESHOLD_MS:
            level = logging.WARNING
        else:
            level = logging.DEBUG
        logger.log(level, "%s %s -> %d (%.0fms)",
                   request.method, request.path, response.status_code, duration_ms, extra=fields)
        return response
