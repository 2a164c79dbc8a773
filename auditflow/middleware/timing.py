"""
Request timing middleware.

Each request gets an id (the caller's ``X-Request-ID`` or a fresh one),
echoed back with ``X-Request-Duration-Ms``. API requests are logged with
the engagement id from the URL; requests over ``SLOW_REQUEST_MS`` log at
WARNING.
"""

import logging
import time
import uuid

from flask import g, request

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 1000


def _project_id():
    args = request.view_args or {}
    return args.get("project_id")


def init_request_timing(app):
    @app.before_request
    def _begin():
        g.started_at = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = g.pop("started_at", None)
        if started is None:
            return response
        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if request.blueprint == "health":
            return response
        if elapsed > SLOW_REQUEST_MS:
            level = logging.WARNING
        elif response.status_code >= 500:
            level = logging.ERROR
        else:
            level = logging.DEBUG
        logger.log(
            level, "%s %s -> %d", request.method, request.path, response.status_code,
            extra={
                "request_id": g.request_id,
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed,
                "project_id": _project_id(),
            },
        )
        return response
