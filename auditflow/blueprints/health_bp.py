"""
Health probes.

    GET /api/v1/health/ready   process is up and serving
    GET /api/v1/health/live    database round trip; 503 when it fails
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from auditflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Database probe failed: %s", exc)
        database = {"status": "error", "detail": exc.__class__.__name__}
    else:
        database = {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}

    healthy = database["status"] == "ok"
    body = {"status": "healthy" if healthy else "degraded", "checks": {"database": database}}
    return jsonify(body), 200 if healthy else 503
