"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        - simple 200 for load balancers
    GET /api/v1/health/live   - database (and Redis, when configured) status
"""

import logging
import time

import redis
from flask import Blueprint, current_app, jsonify

from tracker.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe: always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        checks["database"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check - database failed: %s", exc)

    redis_url = current_app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            t0 = time.perf_counter()
            redis.from_url(redis_url, socket_timeout=2).ping()
            checks["redis"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
        except redis.RedisError as exc:
            # Redis only backs rate limiting; report it without failing overall
            checks["redis"] = {"status": "error", "detail": str(exc)}
    else:
        checks["redis"] = {"status": "skipped", "detail": "no REDIS_URL configured"}

    status_code = 200 if overall else 503
    return jsonify({"status": "healthy" if overall else "degraded", "checks": checks}), status_code
