"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — simple 200 for load balancers
    GET /api/v1/health/ready  — same, kept for orchestrator readiness checks
    GET /api/v1/health/live   — dependency status (DB, rate-limit store)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from npd_tracker.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check: always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Rate-limit store ─────────────────────────────────────────────
    storage_uri = current_app.config.get("RATELIMIT_STORAGE_URI") or ""
    if storage_uri.startswith("redis"):
        import redis as redis_lib
        try:
            t0 = time.perf_counter()
            r = redis_lib.from_url(storage_uri, socket_timeout=2)
            r.ping()
            redis_ms = (time.perf_counter() - t0) * 1000
            checks["redis"] = {"status": "ok", "latency_ms": round(redis_ms, 1)}
        except redis_lib.RedisError as exc:
            checks["redis"] = {"status": "error", "detail": str(exc)}
            overall = False
    else:
        checks["redis"] = {"status": "skipped", "detail": f"storage {storage_uri or 'memory://'}"}

    checks["app"] = {
        "name": "NPD Tracker",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
