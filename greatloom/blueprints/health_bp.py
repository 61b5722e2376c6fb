"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed system health (DB, loom lock, window)
"""

import logging
import time
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify

from greatloom.models import db
from greatloom.models.scheduling import LoomLock
from greatloom.services.loom_lock import LOOM_WRITES
from greatloom.services.window_config import get_window_config

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
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
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Loom writer lock ─────────────────────────────────────────────
    if overall:
        lock = db.session.get(LoomLock, LOOM_WRITES)
        if lock is None:
            checks["loom_lock"] = {"status": "free"}
        else:
            expires_at = lock.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            checks["loom_lock"] = {
                "status": "stale" if expires_at < datetime.now(timezone.utc) else "held",
                "holder": lock.holder,
                "expires_at": expires_at.isoformat(),
            }
        checks["window"] = get_window_config().to_dict()

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Great Loom",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "timezone": current_app.config.get("LOOM_TIMEZONE"),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
