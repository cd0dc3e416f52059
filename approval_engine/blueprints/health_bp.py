"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — dependency status (database, approval engine wiring)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from approval_engine.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


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
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Approval engine ──────────────────────────────────────────────
    wiring = current_app.extensions.get("approval_engine")
    if wiring:
        checks["approval_engine"] = {
            "status": "ok",
            "approver_directory": type(wiring["approver_directory"]).__name__,
            "document_directory": type(wiring["document_directory"]).__name__,
            "dispatcher": type(wiring["dispatcher"]).__name__,
        }
    else:
        checks["approval_engine"] = {"status": "error", "detail": "engine not initialised"}
        overall = False

    checks["app"] = {
        "name": "Contractor Document Approval Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
