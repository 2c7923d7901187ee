"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - simple 200 for load balancers
    GET /api/v1/health/live   - detailed system health (DB, catalogs)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from diagnostic.core.exceptions import CatalogIntegrityError
from diagnostic.models import db
from diagnostic.services import catalog_service

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe - always 200 if app is running."""
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
        logger.error("Health check - database failed: %s", exc)

    # ── Catalogs ─────────────────────────────────────────────────────
    try:
        catalogs = catalog_service.load_all_catalogs()
        checks["catalogs"] = {
            "status": "ok",
            "action_catalog": catalogs["actions"].version,
            "cause_catalog": catalogs["causes"].version,
            "actions": len(catalogs["actions"].items),
            "gaps": len(catalogs["causes"].gaps),
        }
    except CatalogIntegrityError as exc:
        checks["catalogs"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check - catalogs failed: %s", exc)

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Business Diagnostic Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
