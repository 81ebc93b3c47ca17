"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - process is up (load balancer probe)
    GET /api/v1/health/live   - database reachable, incident schema present,
                                identity exchange configured
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from ovr.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

REQUIRED_TABLES = (
    "users", "incidents", "investigations", "corrective_actions", "shared_access", "incident_comments",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _database_check() -> dict:
    try:
        started = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        latency = round((time.perf_counter() - started) * 1000, 1)
        missing = [t for t in REQUIRED_TABLES if not inspect(db.engine).has_table(t)]
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    if missing:
        return {"status": "error", "latency_ms": latency, "missing_tables": missing}
    return {"status": "ok", "latency_ms": latency}


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _database_check(),
        "identity_provider": {
            "status": "ok" if current_app.config.get("IDP_SHARED_SECRET") else "unconfigured",
            "audience": current_app.config.get("IDP_AUDIENCE"),
        },
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
