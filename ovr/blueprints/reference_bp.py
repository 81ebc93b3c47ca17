"""
Reference Blueprint: status taxonomy and dashboard counts.

Endpoints:
  GET /api/v1/statuses  - public
  GET /api/v1/stats     - visibility-scoped counts
"""

from flask import Blueprint, jsonify

from ovr.auth import current_auth, require_user
from ovr.services.incident_lifecycle import transition_matrix
from ovr.services.stats_service import incident_stats
from ovr.workflow.status import list_statuses

reference_bp = Blueprint("reference", __name__, url_prefix="/api/v1")


@reference_bp.route("/statuses", methods=["GET"])
def statuses():
    """Every status with label, colour, terminal flag and the transition edges out of it."""
    matrix = transition_matrix()
    items = []
    for entry in list_statuses():
        entry["transitions"] = {
            action: target
            for (status, action), target in matrix.items()
            if status == entry["value"] and target is not None
        }
        items.append(entry)
    return jsonify({"items": items, "total": len(items)}), 200


@reference_bp.route("/stats", methods=["GET"])
@require_user
def stats():
    return jsonify(incident_stats(current_auth())), 200
