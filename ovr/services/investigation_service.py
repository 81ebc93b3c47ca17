"""
Investigation Service: findings drafts, investigator assignment, submission.

The Investigation row is created by the lifecycle service when the incident
first enters ``investigating``. Investigators (assigned users or holders of an
accepted ``investigator`` share token) draft findings here and submit them;
submission locks the row and moves the incident to ``qi_final_actions``
through the ``submit_findings`` transition.
"""

import logging
from datetime import datetime, timezone

from ovr.access_control import can_perform
from ovr.auth import INVESTIGATOR, AuthContext, effective_roles
from ovr.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import write_audit
from ovr.models.auth import User
from ovr.models.incident import CAUSE_CLASSIFICATIONS, Incident, Investigation
from ovr.services.incident_lifecycle import apply_transition
from ovr.services.incident_service import visibility_filter
from ovr.utils.helpers import atomic, commit_or_raise, require_text
from ovr.workflow.status import IncidentStatus

logger = logging.getLogger(__name__)

FINDINGS_MIN = 100
PROBLEMS_MIN = 50
CAUSE_DETAILS_MIN = 50

DRAFT_FIELDS = (
    "findings",
    "problems_identified",
    "cause_classification",
    "cause_details",
    "prevention_recommendation",
)


def _is_investigator(investigation: Investigation, ctx: AuthContext) -> bool:
    return INVESTIGATOR in effective_roles(investigation.incident, ctx)


def _can_view(investigation: Investigation, ctx: AuthContext) -> bool:
    if can_perform(ctx.roles, "api", "investigations", "view"):
        return True
    if ctx.grants_for(investigation.incident_id, "investigation", investigation.id):
        return True
    if _is_investigator(investigation, ctx):
        return True
    condition = visibility_filter(ctx)
    if condition is None:
        return True
    return (
        Incident.query.filter(Incident.id == investigation.incident_id, condition).first()
        is not None
    )


def get_investigation(investigation_id: int, ctx: AuthContext) -> Investigation:
    """Load an investigation the caller may see, or raise NotFoundError."""
    investigation = db.session.get(Investigation, investigation_id)
    if investigation is None or not _can_view(investigation, ctx):
        raise NotFoundError(resource="Investigation", resource_id=investigation_id)
    return investigation


def investigation_detail(investigation: Investigation, ctx: AuthContext) -> dict:
    result = investigation.to_dict()
    editable = (
        not investigation.is_submitted
        and investigation.incident.status == IncidentStatus.INVESTIGATING.value
        and can_perform(ctx.roles, "api", "investigations", "edit",
                        _is_investigator(investigation, ctx))
    )
    result["incident_status"] = investigation.incident.status
    result["can_edit"] = editable
    return result


def _require_editable(investigation: Investigation, ctx: AuthContext, action: str):
    is_investigator = _is_investigator(investigation, ctx)
    if not can_perform(ctx.roles, "api", "investigations", action, is_investigator):
        raise AuthorizationError("Only QI staff or an assigned investigator can do this")
    if investigation.is_submitted:
        raise ConflictError("Investigation already submitted and is read-only",
                            current_status=investigation.incident.status)
    if investigation.incident.status != IncidentStatus.INVESTIGATING.value:
        raise ConflictError("Incident is not under investigation",
                            current_status=investigation.incident.status)


def _validate_classification(value, errors):
    if value in (None, ""):
        return None
    if value not in CAUSE_CLASSIFICATIONS:
        errors["cause_classification"] = (
            f"cause_classification must be one of: {', '.join(sorted(CAUSE_CLASSIFICATIONS))}"
        )
        return None
    return value


def update_draft(investigation_id: int, data: dict, ctx: AuthContext) -> Investigation:
    """Save work-in-progress findings. No minimum lengths until submission."""
    investigation = get_investigation(investigation_id, ctx)
    _require_editable(investigation, ctx, "edit")

    unknown = sorted(set(data) - set(DRAFT_FIELDS))
    if unknown:
        raise ValidationError("Fields cannot be edited", details={f: "not editable" for f in unknown})

    errors: dict = {}
    clean = {}
    for field in DRAFT_FIELDS:
        if field not in data:
            continue
        if field == "cause_classification":
            clean[field] = _validate_classification(data[field], errors)
        else:
            clean[field] = require_text(data, field, errors, required=False)
    if errors:
        raise ValidationError("Invalid investigation", details=errors)

    diff = {}
    for field, value in clean.items():
        if getattr(investigation, field) != value:
            diff[field] = {"old": getattr(investigation, field), "new": value}
            setattr(investigation, field, value)
    if diff:
        write_audit(
            entity_type="investigation",
            entity_id=investigation.id,
            incident_id=investigation.incident_id,
            action="investigation.update",
            actor=ctx.email or "system",
            actor_user_id=ctx.user_id,
            diff=diff,
        )
        commit_or_raise()
    return investigation


def assign_investigators(investigation_id: int, user_ids, ctx: AuthContext) -> Investigation:
    """Add investigators (existing, active users). Already assigned ids are ignored."""
    investigation = get_investigation(investigation_id, ctx)
    if not can_perform(ctx.roles, "api", "investigations", "assign_investigators"):
        raise AuthorizationError("Not allowed to assign investigators")
    if investigation.is_submitted:
        raise ConflictError("Investigation already submitted and is read-only",
                            current_status=investigation.incident.status)
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("user_ids must be a non-empty list", details={"user_ids": "required"})

    current = {u.id for u in investigation.investigators}
    added = []
    missing = []
    for raw in user_ids:
        try:
            uid = int(raw)
        except (TypeError, ValueError):
            missing.append(raw)
            continue
        user = db.session.get(User, uid)
        if user is None or not user.is_active:
            missing.append(raw)
            continue
        if uid not in current:
            investigation.investigators.append(user)
            current.add(uid)
            added.append(uid)
    if missing:
        db.session.rollback()
        raise ValidationError("Unknown or inactive users", details={"user_ids": missing})

    if added:
        write_audit(
            entity_type="investigation",
            entity_id=investigation.id,
            incident_id=investigation.incident_id,
            action="investigation.assign",
            actor=ctx.email or "system",
            actor_user_id=ctx.user_id,
            diff={"investigators": {"old": None, "new": added}},
        )
        commit_or_raise()
        logger.info("Investigation %s: investigators %s assigned", investigation.id, added,
                    extra={"incident_id": investigation.incident_id, "user_id": ctx.user_id})
    return investigation


def submit_findings(investigation_id: int, data: dict, ctx: AuthContext,
                    *, expected_version: int | None = None) -> dict:
    """
    Final submission: validate, lock the investigation and move the incident
    to ``qi_final_actions`` in one commit.

    Fields in ``data`` override the saved draft. Replaying a submission that
    already went through is a no-op success (``transition.changed`` False).

    Returns:
        {"investigation": {...}, "transition": {...}}
    """
    investigation = get_investigation(investigation_id, ctx)
    incident = investigation.incident
    if investigation.is_submitted and incident.status == IncidentStatus.QI_FINAL_ACTIONS.value:
        if not can_perform(ctx.roles, "api", "investigations", "submit",
                           _is_investigator(investigation, ctx)):
            raise AuthorizationError("Only QI staff or an assigned investigator can do this")
        logger.info("Findings for %s already submitted, replay ignored", incident.id,
                    extra={"incident_id": incident.id, "user_id": ctx.user_id})
        return {
            "investigation": investigation.to_dict(),
            "transition": {
                "incident_id": incident.id,
                "previous_status": incident.status,
                "new_status": incident.status,
                "action": "submit_findings",
                "changed": False,
            },
        }
    _require_editable(investigation, ctx, "submit")

    merged = {f: data.get(f, getattr(investigation, f)) for f in DRAFT_FIELDS}
    errors: dict = {}
    findings = require_text(merged, "findings", errors, min_len=FINDINGS_MIN)
    problems = require_text(merged, "problems_identified", errors, min_len=PROBLEMS_MIN)
    if not merged.get("cause_classification"):
        errors["cause_classification"] = "cause_classification is required"
        classification = None
    else:
        classification = _validate_classification(merged["cause_classification"], errors)
    details = require_text(merged, "cause_details", errors, min_len=CAUSE_DETAILS_MIN)
    prevention = require_text(merged, "prevention_recommendation", errors, required=False)
    if errors:
        raise ValidationError("Investigation is incomplete", details=errors)

    with atomic():
        investigation.findings = findings
        investigation.problems_identified = problems
        investigation.cause_classification = classification
        investigation.cause_details = details
        investigation.prevention_recommendation = prevention
        investigation.submitted_at = datetime.now(timezone.utc)
        investigation.submitted_by_id = ctx.user_id
        investigation.submitted_by_email = ctx.email
        write_audit(
            entity_type="investigation",
            entity_id=investigation.id,
            incident_id=incident.id,
            action="investigation.submit",
            actor=ctx.email or "system",
            actor_user_id=ctx.user_id,
            diff={"submitted_at": {"old": None, "new": investigation.submitted_at}},
        )
        transition = apply_transition(
            incident, "submit_findings", ctx, expected_version=expected_version
        )
    commit_or_raise()
    return {"investigation": investigation.to_dict(), "transition": transition}
