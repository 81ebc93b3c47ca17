"""
Incident Lifecycle Service

Manages incident status transitions with:
  - Transition table (INCIDENT_TRANSITIONS), total over (status, action)
  - Role checks against global + contextual roles
  - Payload validation per action
  - Idempotent replays (already at target → success, no write)
  - Preconditions (closure needs every corrective action closed)
  - Side effects (investigation row, QI bookkeeping, closure fields)
  - Audit trail via write_audit

Evaluation order is fixed: unknown action → roles → payload → already at
target → current status → preconditions → apply → audit → commit. A failure
at any step leaves the incident untouched.

Usage:
    from ovr.services.incident_lifecycle import transition_incident

    result = transition_incident(
        "OVR-2026-001", "qi_review.reject", ctx,
        {"rejection_reason": "Duplicate of an earlier report"},
    )
"""

import logging
from datetime import datetime, timezone

from ovr.auth import ADMINS, INVESTIGATOR, QI_CLOSERS, QI_STAFF, REPORTER, AuthContext, effective_roles
from ovr.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import write_audit
from ovr.models.incident import Incident, Investigation
from ovr.utils.helpers import atomic, commit_or_raise
from ovr.workflow.status import TERMINAL_STATUSES, IncidentStatus

logger = logging.getLogger(__name__)

S = IncidentStatus

NON_TERMINAL = tuple(s for s in IncidentStatus if s not in TERMINAL_STATUSES)

REJECTION_REASON_MIN = 20
CASE_REVIEW_MIN = 100
REPORTER_FEEDBACK_MIN = 50
FORCE_REASON_MIN = 10

# action → {"from": [...], "to": status | None, "roles": frozenset}
# "to" None means the target comes from the payload (force).
INCIDENT_TRANSITIONS = {
    "submit": {
        "from": [S.DRAFT],
        "to": S.SUBMITTED,
        "roles": frozenset({REPORTER}),
    },
    "qi_review.approve": {
        "from": [S.SUBMITTED],
        "to": S.INVESTIGATING,
        "roles": QI_STAFF,
    },
    "qi_review.reject": {
        "from": [S.SUBMITTED],
        "to": S.DRAFT,
        "roles": QI_STAFF,
    },
    "submit_findings": {
        "from": [S.INVESTIGATING],
        "to": S.QI_FINAL_ACTIONS,
        "roles": QI_STAFF | {INVESTIGATOR},
    },
    "begin_final_actions": {
        "from": [S.INVESTIGATING],
        "to": S.QI_FINAL_ACTIONS,
        "roles": QI_STAFF,
    },
    "request_final_review": {
        "from": [S.QI_FINAL_ACTIONS],
        "to": S.QI_FINAL_REVIEW,
        "roles": QI_STAFF,
    },
    "close": {
        "from": [S.QI_FINAL_ACTIONS, S.QI_FINAL_REVIEW],
        "to": S.CLOSED,
        "roles": QI_CLOSERS,
    },
    "force": {
        "from": list(NON_TERMINAL),
        "to": None,
        "roles": ADMINS,
    },
}

VALID_ACTIONS = frozenset(INCIDENT_TRANSITIONS)


def transition_matrix() -> dict:
    """(status, action) → target status value, or None where no edge exists.

    Covers every pair; anything not listed in INCIDENT_TRANSITIONS maps to
    None and is refused as a conflict.
    """
    matrix = {}
    for status in IncidentStatus:
        for action, rule in INCIDENT_TRANSITIONS.items():
            if status in rule["from"]:
                matrix[(status.value, action)] = rule["to"].value if rule["to"] else "*"
            else:
                matrix[(status.value, action)] = None
    return matrix


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _text(data: dict, field: str) -> str:
    value = data.get(field)
    return value.strip() if isinstance(value, str) else ""


def validate_payload(action: str, data: dict) -> dict:
    """Check and normalise the action payload. Raises ValidationError."""
    errors = {}
    clean = {}
    if action == "qi_review.reject":
        reason = _text(data, "rejection_reason")
        if len(reason) < REJECTION_REASON_MIN:
            errors["rejection_reason"] = (
                f"Rejection reason must be at least {REJECTION_REASON_MIN} characters"
            )
        clean["rejection_reason"] = reason
    elif action == "close":
        case_review = _text(data, "case_review")
        feedback = _text(data, "reporter_feedback")
        if len(case_review) < CASE_REVIEW_MIN:
            errors["case_review"] = f"Case review must be at least {CASE_REVIEW_MIN} characters"
        if len(feedback) < REPORTER_FEEDBACK_MIN:
            errors["reporter_feedback"] = (
                f"Reporter feedback must be at least {REPORTER_FEEDBACK_MIN} characters"
            )
        clean.update(case_review=case_review, reporter_feedback=feedback)
    elif action == "force":
        target = IncidentStatus.parse(data.get("status"))
        if target is None:
            errors["status"] = f"status must be one of: {', '.join(s.value for s in IncidentStatus)}"
        reason = _text(data, "reason")
        if len(reason) < FORCE_REASON_MIN:
            errors["reason"] = f"reason must be at least {FORCE_REASON_MIN} characters"
        clean.update(status=target, reason=reason)
        if target is S.CLOSED:
            clean["case_review"] = _text(data, "case_review") or None
            clean["reporter_feedback"] = _text(data, "reporter_feedback") or None
    if errors:
        raise ValidationError("Invalid transition payload", details=errors)
    return clean


def validate_transition(incident: Incident, action: str, target: IncidentStatus | None = None) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = INCIDENT_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": incident.status, "to": None,
                "reason": f"Unknown action: {action}"}

    to = rule["to"] or target
    to_value = to.value if to else None
    if IncidentStatus.parse(incident.status) not in rule["from"]:
        return {"valid": False, "from": incident.status, "to": to_value,
                "reason": f"Cannot '{action}' from status '{incident.status}'"}

    return {"valid": True, "from": incident.status, "to": to_value, "reason": None}


def available_actions(incident: Incident, ctx: AuthContext) -> list[str]:
    """Actions the caller could perform right now (payload aside).

    ``close`` is listed only once every corrective action is closed, so the
    closure panel and this list agree.
    """
    roles = effective_roles(incident, ctx)
    actions = []
    for action, rule in INCIDENT_TRANSITIONS.items():
        if not (roles & rule["roles"]):
            continue
        if IncidentStatus.parse(incident.status) not in rule["from"]:
            continue
        if action == "close" and not incident.all_actions_closed:
            continue
        actions.append(action)
    return actions


# ═════════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════════


def _get_incident(incident_id: str) -> Incident:
    incident = db.session.get(Incident, incident_id)
    if incident is None:
        raise NotFoundError(resource="Incident", resource_id=incident_id)
    return incident


def apply_transition(
    incident: Incident,
    action: str,
    ctx: AuthContext,
    data: dict | None = None,
    *,
    expected_version: int | None = None,
) -> dict:
    """
    Validate and apply one transition to a loaded incident; does not commit.

    Returns:
        {"incident_id", "previous_status", "new_status", "action", "changed"}

    Raises:
        ValidationError, AuthorizationError, ConflictError
    """
    data = data or {}

    # 1. Known action
    rule = INCIDENT_TRANSITIONS.get(action)
    if rule is None:
        raise ValidationError(
            f"Unknown action: {action}",
            details={"action": f"must be one of: {', '.join(sorted(VALID_ACTIONS))}"},
        )

    # 2. Roles, before anything about the current state
    roles = effective_roles(incident, ctx)
    if not (roles & rule["roles"]):
        logger.warning(
            "Transition %s on %s denied for user %s",
            action, incident.id, ctx.user_id,
            extra={"incident_id": incident.id, "action": action, "user_id": ctx.user_id},
        )
        raise AuthorizationError(
            f"Not allowed to perform '{action}' on this incident", required=rule["roles"]
        )

    # 3. Payload
    clean = validate_payload(action, data)
    target = rule["to"] or clean["status"]
    previous_status = incident.status

    # 4. Replay of an applied transition
    if previous_status == target.value:
        logger.info(
            "Transition %s on %s is a no-op (already %s)", action, incident.id, target.value,
            extra={"incident_id": incident.id, "action": action},
        )
        return {
            "incident_id": incident.id,
            "previous_status": previous_status,
            "new_status": previous_status,
            "action": action,
            "changed": False,
        }

    if expected_version is not None and expected_version != incident.version:
        raise ConflictError(
            "Incident was modified since it was loaded; reload and retry",
            current_status=incident.status,
            details={"current_version": incident.version},
        )

    # 5. Current status
    validation = validate_transition(incident, action, target)
    if not validation["valid"]:
        raise ConflictError(validation["reason"], current_status=incident.status)

    # 6. Preconditions
    if target is S.CLOSED:
        open_ids = incident.open_action_ids()
        if open_ids:
            raise ConflictError(
                f"Cannot close incident: {len(open_ids)} corrective action(s) still open",
                current_status=incident.status,
                details={"open_corrective_action_ids": open_ids},
            )

    # 7. Apply
    now = datetime.now(timezone.utc)
    diff = {"status": {"old": previous_status, "new": target.value}}
    incident.status = target.value

    if action == "submit":
        incident.submitted_at = now
        incident.qi_rejection_reason = None
    elif action == "qi_review.approve":
        incident.qi_received_by_id = ctx.user_id
        incident.qi_received_at = now
        incident.qi_approved_by_id = ctx.user_id
        incident.qi_approved_at = now
    elif action == "qi_review.reject":
        incident.qi_received_by_id = ctx.user_id
        incident.qi_received_at = now
        incident.qi_rejection_reason = clean["rejection_reason"]
        incident.submitted_at = None
        diff["qi_rejection_reason"] = {"old": None, "new": clean["rejection_reason"]}
    elif action == "close":
        incident.case_review = clean["case_review"]
        incident.reporter_feedback = clean["reporter_feedback"]
    elif action == "force":
        diff["reason"] = clean["reason"]
        if target is S.CLOSED:
            if clean.get("case_review"):
                incident.case_review = clean["case_review"]
            if clean.get("reporter_feedback"):
                incident.reporter_feedback = clean["reporter_feedback"]

    if target is S.CLOSED:
        incident.closed_by_id = ctx.user_id
        incident.closed_at = now
    else:
        incident.closed_by_id = None
        incident.closed_at = None

    if target is S.INVESTIGATING and incident.investigation is None:
        incident.investigation = Investigation(created_by_id=ctx.user_id)
        diff["investigation"] = {"old": None, "new": "created"}

    # 8. Audit log
    write_audit(
        entity_type="incident",
        entity_id=incident.id,
        incident_id=incident.id,
        action=f"incident.{action}",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff=diff,
    )

    logger.info(
        "Incident %s: %s → %s (%s)", incident.id, previous_status, target.value, action,
        extra={
            "incident_id": incident.id,
            "action": action,
            "from_status": previous_status,
            "to_status": target.value,
            "user_id": ctx.user_id,
        },
    )
    return {
        "incident_id": incident.id,
        "previous_status": previous_status,
        "new_status": incident.status,
        "action": action,
        "changed": True,
    }


def transition_incident(
    incident_id: str,
    action: str,
    ctx: AuthContext,
    data: dict | None = None,
    *,
    expected_version: int | None = None,
) -> dict:
    """
    Execute an incident lifecycle transition and commit it.

    Args:
        incident_id: ``OVR-YYYY-NNN``
        action: One of VALID_ACTIONS
        ctx: Who is acting
        data: Action payload (rejection_reason, case_review, ...)
        expected_version: Optional optimistic-concurrency check

    Returns:
        {"incident_id", "previous_status", "new_status", "action", "changed"}

    Raises:
        NotFoundError, ValidationError, AuthorizationError, ConflictError
    """
    incident = _get_incident(incident_id)
    with atomic():
        result = apply_transition(incident, action, ctx, data, expected_version=expected_version)
    if result["changed"]:
        commit_or_raise()
    return result
