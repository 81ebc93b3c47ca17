"""
Corrective Action Service

QI staff create actions once the investigation is done; assignees and
``action_handler`` token holders work the checklist and record what was
done; QI staff close each action. The incident can close only when every
action is closed (enforced by the lifecycle service).

Creating the first action while the incident is still ``investigating``
applies ``begin_final_actions`` in the same commit, so the incident is in
``qi_final_actions`` whenever it has corrective actions.
"""

import logging
import uuid
from datetime import datetime, timezone

from ovr.access_control import can_perform
from ovr.auth import AuthContext
from ovr.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import write_audit
from ovr.models.auth import User
from ovr.models.incident import CorrectiveAction, Incident
from ovr.services.incident_lifecycle import apply_transition
from ovr.services.incident_service import get_visible_incident, visibility_filter
from ovr.utils.helpers import atomic, commit_or_raise, parse_date, require_text
from ovr.workflow.status import IncidentStatus

logger = logging.getLogger(__name__)

TITLE_MIN = 5
TITLE_MAX = 255
DESCRIPTION_MIN = 20
CHECKLIST_TEXT_MAX = 500

# Incident statuses in which actions may be created or worked on
WORKABLE_STATUSES = frozenset({
    IncidentStatus.QI_FINAL_ACTIONS.value,
    IncidentStatus.QI_FINAL_REVIEW.value,
})


def _now():
    return datetime.now(timezone.utc)


def _audit(action: CorrectiveAction, verb: str, ctx: AuthContext, diff: dict):
    write_audit(
        entity_type="corrective_action",
        entity_id=action.id,
        incident_id=action.incident_id,
        action=f"corrective_action.{verb}",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff=diff,
    )


def _is_assignee(action: CorrectiveAction, ctx: AuthContext) -> bool:
    return ctx.user_id is not None and any(u.id == ctx.user_id for u in action.assignees)


def _is_handler(action: CorrectiveAction, ctx: AuthContext) -> bool:
    return any(
        gr.role == "action_handler"
        for gr in ctx.grants_for(action.incident_id, "corrective_action", action.id)
    )


def _can_view(action: CorrectiveAction, ctx: AuthContext) -> bool:
    if can_perform(ctx.roles, "api", "corrective_actions", "view"):
        return True
    if _is_assignee(action, ctx):
        return True
    if ctx.grants_for(action.incident_id, "corrective_action", action.id):
        return True
    condition = visibility_filter(ctx)
    if condition is None:
        return True
    return (
        Incident.query.filter(Incident.id == action.incident_id, condition).first() is not None
    )


def _parse_checklist(raw, errors: dict, existing: list | None = None) -> list[dict]:
    """Normalise checklist input.

    Accepts strings or ``{id?, text, completed?}`` objects. Items whose id
    matches an existing item keep their completion record.
    """
    if not isinstance(raw, list) or not raw:
        errors["checklist"] = "checklist must be a non-empty list"
        return []
    by_id = {item["id"]: item for item in (existing or [])}
    items = []
    for position, entry in enumerate(raw):
        if isinstance(entry, str):
            entry = {"text": entry}
        if not isinstance(entry, dict):
            errors["checklist"] = f"item {position} must be a string or an object"
            return []
        text = entry.get("text")
        if not isinstance(text, str) or not text.strip():
            errors["checklist"] = f"item {position} needs text"
            return []
        if len(text.strip()) > CHECKLIST_TEXT_MAX:
            errors["checklist"] = f"item {position} is longer than {CHECKLIST_TEXT_MAX} characters"
            return []
        previous = by_id.get(entry.get("id"))
        if previous is not None:
            item = dict(previous, text=text.strip())
        else:
            item = {
                "id": uuid.uuid4().hex[:12],
                "text": text.strip(),
                "completed": False,
                "completed_at": None,
                "completed_by": None,
            }
        items.append(item)
    return items


def _load_assignees(raw, errors: dict) -> list[User]:
    if not isinstance(raw, list):
        errors["assignee_ids"] = "assignee_ids must be a list"
        return []
    users = []
    for value in raw:
        try:
            user = db.session.get(User, int(value))
        except (TypeError, ValueError):
            user = None
        if user is None or not user.is_active:
            errors["assignee_ids"] = f"unknown or inactive user: {value}"
            return []
        if user not in users:
            users.append(user)
    return users


def get_action(action_id: int, ctx: AuthContext) -> CorrectiveAction:
    """Load an action the caller may see, or raise NotFoundError."""
    action = db.session.get(CorrectiveAction, action_id)
    if action is None or not _can_view(action, ctx):
        raise NotFoundError(resource="Corrective action", resource_id=action_id)
    return action


def action_detail(action: CorrectiveAction, ctx: AuthContext) -> dict:
    result = action.to_dict()
    result["incident_status"] = action.incident.status
    result["can_update"] = (
        action.status == "open"
        and action.incident.status in WORKABLE_STATUSES
        and can_perform(ctx.roles, "api", "corrective_actions", "update",
                        _is_assignee(action, ctx), _is_handler(action, ctx))
    )
    result["can_close"] = action.status == "open" and can_perform(
        ctx.roles, "api", "corrective_actions", "close"
    )
    return result


def list_for_incident(incident_id: str, ctx: AuthContext) -> list[dict]:
    incident = get_visible_incident(incident_id, ctx)
    return [a.to_dict() for a in incident.corrective_actions]


# ═════════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════════


def create_action(data: dict, ctx: AuthContext) -> dict:
    """
    Create a corrective action under an incident.

    Returns:
        {"action": {...}, "transition": {...} | None}
    """
    if not can_perform(ctx.roles, "api", "corrective_actions", "create"):
        raise AuthorizationError("Only QI staff can create corrective actions")

    incident_id = data.get("incident_id")
    if not incident_id:
        raise ValidationError("incident_id is required", details={"incident_id": "required"})
    incident = get_visible_incident(str(incident_id), ctx)

    errors: dict = {}
    title = require_text(data, "title", errors, min_len=TITLE_MIN, max_len=TITLE_MAX)
    description = require_text(data, "description", errors, min_len=DESCRIPTION_MIN)
    due_date = parse_date(data.get("due_date"))
    if due_date is None:
        errors["due_date"] = "due_date is required (YYYY-MM-DD)"
    checklist = _parse_checklist(data.get("checklist"), errors)
    assignees = _load_assignees(data.get("assignee_ids") or [], errors)
    if errors:
        raise ValidationError("Invalid corrective action", details=errors)

    if incident.status not in WORKABLE_STATUSES and incident.status != IncidentStatus.INVESTIGATING.value:
        raise ConflictError(
            "Corrective actions can only be added after the investigation stage",
            current_status=incident.status,
        )

    with atomic():
        transition = None
        if incident.status == IncidentStatus.INVESTIGATING.value:
            transition = apply_transition(incident, "begin_final_actions", ctx)
        # Every new action bumps the incident version; a racing close goes stale
        incident.updated_at = _now()

        if not assignees and ctx.user_id is not None:
            creator = db.session.get(User, ctx.user_id)
            if creator is not None:
                assignees = [creator]

        action = CorrectiveAction(
            incident=incident,
            title=title,
            description=description,
            due_date=due_date,
            checklist=checklist,
            status="open",
            created_by_id=ctx.user_id,
        )
        action.assignees = assignees
        db.session.add(action)
        db.session.flush()
        _audit(action, "create", ctx, {"title": {"old": None, "new": title}})
    commit_or_raise()
    logger.info("Corrective action %s created on %s", action.id, incident.id,
                extra={"incident_id": incident.id, "user_id": ctx.user_id})
    return {"action": action.to_dict(), "transition": transition}


def _require_workable(action: CorrectiveAction):
    if action.status == "closed":
        raise ConflictError("Corrective action is closed", current_status=action.incident.status)
    if action.incident.status not in WORKABLE_STATUSES:
        raise ConflictError("Incident is not in the corrective-actions stage",
                            current_status=action.incident.status)


def update_action(action_id: int, data: dict, ctx: AuthContext) -> CorrectiveAction:
    """
    Assignees and handlers may edit ``checklist`` and ``action_taken``;
    QI staff may also edit title, description, due date and assignees.
    """
    action = get_action(action_id, ctx)
    is_qi = can_perform(ctx.roles, "api", "corrective_actions", "create")
    if not can_perform(ctx.roles, "api", "corrective_actions", "update",
                       _is_assignee(action, ctx), _is_handler(action, ctx)):
        raise AuthorizationError("Not allowed to update this corrective action")
    _require_workable(action)

    qi_only = {"title", "description", "due_date", "assignee_ids"}
    allowed = {"checklist", "action_taken"} | (qi_only if is_qi else set())
    rejected = sorted(set(data) - allowed)
    if rejected:
        raise ValidationError("Fields cannot be edited", details={f: "not editable" for f in rejected})

    errors: dict = {}
    changes: dict = {}
    if "title" in data:
        changes["title"] = require_text(data, "title", errors, min_len=TITLE_MIN, max_len=TITLE_MAX)
    if "description" in data:
        changes["description"] = require_text(data, "description", errors, min_len=DESCRIPTION_MIN)
    if "due_date" in data:
        changes["due_date"] = parse_date(data.get("due_date"))
        if changes["due_date"] is None:
            errors["due_date"] = "due_date must be a date (YYYY-MM-DD)"
    if "action_taken" in data:
        changes["action_taken"] = require_text(data, "action_taken", errors, required=False)
    if "checklist" in data:
        changes["checklist"] = _parse_checklist(data["checklist"], errors, action.checklist)
    assignees = None
    if "assignee_ids" in data:
        assignees = _load_assignees(data["assignee_ids"], errors)
    if errors:
        raise ValidationError("Invalid corrective action", details=errors)

    diff = {}
    for field, value in changes.items():
        old = getattr(action, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(action, field, value)
    if assignees is not None:
        old_ids = [u.id for u in action.assignees]
        new_ids = [u.id for u in assignees]
        if sorted(old_ids) != sorted(new_ids):
            action.assignees = assignees
            diff["assignees"] = {"old": old_ids, "new": new_ids}
    if diff:
        _audit(action, "update", ctx, diff)
        commit_or_raise()
    return action


def toggle_checklist_item(action_id: int, item_id: str, ctx: AuthContext,
                          completed: bool | None = None) -> CorrectiveAction:
    """Flip (or set) one checklist item's completion."""
    action = get_action(action_id, ctx)
    if not can_perform(ctx.roles, "api", "corrective_actions", "update",
                       _is_assignee(action, ctx), _is_handler(action, ctx)):
        raise AuthorizationError("Not allowed to update this corrective action")
    _require_workable(action)

    items = [dict(item) for item in (action.checklist or [])]
    for item in items:
        if item.get("id") == item_id:
            new_value = (not item.get("completed")) if completed is None else bool(completed)
            if new_value == bool(item.get("completed")):
                return action
            item["completed"] = new_value
            item["completed_at"] = _now().isoformat() if new_value else None
            item["completed_by"] = (ctx.email or ctx.user_id) if new_value else None
            break
    else:
        raise NotFoundError(resource="Checklist item", resource_id=item_id)

    # JSON columns are not mutation-tracked; assign a new list
    action.checklist = items
    _audit(action, "checklist", ctx, {"item": item_id, "completed": new_value})
    commit_or_raise()
    return action


def close_action(action_id: int, ctx: AuthContext, data: dict | None = None) -> CorrectiveAction:
    """Close one action. Closing an already closed action is a no-op."""
    action = get_action(action_id, ctx)
    if not can_perform(ctx.roles, "api", "corrective_actions", "close"):
        raise AuthorizationError("Only QI staff can close corrective actions")
    if action.status == "closed":
        return action
    if action.incident.status not in WORKABLE_STATUSES:
        raise ConflictError("Incident is not in the corrective-actions stage",
                            current_status=action.incident.status)

    data = data or {}
    if data.get("action_taken"):
        errors: dict = {}
        action.action_taken = require_text(data, "action_taken", errors)
        if errors:
            raise ValidationError("Invalid corrective action", details=errors)

    action.status = "closed"
    action.closed_by_id = ctx.user_id
    action.closed_at = _now()
    _audit(action, "close", ctx, {"status": {"old": "open", "new": "closed"}})
    commit_or_raise()
    logger.info("Corrective action %s closed", action.id,
                extra={"incident_id": action.incident_id, "user_id": ctx.user_id})
    return action
