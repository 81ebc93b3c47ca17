"""
Incident Service: creation, visibility-scoped reads, draft edits, deletion.

Visibility is enforced here and nowhere else. A caller asking for an
incident they may not see gets NotFoundError, exactly as for a missing id.

Who sees what:
  - QI staff and executives: everything
  - department head / assistant: own reports + their department's incidents
  - supervisor / team lead: own reports + incidents naming them as supervisor
  - everyone: own reports, incidents they investigate, incidents with a
    corrective action assigned to them
  - shared-access token holders: the incident behind each accepted grant
"""

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import or_

from ovr.access_control import can_perform
from ovr.auth import AuthContext
from ovr.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ovr.models import db
from ovr.models.audit import AuditLog, write_audit
from ovr.models.auth import Department, Location, User
from ovr.models.incident import (
    HARM_LEVELS,
    PERSON_INVOLVED_TYPES,
    CorrectiveAction,
    Incident,
    Investigation,
    corrective_action_assignees,
    investigation_investigators,
)
from ovr.services.incident_lifecycle import available_actions
from ovr.utils.helpers import commit_or_raise, parse_date, require_text
from ovr.workflow.panels import panels_for_incident
from ovr.workflow.status import IncidentStatus, can_edit_incident

logger = logging.getLogger(__name__)

DESCRIPTION_MIN = 10
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

EDITABLE_FIELDS = (
    "occurrence_date",
    "occurrence_time",
    "occurrence_category",
    "occurrence_subcategory",
    "description",
    "level_of_harm",
    "person_involved",
    "involved_person_name",
    "location_id",
    "department_id",
    "supervisor_id",
)

SORTABLE = {
    "created_at": Incident.created_at,
    "occurrence_date": Incident.occurrence_date,
    "id": Incident.id,
    "status": Incident.status,
}

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


# ═════════════════════════════════════════════════════════════════════════════
# Identifiers
# ═════════════════════════════════════════════════════════════════════════════


def generate_incident_id(year: int | None = None) -> str:
    """Next ``OVR-YYYY-NNN`` for the year; the sequence restarts every year."""
    year = year or datetime.now(timezone.utc).year
    prefix = f"OVR-{year}-"
    ids = db.session.query(Incident.id).filter(Incident.id.like(f"{prefix}%")).all()
    highest = 0
    for (existing,) in ids:
        suffix = existing[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1:03d}"


# ═════════════════════════════════════════════════════════════════════════════
# Visibility
# ═════════════════════════════════════════════════════════════════════════════


def visibility_filter(ctx: AuthContext):
    """SQL condition for the incidents ``ctx`` may see, or None for all."""
    if can_perform(ctx.roles, "api", "incidents", "view_all"):
        return None

    grant_ids = {gr.incident_id for gr in ctx.grants}
    conditions = []
    if grant_ids:
        conditions.append(Incident.id.in_(grant_ids))

    if ctx.user_id is not None:
        uid = ctx.user_id
        conditions.append(Incident.reporter_id == uid)
        conditions.append(
            Incident.id.in_(
                db.session.query(Investigation.incident_id)
                .join(investigation_investigators,
                      investigation_investigators.c.investigation_id == Investigation.id)
                .filter(investigation_investigators.c.user_id == uid)
            )
        )
        conditions.append(
            Incident.id.in_(
                db.session.query(CorrectiveAction.incident_id)
                .join(corrective_action_assignees,
                      corrective_action_assignees.c.corrective_action_id == CorrectiveAction.id)
                .filter(corrective_action_assignees.c.user_id == uid)
            )
        )
        if can_perform(ctx.roles, "api", "incidents", "view_team"):
            conditions.append(Incident.supervisor_id == uid)
        if can_perform(ctx.roles, "api", "incidents", "view_department"):
            user = db.session.get(User, uid)
            if user is not None and user.department_id is not None:
                conditions.append(Incident.department_id == user.department_id)

    if not conditions:
        return Incident.id.is_(None)
    return or_(*conditions)


def visible_query(ctx: AuthContext):
    query = Incident.query
    condition = visibility_filter(ctx)
    if condition is not None:
        query = query.filter(condition)
    return query


def get_visible_incident(incident_id: str, ctx: AuthContext) -> Incident:
    """Load an incident the caller may see, or raise NotFoundError."""
    incident = visible_query(ctx).filter(Incident.id == incident_id).first()
    if incident is None:
        raise NotFoundError(resource="Incident", resource_id=incident_id)
    return incident


def incident_detail(incident: Incident, ctx: AuthContext) -> dict:
    """Full incident payload with workflow hints for the caller."""
    result = incident.to_dict(include_children=True)
    result["available_actions"] = available_actions(incident, ctx)
    result["panels"] = panels_for_incident(incident, ctx)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _check_reference(model, value, field, errors):
    if value in (None, ""):
        return None
    try:
        pk = int(value)
    except (TypeError, ValueError):
        errors[field] = f"{field} must be an integer"
        return None
    if db.session.get(model, pk) is None:
        errors[field] = f"{model.__name__} {pk} does not exist"
        return None
    return pk


def _validate_fields(data: dict, *, partial: bool) -> dict:
    """Validate incident content. ``partial`` skips absent fields (PATCH)."""
    errors: dict = {}
    clean: dict = {}

    def present(field):
        return not partial or field in data

    if present("occurrence_date"):
        occurred = parse_date(data.get("occurrence_date"))
        if occurred is None:
            errors["occurrence_date"] = "occurrence_date is required (YYYY-MM-DD)"
        elif occurred > datetime.now(timezone.utc).date():
            errors["occurrence_date"] = "occurrence_date cannot be in the future"
        else:
            clean["occurrence_date"] = occurred

    if present("occurrence_time") and data.get("occurrence_time"):
        value = str(data["occurrence_time"]).strip()
        if not _TIME_RE.match(value):
            errors["occurrence_time"] = "occurrence_time must be HH:MM"
        else:
            clean["occurrence_time"] = value

    if present("occurrence_category"):
        clean["occurrence_category"] = require_text(
            data, "occurrence_category", errors, max_len=100
        )
    if present("occurrence_subcategory"):
        clean["occurrence_subcategory"] = require_text(
            data, "occurrence_subcategory", errors, max_len=100, required=False
        )
    if present("description"):
        clean["description"] = require_text(data, "description", errors, min_len=DESCRIPTION_MIN)
    if present("involved_person_name"):
        clean["involved_person_name"] = require_text(
            data, "involved_person_name", errors, max_len=200, required=False
        )

    if present("level_of_harm") and data.get("level_of_harm") is not None:
        if data["level_of_harm"] not in HARM_LEVELS:
            errors["level_of_harm"] = f"level_of_harm must be one of: {', '.join(sorted(HARM_LEVELS))}"
        else:
            clean["level_of_harm"] = data["level_of_harm"]
    if present("person_involved") and data.get("person_involved") is not None:
        if data["person_involved"] not in PERSON_INVOLVED_TYPES:
            errors["person_involved"] = (
                f"person_involved must be one of: {', '.join(sorted(PERSON_INVOLVED_TYPES))}"
            )
        else:
            clean["person_involved"] = data["person_involved"]

    if present("location_id"):
        clean["location_id"] = _check_reference(Location, data.get("location_id"), "location_id", errors)
    if present("department_id"):
        clean["department_id"] = _check_reference(
            Department, data.get("department_id"), "department_id", errors
        )
    if present("supervisor_id"):
        clean["supervisor_id"] = _check_reference(User, data.get("supervisor_id"), "supervisor_id", errors)

    if errors:
        raise ValidationError("Invalid incident", details=errors)
    return clean


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


def create_incident(data: dict, ctx: AuthContext) -> Incident:
    """Create a draft owned by the caller."""
    if ctx.user_id is None:
        raise AuthorizationError("Only signed-in users can report incidents")
    clean = _validate_fields(data, partial=False)
    incident = Incident(
        id=generate_incident_id(),
        status=IncidentStatus.DRAFT.value,
        reporter_id=ctx.user_id,
        **clean,
    )
    db.session.add(incident)
    db.session.flush()
    write_audit(
        entity_type="incident",
        entity_id=incident.id,
        incident_id=incident.id,
        action="incident.create",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"status": {"old": None, "new": incident.status}},
    )
    commit_or_raise()
    logger.info("Incident %s created by user %s", incident.id, ctx.user_id,
                extra={"incident_id": incident.id, "user_id": ctx.user_id})
    return incident


def list_incidents(ctx: AuthContext, params: dict) -> dict:
    """Paginated, visibility-scoped list.

    params: page, limit, sort_by, sort_order, status, category, reporter_id, search
    """
    try:
        page = max(int(params.get("page") or 1), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max(int(params.get("limit") or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE

    query = visible_query(ctx)

    status = params.get("status")
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        unknown = [s for s in statuses if IncidentStatus.parse(s) is None]
        if unknown:
            raise ValidationError("Unknown status filter", details={"status": unknown})
        query = query.filter(Incident.status.in_(statuses))
    if params.get("category"):
        query = query.filter(Incident.occurrence_category == params["category"])
    if params.get("reporter_id"):
        try:
            query = query.filter(Incident.reporter_id == int(params["reporter_id"]))
        except (TypeError, ValueError):
            raise ValidationError("reporter_id must be an integer") from None
    if params.get("search"):
        term = f"%{params['search'].strip()}%"
        query = query.filter(or_(Incident.id.ilike(term), Incident.description.ilike(term)))

    column = SORTABLE.get(params.get("sort_by") or "created_at", Incident.created_at)
    order = column.asc() if params.get("sort_order") == "asc" else column.desc()

    total = query.count()
    items = query.order_by(order, Incident.id.desc()).offset((page - 1) * limit).limit(limit).all()
    total_pages = (total + limit - 1) // limit
    return {
        "data": [i.to_dict() for i in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def update_incident(incident_id: str, data: dict, ctx: AuthContext) -> Incident:
    """Edit descriptive fields. Owner only, draft only."""
    incident = get_visible_incident(incident_id, ctx)
    is_owner = ctx.user_id is not None and incident.reporter_id == ctx.user_id
    if not is_owner:
        raise AuthorizationError("Only the reporter can edit an incident")
    if not can_edit_incident(incident.status):
        raise ConflictError("Incident can only be edited while in draft", current_status=incident.status)

    unknown = sorted(set(data) - set(EDITABLE_FIELDS) - {"expected_version"})
    if unknown:
        raise ValidationError("Fields cannot be edited", details={f: "not editable" for f in unknown})
    expected = data.get("expected_version")
    if expected is not None and expected != incident.version:
        raise ConflictError(
            "Incident was modified since it was loaded; reload and retry",
            current_status=incident.status,
            details={"current_version": incident.version},
        )

    clean = _validate_fields(data, partial=True)
    diff = {}
    for field, value in clean.items():
        if field not in data:
            continue
        old = getattr(incident, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(incident, field, value)
    if diff:
        write_audit(
            entity_type="incident",
            entity_id=incident.id,
            incident_id=incident.id,
            action="incident.update",
            actor=ctx.email or "system",
            actor_user_id=ctx.user_id,
            diff=diff,
        )
        commit_or_raise()
    return incident


def delete_incident(incident_id: str, ctx: AuthContext) -> None:
    """Owner may delete a draft; QI managers and admins may delete any."""
    incident = get_visible_incident(incident_id, ctx)
    is_owner = ctx.user_id is not None and incident.reporter_id == ctx.user_id
    is_draft = incident.status == IncidentStatus.DRAFT.value
    if not can_perform(ctx.roles, "api", "incidents", "delete", is_owner, is_draft):
        raise AuthorizationError("Not allowed to delete this incident")
    write_audit(
        entity_type="incident",
        entity_id=incident.id,
        incident_id=incident.id,
        action="incident.delete",
        actor=ctx.email or "system",
        actor_user_id=ctx.user_id,
        diff={"status": {"old": incident.status, "new": None}},
    )
    db.session.delete(incident)
    commit_or_raise()
    logger.info("Incident %s deleted by user %s", incident_id, ctx.user_id,
                extra={"incident_id": incident_id, "user_id": ctx.user_id})


def incident_history(incident_id: str, ctx: AuthContext) -> list[dict]:
    """Audit rows for the incident and its children, oldest first."""
    incident = get_visible_incident(incident_id, ctx)
    rows = (
        AuditLog.query
        .filter(AuditLog.incident_id == incident.id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]
