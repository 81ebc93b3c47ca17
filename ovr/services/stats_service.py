"""
Dashboard counts, scoped to what the caller may see.
"""

from sqlalchemy import func

from ovr.access_control import can_perform
from ovr.auth import AuthContext
from ovr.models import db
from ovr.models.incident import CorrectiveAction, Incident
from ovr.services.incident_service import visibility_filter
from ovr.workflow.status import IncidentStatus, is_active_status

# Most specific first; the first predicate that holds names the dashboard scope
SCOPES = (
    ("system", "view_system"),
    ("executive", "view_executive"),
    ("qi", "view_qi"),
    ("department", "view_department"),
    ("team", "view_team"),
)


def stats_scope(roles) -> str:
    for scope, action in SCOPES:
        if can_perform(roles, "api", "stats", action):
            return scope
    return "personal"


def incident_stats(ctx: AuthContext) -> dict:
    """
    Returns:
        {"scope", "total", "by_status": {status: n}, "by_harm": {level: n},
         "active", "closed", "open_corrective_actions"}
    """
    condition = visibility_filter(ctx)

    def scoped(query):
        return query if condition is None else query.filter(condition)

    by_status = {s.value: 0 for s in IncidentStatus}
    rows = scoped(db.session.query(Incident.status, func.count(Incident.id))).group_by(Incident.status)
    for status, count in rows.all():
        by_status[status] = count

    by_harm: dict = {}
    rows = scoped(
        db.session.query(Incident.level_of_harm, func.count(Incident.id))
    ).group_by(Incident.level_of_harm)
    for level, count in rows.all():
        by_harm[level or "unspecified"] = count

    open_actions = scoped(
        db.session.query(func.count(CorrectiveAction.id))
        .join(Incident, Incident.id == CorrectiveAction.incident_id)
        .filter(CorrectiveAction.status == "open")
    ).scalar()

    return {
        "scope": stats_scope(ctx.roles),
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_harm": by_harm,
        "active": sum(n for s, n in by_status.items() if is_active_status(s)),
        "closed": by_status[IncidentStatus.CLOSED.value],
        "open_corrective_actions": open_actions or 0,
    }
