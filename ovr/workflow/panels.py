"""
Workflow panel selection.

``select_panels`` is a pure function of the incident status (and whether all
corrective actions are closed). ``panels_for_incident`` adds, per panel,
whether the caller could act on it now, using the same transition table the
server enforces. Neither touches the database session beyond reading.
"""

from ovr.services.incident_lifecycle import available_actions
from ovr.workflow.status import IncidentStatus

S = IncidentStatus

# panel key → lifecycle actions that make it actionable
PANEL_ACTIONS = {
    "qi_review": ("qi_review.approve", "qi_review.reject"),
    "investigation": ("submit_findings", "begin_final_actions"),
    "corrective_actions": ("request_final_review",),
    "corrective_actions_summary": (),
    "closure": ("close",),
    "investigation_summary": (),
    "case_review_summary": (),
}

_PANELS_BY_STATUS = {
    S.SUBMITTED: ("qi_review",),
    S.INVESTIGATING: ("investigation",),
    S.QI_FINAL_ACTIONS: ("corrective_actions", "closure"),
    S.QI_FINAL_REVIEW: ("corrective_actions_summary", "closure"),
    S.CLOSED: ("investigation_summary", "corrective_actions_summary", "case_review_summary"),
}


def select_panels(status, all_actions_closed: bool = False) -> list[dict]:
    """Panels to show for ``status``.

    Returns a list of ``{"key", "read_only", "enabled"}``. Statuses without a
    workflow UI (draft, the legacy review statuses, unknown values) get none.
    ``closure`` is enabled only when every corrective action is closed.
    """
    member = IncidentStatus.parse(status)
    keys = _PANELS_BY_STATUS.get(member, ())
    panels = []
    for key in keys:
        panels.append({
            "key": key,
            "read_only": member is S.CLOSED or key.endswith("_summary"),
            "enabled": all_actions_closed if key == "closure" else True,
        })
    return panels


def panels_for_incident(incident, ctx) -> list[dict]:
    """``select_panels`` plus an ``actionable`` flag per panel for ``ctx``."""
    allowed = set(available_actions(incident, ctx))
    panels = select_panels(incident.status, all_actions_closed=incident.all_actions_closed)
    for panel in panels:
        actions = PANEL_ACTIONS.get(panel["key"], ())
        panel["actions"] = [a for a in actions if a in allowed]
        panel["actionable"] = (
            panel["enabled"] and not panel["read_only"] and bool(panel["actions"])
        )
    return panels
