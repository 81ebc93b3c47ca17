"""
Incident status taxonomy.

A closed enumeration plus display metadata. ``STATUS_CONFIG`` is total over
``IncidentStatus``; the legacy statuses (``qi_review``,
``supervisor_approved``, ``hod_assigned``) have display entries but no
regular inbound edge and are reached only through an admin force.
"""

import enum


class IncidentStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    QI_REVIEW = "qi_review"
    SUPERVISOR_APPROVED = "supervisor_approved"
    HOD_ASSIGNED = "hod_assigned"
    INVESTIGATING = "investigating"
    QI_FINAL_ACTIONS = "qi_final_actions"
    QI_FINAL_REVIEW = "qi_final_review"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or None when it is not a status."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({IncidentStatus.CLOSED})

# draft → closed, the order the progress bar follows
WORKFLOW_ORDER = (
    IncidentStatus.DRAFT,
    IncidentStatus.SUBMITTED,
    IncidentStatus.QI_REVIEW,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.QI_FINAL_ACTIONS,
    IncidentStatus.QI_FINAL_REVIEW,
    IncidentStatus.CLOSED,
)

STATUS_CONFIG = {
    IncidentStatus.DRAFT: {
        "label": "Draft",
        "description": "Incident report is being prepared",
        "color": "grey",
    },
    IncidentStatus.SUBMITTED: {
        "label": "Submitted",
        "description": "Awaiting QI review",
        "color": "info",
    },
    IncidentStatus.QI_REVIEW: {
        "label": "QI Review",
        "description": "QI team reviewing incident",
        "color": "warning",
    },
    IncidentStatus.SUPERVISOR_APPROVED: {
        "label": "Supervisor Approved",
        "description": "Approved by the reporting supervisor",
        "color": "info",
    },
    IncidentStatus.HOD_ASSIGNED: {
        "label": "HOD Assigned",
        "description": "Assigned to the head of department",
        "color": "warning",
    },
    IncidentStatus.INVESTIGATING: {
        "label": "Investigating",
        "description": "Investigation in progress",
        "color": "primary",
    },
    IncidentStatus.QI_FINAL_ACTIONS: {
        "label": "Final Actions",
        "description": "Corrective actions being implemented",
        "color": "secondary",
    },
    IncidentStatus.QI_FINAL_REVIEW: {
        "label": "Final Review",
        "description": "QI reviewing corrective actions before closure",
        "color": "secondary",
    },
    IncidentStatus.CLOSED: {
        "label": "Closed",
        "description": "Case resolved and archived",
        "color": "success",
    },
}


def status_config(status) -> dict:
    """Display metadata; unknown values fall back to the draft entry."""
    member = IncidentStatus.parse(status) or IncidentStatus.DRAFT
    return {"value": member.value, **STATUS_CONFIG[member]}


def status_label(status) -> str:
    return status_config(status)["label"]


def can_edit_incident(status) -> bool:
    """Descriptive fields are editable only in draft."""
    return IncidentStatus.parse(status) is IncidentStatus.DRAFT


def is_active_status(status) -> bool:
    member = IncidentStatus.parse(status)
    return member is not None and member not in (IncidentStatus.DRAFT, IncidentStatus.CLOSED)


def is_closed_status(status) -> bool:
    return IncidentStatus.parse(status) in TERMINAL_STATUSES


def workflow_progress(status) -> int:
    """Percentage along WORKFLOW_ORDER (0 for statuses off the main path)."""
    member = IncidentStatus.parse(status)
    if member not in WORKFLOW_ORDER:
        return 0
    return round(WORKFLOW_ORDER.index(member) / (len(WORKFLOW_ORDER) - 1) * 100)


def list_statuses() -> list[dict]:
    """Every status with its metadata, in enumeration order."""
    return [
        {**status_config(s), "terminal": s in TERMINAL_STATUSES,
         "progress": workflow_progress(s)}
        for s in IncidentStatus
    ]
