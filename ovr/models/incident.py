"""
Incident workflow models: incidents, investigations, corrective actions,
comments.

An Incident owns at most one Investigation and zero or more
CorrectiveActions and IncidentComments; all cascade with it. ``Incident.status`` is the only
workflow state; every change to it goes through
``ovr.services.incident_lifecycle``.

Incident rows carry an optimistic-concurrency counter (``version``). Two
writers that read the same version cannot both commit; the loser gets a
StaleDataError, surfaced as a 409.
"""

from datetime import datetime, timezone

from ovr.models import db
from ovr.workflow.status import IncidentStatus

PERSON_INVOLVED_TYPES = frozenset({"patient", "staff", "visitor", "other"})
HARM_LEVELS = frozenset({"no_harm", "minor", "moderate", "severe", "death"})
CAUSE_CLASSIFICATIONS = frozenset({
    "human_error",
    "system_failure",
    "process_issue",
    "equipment_failure",
    "communication",
    "environmental",
    "other",
})


# ═════════════════════════════════════════════════════════════════════════════
# Association tables
# ═════════════════════════════════════════════════════════════════════════════

investigation_investigators = db.Table(
    "investigation_investigators",
    db.Column("investigation_id", db.Integer,
              db.ForeignKey("investigations.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer,
              db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

corrective_action_assignees = db.Table(
    "corrective_action_assignees",
    db.Column("corrective_action_id", db.Integer,
              db.ForeignKey("corrective_actions.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer,
              db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Incident
# ═════════════════════════════════════════════════════════════════════════════


class Incident(db.Model):
    """Occurrence Variance Report. ``id`` is ``OVR-YYYY-NNN``."""

    __tablename__ = "incidents"

    id = db.Column(db.String(20), primary_key=True)
    status = db.Column(
        db.String(30), nullable=False, default=IncidentStatus.DRAFT.value,
        comment="see ovr.workflow.status.IncidentStatus",
    )
    reporter_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # ── Occurrence details ───────────────────────────────────────────────
    occurrence_date = db.Column(db.Date, nullable=False)
    occurrence_time = db.Column(db.String(5), comment="HH:MM")
    occurrence_category = db.Column(db.String(100), nullable=False)
    occurrence_subcategory = db.Column(db.String(100))
    description = db.Column(db.Text, nullable=False)
    level_of_harm = db.Column(db.String(20))
    person_involved = db.Column(db.String(20))
    involved_person_name = db.Column(db.String(200))
    location_id = db.Column(
        db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )

    # ── QI bookkeeping ───────────────────────────────────────────────────
    submitted_at = db.Column(db.DateTime(timezone=True))
    qi_received_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    qi_received_at = db.Column(db.DateTime(timezone=True))
    qi_approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    qi_approved_at = db.Column(db.DateTime(timezone=True))
    qi_rejection_reason = db.Column(db.Text)

    # ── Closure ──────────────────────────────────────────────────────────
    case_review = db.Column(db.Text)
    reporter_feedback = db.Column(db.Text)
    closed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    closed_at = db.Column(db.DateTime(timezone=True))

    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ────────────────────────────────────────────────────
    reporter = db.relationship("User", foreign_keys=[reporter_id])
    supervisor = db.relationship("User", foreign_keys=[supervisor_id])
    closed_by = db.relationship("User", foreign_keys=[closed_by_id])
    location = db.relationship("Location")
    department = db.relationship("Department")
    investigation = db.relationship(
        "Investigation",
        back_populates="incident",
        uselist=False,
        cascade="all, delete-orphan",
    )
    corrective_actions = db.relationship(
        "CorrectiveAction",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="CorrectiveAction.id",
    )
    comments = db.relationship(
        "IncidentComment",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="IncidentComment.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','qi_review','supervisor_approved',"
            "'hod_assigned','investigating','qi_final_actions','qi_final_review','closed')",
            name="ck_incident_status",
        ),
        db.Index("ix_incident_status", "status"),
        db.Index("ix_incident_created", "created_at"),
    )

    @property
    def all_actions_closed(self) -> bool:
        """True when no corrective action is open (vacuously true for none)."""
        return all(ca.status == "closed" for ca in self.corrective_actions)

    def open_action_ids(self) -> list[int]:
        return [ca.id for ca in self.corrective_actions if ca.status != "closed"]

    def to_dict(self, include_children: bool = False) -> dict:
        result = {
            "id": self.id,
            "status": self.status,
            "reporter_id": self.reporter_id,
            "supervisor_id": self.supervisor_id,
            "occurrence_date": _iso(self.occurrence_date),
            "occurrence_time": self.occurrence_time,
            "occurrence_category": self.occurrence_category,
            "occurrence_subcategory": self.occurrence_subcategory,
            "description": self.description,
            "level_of_harm": self.level_of_harm,
            "person_involved": self.person_involved,
            "involved_person_name": self.involved_person_name,
            "location_id": self.location_id,
            "department_id": self.department_id,
            "submitted_at": _iso(self.submitted_at),
            "qi_received_by_id": self.qi_received_by_id,
            "qi_received_at": _iso(self.qi_received_at),
            "qi_approved_by_id": self.qi_approved_by_id,
            "qi_approved_at": _iso(self.qi_approved_at),
            "qi_rejection_reason": self.qi_rejection_reason,
            "case_review": self.case_review,
            "reporter_feedback": self.reporter_feedback,
            "closed_by_id": self.closed_by_id,
            "closed_at": _iso(self.closed_at),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            result["investigation"] = (
                self.investigation.to_dict() if self.investigation else None
            )
            result["corrective_actions"] = [ca.to_dict() for ca in self.corrective_actions]
        return result

    def __repr__(self):
        return f"<Incident {self.id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# Investigation
# ═════════════════════════════════════════════════════════════════════════════


class Investigation(db.Model):
    """Root-cause work for one incident. Read-only once ``submitted_at`` is set."""

    __tablename__ = "investigations"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.String(20),
        db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    findings = db.Column(db.Text)
    problems_identified = db.Column(db.Text)
    cause_classification = db.Column(db.String(50))
    cause_details = db.Column(db.Text)
    prevention_recommendation = db.Column(db.Text)
    submitted_at = db.Column(db.DateTime(timezone=True))
    submitted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    submitted_by_email = db.Column(db.String(255))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    incident = db.relationship("Incident", back_populates="investigation")
    investigators = db.relationship(
        "User", secondary=investigation_investigators, lazy="select", order_by="User.id"
    )

    @property
    def is_submitted(self) -> bool:
        return self.submitted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "findings": self.findings,
            "problems_identified": self.problems_identified,
            "cause_classification": self.cause_classification,
            "cause_details": self.cause_details,
            "prevention_recommendation": self.prevention_recommendation,
            "investigators": [u.to_brief() for u in self.investigators],
            "submitted_at": _iso(self.submitted_at),
            "submitted_by_id": self.submitted_by_id,
            "submitted_by_email": self.submitted_by_email,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Investigation {self.id} for {self.incident_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# CorrectiveAction
# ═════════════════════════════════════════════════════════════════════════════


class CorrectiveAction(db.Model):
    """
    A remediation task tracked to closure.

    ``checklist`` is an ordered JSON list of
    ``{id, text, completed, completed_at, completed_by}``; item ids are
    stable strings so toggles survive reordering on the client.
    """

    __tablename__ = "corrective_actions"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.String(20),
        db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    checklist = db.Column(db.JSON, nullable=False, default=list)
    action_taken = db.Column(db.Text)
    status = db.Column(db.String(10), nullable=False, default="open")
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    closed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    closed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    incident = db.relationship("Incident", back_populates="corrective_actions")
    assignees = db.relationship(
        "User", secondary=corrective_action_assignees, lazy="select", order_by="User.id"
    )

    __table_args__ = (
        db.CheckConstraint("status IN ('open','closed')", name="ck_corrective_action_status"),
    )

    @property
    def checklist_progress(self) -> dict:
        items = self.checklist or []
        done = sum(1 for item in items if item.get("completed"))
        return {"completed": done, "total": len(items)}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "title": self.title,
            "description": self.description,
            "due_date": _iso(self.due_date),
            "checklist": list(self.checklist or []),
            "checklist_progress": self.checklist_progress,
            "assignees": [u.to_brief() for u in self.assignees],
            "action_taken": self.action_taken,
            "status": self.status,
            "created_by_id": self.created_by_id,
            "closed_by_id": self.closed_by_id,
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<CorrectiveAction {self.id}: {self.title} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# IncidentComment
# ═════════════════════════════════════════════════════════════════════════════


class IncidentComment(db.Model):
    """Free-text discussion on an incident; any status, no workflow effect."""

    __tablename__ = "incident_comments"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(
        db.String(20),
        db.ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    comment = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    incident = db.relationship("Incident", back_populates="comments")
    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "user": self.user.to_brief() if self.user else None,
            "comment": self.comment,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<IncidentComment {self.id} on {self.incident_id}>"
