"""
Incident lifecycle: transition table, evaluation order, idempotence,
preconditions and side effects.

Service-level tests; incidents are placed at arbitrary statuses through the
ORM factory and transitions run with a hand-built AuthContext.
"""

import pytest

from ovr.core.exceptions import AuthorizationError, ConflictError, ValidationError
from ovr.models import db
from ovr.models.audit import AuditLog
from ovr.services.incident_lifecycle import (
    INCIDENT_TRANSITIONS,
    VALID_ACTIONS,
    available_actions,
    transition_incident,
    transition_matrix,
)
from ovr.utils.helpers import commit_or_raise
from ovr.workflow.status import IncidentStatus

CASE_REVIEW = "Root cause confirmed as missing wet-floor signage at the entrance. " * 2
FEEDBACK = "Thank you for reporting. Signage is now installed. " * 2
CLOSE_DATA = {"case_review": CASE_REVIEW, "reporter_feedback": FEEDBACK}


def _audit_count(incident_id):
    return AuditLog.query.filter_by(incident_id=incident_id).count()


@pytest.fixture()
def people(make_user):
    return {
        "reporter": make_user(email="nurse@hospital.org"),
        "other": make_user(email="porter@hospital.org"),
        "analyst": make_user(email="qa@hospital.org", roles=["quality_analyst"]),
        "manager": make_user(email="qm@hospital.org", roles=["quality_manager"]),
        "admin": make_user(email="admin@hospital.org", roles=["super_admin"]),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionTable:
    def test_matrix_is_total(self):
        matrix = transition_matrix()
        assert len(matrix) == len(IncidentStatus) * len(VALID_ACTIONS)
        for status in IncidentStatus:
            for action in VALID_ACTIONS:
                assert (status.value, action) in matrix

    def test_closed_has_no_outbound_edge(self):
        matrix = transition_matrix()
        assert all(matrix[("closed", action)] is None for action in VALID_ACTIONS)

    def test_legacy_statuses_have_no_regular_inbound_edge(self):
        targets = {rule["to"] for rule in INCIDENT_TRANSITIONS.values() if rule["to"]}
        for legacy in ("qi_review", "supervisor_approved", "hod_assigned"):
            assert IncidentStatus(legacy) not in targets


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation order
# ═════════════════════════════════════════════════════════════════════════════


class TestEvaluationOrder:
    def test_unknown_action_is_validation_error(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"])
        with pytest.raises(ValidationError):
            transition_incident(incident.id, "teleport", ctx_for(people["admin"]))

    def test_roles_checked_before_status(self, people, make_incident, ctx_for):
        # approve is invalid from draft, but the employee fails on roles first
        incident = make_incident(people["reporter"], status="draft")
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "qi_review.approve", ctx_for(people["other"]))

    def test_only_the_owner_can_submit(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"])
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "submit", ctx_for(people["other"]))
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "submit", ctx_for(people["manager"]))

    def test_payload_checked_before_status(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="draft")
        with pytest.raises(ValidationError) as exc:
            transition_incident(incident.id, "close", ctx_for(people["manager"]), {"case_review": "short"})
        assert set(exc.value.details) == {"case_review", "reporter_feedback"}

    def test_wrong_status_is_conflict(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="draft")
        with pytest.raises(ConflictError) as exc:
            transition_incident(incident.id, "qi_review.approve", ctx_for(people["analyst"]))
        assert exc.value.details["current_status"] == "draft"
        assert incident.status == "draft"


# ═════════════════════════════════════════════════════════════════════════════
# Applied transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestAppliedTransitions:
    def test_submit_sets_timestamp_and_audits(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"])
        result = transition_incident(incident.id, "submit", ctx_for(people["reporter"]))
        assert result == {
            "incident_id": incident.id,
            "previous_status": "draft",
            "new_status": "submitted",
            "action": "submit",
            "changed": True,
        }
        assert incident.submitted_at is not None
        row = AuditLog.query.filter_by(incident_id=incident.id, action="incident.submit").one()
        assert row.diff["status"] == {"old": "draft", "new": "submitted"}
        assert row.actor == "nurse@hospital.org"

    def test_replay_is_a_no_op(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        version = incident.version
        updated_at = incident.updated_at
        result = transition_incident(incident.id, "submit", ctx_for(people["reporter"]))
        assert result["changed"] is False
        assert result["new_status"] == "submitted"
        assert incident.version == version
        assert incident.updated_at == updated_at
        assert _audit_count(incident.id) == 0

    def test_approve_creates_empty_investigation(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        transition_incident(incident.id, "qi_review.approve", ctx_for(people["analyst"]))
        assert incident.status == "investigating"
        assert incident.investigation is not None
        assert incident.investigation.investigators == []
        assert incident.qi_approved_by_id == people["analyst"].id
        assert incident.qi_received_at is not None

        # second approve: already there, nothing changes
        first_id = incident.investigation.id
        result = transition_incident(incident.id, "qi_review.approve", ctx_for(people["manager"]))
        assert result["changed"] is False
        assert incident.investigation.id == first_id

    def test_reject_needs_a_reason(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        with pytest.raises(ValidationError) as exc:
            transition_incident(incident.id, "qi_review.reject", ctx_for(people["analyst"]),
                                {"rejection_reason": "too short"})
        assert "rejection_reason" in exc.value.details
        assert incident.status == "submitted"

    def test_reject_returns_to_draft(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        reason = "Please add the location and the time of the fall."
        transition_incident(incident.id, "qi_review.reject", ctx_for(people["analyst"]),
                            {"rejection_reason": reason})
        assert incident.status == "draft"
        assert incident.qi_rejection_reason == reason
        assert incident.submitted_at is None

        # resubmission clears the reason
        transition_incident(incident.id, "submit", ctx_for(people["reporter"]))
        assert incident.qi_rejection_reason is None

    def test_investigator_can_submit_findings(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="investigating", with_investigation=True)
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "submit_findings", ctx_for(people["other"]))
        incident.investigation.investigators.append(people["other"])
        transition_incident(incident.id, "submit_findings", ctx_for(people["other"]))
        assert incident.status == "qi_final_actions"

    def test_begin_final_actions_is_qi_only(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="investigating", with_investigation=True)
        incident.investigation.investigators.append(people["other"])
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "begin_final_actions", ctx_for(people["other"]))
        transition_incident(incident.id, "begin_final_actions", ctx_for(people["analyst"]))
        assert incident.status == "qi_final_actions"


# ═════════════════════════════════════════════════════════════════════════════
# Closure
# ═════════════════════════════════════════════════════════════════════════════


class TestClosure:
    def test_close_blocked_by_open_action(self, people, make_incident, make_action, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_actions")
        open_action = make_action(incident, status="open")
        make_action(incident, status="closed")
        with pytest.raises(ConflictError) as exc:
            transition_incident(incident.id, "close", ctx_for(people["manager"]), CLOSE_DATA)
        assert exc.value.details["open_corrective_action_ids"] == [open_action.id]
        assert incident.status == "qi_final_actions"
        assert incident.closed_at is None

    def test_close_sets_closure_fields(self, people, make_incident, make_action, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_review")
        make_action(incident, status="closed")
        transition_incident(incident.id, "close", ctx_for(people["manager"]), CLOSE_DATA)
        assert incident.status == "closed"
        assert incident.closed_at is not None
        assert incident.closed_by_id == people["manager"].id
        assert incident.case_review == CASE_REVIEW.strip()

    def test_close_without_actions_is_allowed(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_actions")
        transition_incident(incident.id, "close", ctx_for(people["admin"]), CLOSE_DATA)
        assert incident.status == "closed"

    def test_analyst_cannot_close(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_review")
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "close", ctx_for(people["analyst"]), CLOSE_DATA)


# ═════════════════════════════════════════════════════════════════════════════
# Force
# ═════════════════════════════════════════════════════════════════════════════


class TestForce:
    def test_force_is_admin_only(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        with pytest.raises(AuthorizationError):
            transition_incident(incident.id, "force", ctx_for(people["manager"]),
                                {"status": "hod_assigned", "reason": "Legacy import fix"})

    def test_force_reaches_legacy_status(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        transition_incident(incident.id, "force", ctx_for(people["admin"]),
                            {"status": "hod_assigned", "reason": "Legacy import fix"})
        assert incident.status == "hod_assigned"
        row = AuditLog.query.filter_by(incident_id=incident.id, action="incident.force").one()
        assert row.diff["reason"] == "Legacy import fix"

    def test_force_validates_payload(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        with pytest.raises(ValidationError) as exc:
            transition_incident(incident.id, "force", ctx_for(people["admin"]), {"status": "archived"})
        assert set(exc.value.details) == {"status", "reason"}

    def test_force_to_closed_respects_open_actions(self, people, make_incident, make_action, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_actions")
        make_action(incident, status="open")
        with pytest.raises(ConflictError):
            transition_incident(incident.id, "force", ctx_for(people["admin"]),
                                {"status": "closed", "reason": "Duplicate report"})

    def test_force_cannot_leave_closed(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="closed")
        with pytest.raises(ConflictError):
            transition_incident(incident.id, "force", ctx_for(people["admin"]),
                                {"status": "investigating", "reason": "Reopen requested"})

    def test_closure_fields_track_status(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="investigating", with_investigation=True)
        transition_incident(incident.id, "force", ctx_for(people["admin"]),
                            {"status": "closed", "reason": "Duplicate report"})
        assert incident.closed_at is not None and incident.closed_by_id is not None


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency and hints
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrencyAndHints:
    def test_expected_version_mismatch(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        with pytest.raises(ConflictError) as exc:
            transition_incident(incident.id, "qi_review.approve", ctx_for(people["analyst"]),
                                expected_version=incident.version + 5)
        assert exc.value.details["current_version"] == incident.version
        assert incident.status == "submitted"

    def test_expected_version_match(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="submitted")
        version = incident.version
        transition_incident(incident.id, "qi_review.approve", ctx_for(people["analyst"]),
                            expected_version=version)
        assert incident.version == version + 1

    def test_available_actions(self, people, make_incident, make_action, ctx_for):
        draft = make_incident(people["reporter"])
        assert available_actions(draft, ctx_for(people["reporter"])) == ["submit"]
        assert available_actions(draft, ctx_for(people["other"])) == []
        assert available_actions(draft, ctx_for(people["admin"])) == ["force"]

        final = make_incident(people["reporter"], status="qi_final_actions")
        make_action(final, status="open")
        assert "close" not in available_actions(final, ctx_for(people["manager"]))
        assert "request_final_review" in available_actions(final, ctx_for(people["manager"]))

    def test_close_loses_to_concurrent_write(self, people, make_incident, ctx_for):
        incident = make_incident(people["reporter"], status="qi_final_actions")
        assert incident.version == 1
        # another request (e.g. adding a corrective action) commits in between
        db.session.execute(
            db.text("UPDATE incidents SET version = version + 1 WHERE id = :id"),
            {"id": incident.id},
        )
        with pytest.raises(ConflictError) as exc:
            transition_incident(incident.id, "close", ctx_for(people["manager"]), CLOSE_DATA)
        assert "reload" in exc.value.message
        assert incident.status == "qi_final_actions"
        assert incident.closed_at is None
        assert _audit_count(incident.id) == 0

    def test_stale_commit_is_conflict(self, people, make_incident):
        incident = make_incident(people["reporter"])
        original = incident.description
        assert incident.version == 1
        db.session.execute(
            db.text("UPDATE incidents SET version = version + 1 WHERE id = :id"),
            {"id": incident.id},
        )
        incident.description = "Edited after another request saved the report."
        with pytest.raises(ConflictError):
            commit_or_raise()
        assert incident.description == original
