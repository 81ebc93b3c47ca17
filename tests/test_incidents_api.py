"""HTTP surface for incidents: CRUD, visibility, transitions, comments and reference routes."""

from datetime import date, timedelta

import pytest

from ovr.models import db
from ovr.models.audit import AuditLog
from ovr.models.incident import Incident, IncidentComment

BASE = "/api/v1/incidents"

CASE_REVIEW = "The wet floor was left without signage after routine cleaning. " * 3
FEEDBACK = "Thank you for reporting; signage is now permanent at all entrances."


def _payload(**overrides):
    body = {
        "occurrence_date": "2024-03-01",
        "occurrence_time": "14:30",
        "occurrence_category": "fall",
        "description": "Visitor slipped near the pharmacy counter.",
        "level_of_harm": "minor",
        "person_involved": "visitor",
    }
    body.update(overrides)
    return body


@pytest.fixture()
def reporter(make_user):
    return make_user(email="reporter@hospital.org")


@pytest.fixture()
def qm(make_user):
    return make_user(email="qm@hospital.org", roles=["quality_manager"])


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateAndList:
    def test_create_returns_draft(self, client, reporter, auth_headers):
        res = client.post(BASE, json=_payload(), headers=auth_headers(reporter))
        assert res.status_code == 201
        body = res.get_json()
        year = date.today().year
        assert body["id"] == f"OVR-{year}-001"
        assert body["status"] == "draft"
        assert body["reporter_id"] == reporter.id
        assert "submit" in body["available_actions"]

    def test_ids_are_sequential(self, client, reporter, auth_headers):
        headers = auth_headers(reporter)
        client.post(BASE, json=_payload(), headers=headers)
        res = client.post(BASE, json=_payload(), headers=headers)
        assert res.get_json()["id"].endswith("-002")

    def test_future_date_rejected(self, client, reporter, auth_headers):
        tomorrow = (date.today() + timedelta(days=2)).isoformat()
        res = client.post(BASE, json=_payload(occurrence_date=tomorrow), headers=auth_headers(reporter))
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert "occurrence_date" in body["details"]

    def test_missing_fields_reported_together(self, client, reporter, auth_headers):
        res = client.post(BASE, json={"level_of_harm": "catastrophic"}, headers=auth_headers(reporter))
        assert res.status_code == 400
        details = res.get_json()["details"]
        assert {"occurrence_date", "occurrence_category", "description", "level_of_harm"} <= set(details)

    def test_list_paginates(self, client, reporter, auth_headers, make_incident):
        for _ in range(3):
            make_incident(reporter)
        res = client.get(f"{BASE}?limit=2&page=2", headers=auth_headers(reporter))
        assert res.status_code == 200
        body = res.get_json()
        assert len(body["data"]) == 1
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["has_prev"] is True
        assert body["pagination"]["has_next"] is False

    def test_list_filters_by_status(self, client, reporter, auth_headers, make_incident):
        make_incident(reporter)
        make_incident(reporter, status="submitted")
        res = client.get(f"{BASE}?status=submitted", headers=auth_headers(reporter))
        statuses = [i["status"] for i in res.get_json()["data"]]
        assert statuses == ["submitted"]

    def test_unknown_status_filter_is_400(self, client, reporter, auth_headers):
        res = client.get(f"{BASE}?status=bogus", headers=auth_headers(reporter))
        assert res.status_code == 400


class TestVisibility:
    def test_other_employee_gets_404(self, client, reporter, make_user, auth_headers, make_incident):
        incident = make_incident(reporter)
        stranger = make_user()
        res = client.get(f"{BASE}/{incident.id}", headers=auth_headers(stranger))
        assert res.status_code == 404
        assert client.get(BASE, headers=auth_headers(stranger)).get_json()["pagination"]["total"] == 0

    def test_department_head_sees_department(self, client, reporter, make_user, auth_headers,
                                             make_incident, department):
        incident = make_incident(reporter, department_id=department.id)
        head = make_user(roles=["department_head"], department_id=department.id)
        assert client.get(f"{BASE}/{incident.id}", headers=auth_headers(head)).status_code == 200

    def test_supervisor_sees_named_incidents(self, client, reporter, make_user, auth_headers, make_incident):
        supervisor = make_user(roles=["supervisor"])
        named = make_incident(reporter, supervisor_id=supervisor.id)
        other = make_incident(reporter)
        headers = auth_headers(supervisor)
        assert client.get(f"{BASE}/{named.id}", headers=headers).status_code == 200
        assert client.get(f"{BASE}/{other.id}", headers=headers).status_code == 404

    def test_qi_sees_everything(self, client, reporter, qm, auth_headers, make_incident):
        make_incident(reporter)
        make_incident(reporter, status="closed")
        res = client.get(BASE, headers=auth_headers(qm))
        assert res.get_json()["pagination"]["total"] == 2


class TestEditAndDelete:
    def test_owner_edits_draft(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.patch(f"{BASE}/{incident.id}", json={"level_of_harm": "moderate"},
                           headers=auth_headers(reporter))
        assert res.status_code == 200
        assert res.get_json()["level_of_harm"] == "moderate"

    def test_cannot_edit_after_submit(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        res = client.patch(f"{BASE}/{incident.id}", json={"level_of_harm": "moderate"},
                           headers=auth_headers(reporter))
        assert res.status_code == 409

    def test_qi_cannot_edit_someone_elses_draft(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.patch(f"{BASE}/{incident.id}", json={"level_of_harm": "moderate"},
                           headers=auth_headers(qm))
        assert res.status_code == 403

    def test_unknown_field_rejected(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.patch(f"{BASE}/{incident.id}", json={"status": "closed"},
                           headers=auth_headers(reporter))
        assert res.status_code == 400
        assert res.get_json()["details"] == {"status": "not editable"}

    def test_owner_deletes_draft_only(self, client, reporter, auth_headers, make_incident):
        draft = make_incident(reporter)
        submitted = make_incident(reporter, status="submitted")
        headers = auth_headers(reporter)
        assert client.delete(f"{BASE}/{draft.id}", headers=headers).status_code == 200
        assert client.delete(f"{BASE}/{submitted.id}", headers=headers).status_code == 403
        assert db.session.get(Incident, draft.id) is None

    def test_quality_manager_deletes_any(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="investigating", with_investigation=True)
        assert client.delete(f"{BASE}/{incident.id}", headers=auth_headers(qm)).status_code == 200


# ═════════════════════════════════════════════════════════════════════════════
# Workflow over HTTP
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflow:
    def test_full_lifecycle(self, client, reporter, qm, auth_headers):
        rh, qh = auth_headers(reporter), auth_headers(qm)

        incident_id = client.post(BASE, json=_payload(), headers=rh).get_json()["id"]

        res = client.post(f"{BASE}/{incident_id}/submit", json={}, headers=rh)
        assert res.status_code == 200
        assert res.get_json()["incident"]["status"] == "submitted"

        res = client.post(f"{BASE}/{incident_id}/qi-review", json={"decision": "approve"}, headers=qh)
        assert res.status_code == 200
        incident = res.get_json()["incident"]
        assert incident["status"] == "investigating"
        assert incident["investigation"] is not None
        assert incident["investigation"]["investigators"] == []

        action_ids = []
        for title in ("Install wet-floor signs", "Retrain cleaning staff"):
            res = client.post("/api/v1/corrective-actions", json={
                "incident_id": incident_id,
                "title": title,
                "description": "Apply across every entrance and corridor on the ground floor.",
                "due_date": "2030-06-30",
                "checklist": ["Plan", "Execute"],
            }, headers=qh)
            assert res.status_code == 201
            action_ids.append(res.get_json()["action"]["id"])

        detail = client.get(f"{BASE}/{incident_id}", headers=qh).get_json()
        assert detail["status"] == "qi_final_actions"
        assert len(detail["corrective_actions"]) == 2

        close_body = {"case_review": CASE_REVIEW, "reporter_feedback": FEEDBACK}
        client.post(f"/api/v1/corrective-actions/{action_ids[0]}/close", json={}, headers=qh)
        res = client.post(f"{BASE}/{incident_id}/close", json=close_body, headers=qh)
        assert res.status_code == 409
        assert res.get_json()["details"]["open_corrective_action_ids"] == [action_ids[1]]

        client.post(f"/api/v1/corrective-actions/{action_ids[1]}/close", json={}, headers=qh)
        res = client.post(f"{BASE}/{incident_id}/close", json=close_body, headers=qh)
        assert res.status_code == 200
        closed = res.get_json()["incident"]
        assert closed["status"] == "closed"
        assert closed["closed_at"] is not None
        assert closed["closed_by_id"] == qm.id

        history = client.get(f"{BASE}/{incident_id}/history", headers=qh).get_json()
        assert history["total"] >= 5

    def test_invalid_decision_is_400(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        res = client.post(f"{BASE}/{incident.id}/qi-review", json={"decision": "maybe"},
                          headers=auth_headers(qm))
        assert res.status_code == 400
        assert "decision" in res.get_json()["details"]

    def test_reject_needs_reason(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        res = client.post(f"{BASE}/{incident.id}/qi-review",
                          json={"decision": "reject", "rejection_reason": "too short"},
                          headers=auth_headers(qm))
        assert res.status_code == 400

    def test_stale_version_is_409(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.post(f"{BASE}/{incident.id}/submit",
                          json={"expected_version": incident.version + 5},
                          headers=auth_headers(reporter))
        assert res.status_code == 409
        assert db.session.get(Incident, incident.id).status == "draft"

    def test_employee_cannot_approve(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        res = client.post(f"{BASE}/{incident.id}/qi-review", json={"decision": "approve"},
                          headers=auth_headers(reporter))
        assert res.status_code == 403

    def test_hidden_incident_transition_is_404(self, client, reporter, make_user, auth_headers,
                                               make_incident):
        incident = make_incident(reporter)
        res = client.post(f"{BASE}/{incident.id}/submit", json={}, headers=auth_headers(make_user()))
        assert res.status_code == 404

    def test_unified_actions_endpoint(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.post(f"{BASE}/{incident.id}/actions", json={"action": "submit"},
                          headers=auth_headers(reporter))
        assert res.status_code == 200
        assert res.get_json()["transition"]["new_status"] == "submitted"

    def test_unified_actions_unknown_action(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.post(f"{BASE}/{incident.id}/actions", json={"action": "teleport"},
                          headers=auth_headers(reporter))
        assert res.status_code == 400
        assert "action" in res.get_json()["details"]

    def test_force_status_admin_only(self, client, reporter, make_user, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        body = {"status": "investigating", "reason": "Restoring after data fix"}
        res = client.post(f"{BASE}/{incident.id}/force-status", json=body, headers=auth_headers(qm))
        assert res.status_code == 403
        admin = make_user(roles=["super_admin"])
        res = client.post(f"{BASE}/{incident.id}/force-status", json=body, headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["incident"]["status"] == "investigating"


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


class TestComments:
    def _url(self, incident, comment_id=None):
        url = f"{BASE}/{incident.id}/comments"
        return url if comment_id is None else f"{url}/{comment_id}"

    def test_add_comment_is_audited(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        res = client.post(self._url(incident), json={"comment": "  Cones ordered.  "},
                          headers=auth_headers(reporter))
        assert res.status_code == 201
        body = res.get_json()
        assert body["comment"] == "Cones ordered."
        assert body["user"]["id"] == reporter.id
        row = AuditLog.query.filter_by(incident_id=incident.id, action="comment.create").one()
        assert row.entity_type == "comment"
        assert row.entity_id == str(body["id"])

    def test_list_is_newest_first(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        client.post(self._url(incident), json={"comment": "First"}, headers=auth_headers(reporter))
        client.post(self._url(incident), json={"comment": "Second"}, headers=auth_headers(qm))
        body = client.get(self._url(incident), headers=auth_headers(reporter)).get_json()
        assert body["total"] == 2
        assert [c["comment"] for c in body["items"]] == ["Second", "First"]

    def test_comments_follow_incident_visibility(self, client, reporter, auth_headers,
                                                 make_incident, make_user):
        incident = make_incident(reporter, status="submitted")
        stranger = make_user(email="stranger@hospital.org")
        headers = auth_headers(stranger)
        assert client.get(self._url(incident), headers=headers).status_code == 404
        res = client.post(self._url(incident), json={"comment": "Hello"}, headers=headers)
        assert res.status_code == 404
        assert IncidentComment.query.count() == 0

    def test_empty_comment_is_400(self, client, reporter, auth_headers, make_incident):
        incident = make_incident(reporter)
        res = client.post(self._url(incident), json={"comment": "   "}, headers=auth_headers(reporter))
        assert res.status_code == 400
        assert "comment" in res.get_json()["details"]

    def test_only_author_deletes(self, client, reporter, qm, auth_headers, make_incident):
        incident = make_incident(reporter, status="submitted")
        created = client.post(self._url(incident), json={"comment": "Mine"},
                              headers=auth_headers(reporter)).get_json()
        url = self._url(incident, created["id"])

        assert client.delete(url, headers=auth_headers(qm)).status_code == 403
        res = client.delete(url, headers=auth_headers(reporter))
        assert res.status_code == 200
        assert res.get_json() == {"deleted": True, "id": created["id"]}
        assert db.session.get(IncidentComment, created["id"]) is None
        assert AuditLog.query.filter_by(action="comment.delete").count() == 1

    def test_admin_deletes_any(self, client, reporter, auth_headers, make_incident, make_user):
        incident = make_incident(reporter, status="submitted")
        admin = make_user(email="admin@hospital.org", roles=["super_admin"])
        created = client.post(self._url(incident), json={"comment": "Off topic"},
                              headers=auth_headers(reporter)).get_json()
        res = client.delete(self._url(incident, created["id"]), headers=auth_headers(admin))
        assert res.status_code == 200

    def test_delete_under_other_incident_is_404(self, client, reporter, auth_headers, make_incident):
        first = make_incident(reporter, status="submitted")
        second = make_incident(reporter, status="submitted")
        created = client.post(self._url(first), json={"comment": "Here"},
                              headers=auth_headers(reporter)).get_json()
        res = client.delete(self._url(second, created["id"]), headers=auth_headers(reporter))
        assert res.status_code == 404
        assert db.session.get(IncidentComment, created["id"]) is not None


# ═════════════════════════════════════════════════════════════════════════════
# Reference, export, health, request guards
# ═════════════════════════════════════════════════════════════════════════════


class TestReferenceRoutes:
    def test_statuses_are_public(self, client):
        res = client.get("/api/v1/statuses")
        assert res.status_code == 200
        items = {s["value"]: s for s in res.get_json()["items"]}
        assert items["draft"]["transitions"]["submit"] == "submitted"
        assert items["closed"]["terminal"] is True

    def test_stats_scoped(self, client, reporter, qm, auth_headers, make_incident):
        make_incident(reporter)
        make_incident(reporter, status="closed")
        body = client.get("/api/v1/stats", headers=auth_headers(qm)).get_json()
        assert body["total"] == 2
        assert body["closed"] == 1
        assert body["by_status"]["draft"] == 1

    def test_stats_need_user(self, client):
        assert client.get("/api/v1/stats").status_code == 401

    def test_export_for_qi(self, client, reporter, qm, auth_headers, make_incident, make_action):
        incident = make_incident(reporter, status="qi_final_actions", with_investigation=True)
        make_action(incident)
        res = client.get(f"{BASE}/export.xlsx", headers=auth_headers(qm))
        assert res.status_code == 200
        assert res.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        assert res.data[:2] == b"PK"

    def test_export_forbidden_for_employee(self, client, reporter, auth_headers):
        assert client.get(f"{BASE}/export.xlsx", headers=auth_headers(reporter)).status_code == 403

    def test_health(self, client):
        assert client.get("/api/v1/health/ready").status_code == 200
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"

    def test_non_json_body_is_415(self, client, reporter, auth_headers):
        res = client.post(BASE, data="occurrence_date=2024-01-01",
                          content_type="text/plain", headers=auth_headers(reporter))
        assert res.status_code == 415
        assert res.get_json()["code"] == "ERR_UNSUPPORTED_MEDIA"

    def test_error_body_shape(self, client, reporter, auth_headers):
        res = client.get(f"{BASE}/OVR-1999-999", headers=auth_headers(reporter))
        assert res.status_code == 404
        body = res.get_json()
        assert body["code"] == "ERR_NOT_FOUND"
        assert body["error"] == "Incident not found"

    def test_validation_error_carries_details(self, client, reporter, auth_headers):
        res = client.post(BASE, json={}, headers=auth_headers(reporter))
        assert res.status_code == 400
        assert set(res.get_json()) == {"error", "code", "details"}
