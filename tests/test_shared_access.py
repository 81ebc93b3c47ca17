"""Shared-access invitations, token presentation and revocation."""

from datetime import datetime, timedelta, timezone

import pytest

from ovr.core.exceptions import AuthorizationError, ConflictError, ValidationError
from ovr.models import db
from ovr.models.shared_access import SharedAccess
from ovr.services import shared_access_service as sas
from ovr.services.jwt_service import hash_token


def _token(grant_dict):
    return grant_dict["access_url"].split("token=", 1)[1]


@pytest.fixture()
def setup(make_user, make_incident, make_action):
    reporter = make_user(email="nurse@hospital.org")
    analyst = make_user(email="qa@hospital.org", roles=["quality_analyst"])
    investigating = make_incident(reporter, status="investigating", with_investigation=True)
    final = make_incident(reporter, status="qi_final_actions")
    action = make_action(final)
    return {
        "reporter": reporter,
        "analyst": analyst,
        "incident": investigating,
        "investigation": investigating.investigation,
        "action": action,
    }


def _invite(setup, ctx, **overrides):
    data = {
        "resource_type": "investigation",
        "resource_id": setup["investigation"].id,
        "email": "Dr.Expert@Partner.org",
    }
    data.update(overrides)
    return sas.invite(data, ctx)


# ═════════════════════════════════════════════════════════════════════════════
# Invitations
# ═════════════════════════════════════════════════════════════════════════════


class TestInvite:
    def test_invite_returns_raw_token_once(self, setup, ctx_for):
        result = _invite(setup, ctx_for(setup["analyst"]))
        inv_id = setup["investigation"].id
        assert result["access_url"].startswith(f"http://ovr.test/investigations/{inv_id}?token=")
        assert result["status"] == "pending"
        assert result["role"] == "investigator"
        assert result["email"] == "dr.expert@partner.org"
        assert result["incident_id"] == setup["incident"].id

        row = db.session.get(SharedAccess, result["id"])
        token = _token(result)
        assert len(token) == 64
        assert row.token_hash == hash_token(token)
        assert token not in row.token_hash

    def test_corrective_action_defaults_to_handler(self, setup, ctx_for):
        result = _invite(setup, ctx_for(setup["analyst"]),
                         resource_type="corrective_action", resource_id=setup["action"].id)
        assert result["role"] == "action_handler"
        assert "/corrective_actions/" in result["access_url"]

    def test_investigator_role_only_on_investigations(self, setup, ctx_for):
        with pytest.raises(ValidationError):
            _invite(setup, ctx_for(setup["analyst"]), resource_type="corrective_action",
                    resource_id=setup["action"].id, role="investigator")

    def test_invite_requires_qi(self, setup, ctx_for):
        with pytest.raises(AuthorizationError):
            _invite(setup, ctx_for(setup["reporter"]))

    def test_invite_rejects_bad_email(self, setup, ctx_for):
        with pytest.raises(ValidationError) as exc:
            _invite(setup, ctx_for(setup["analyst"]), email="not-an-email")
        assert "email" in exc.value.details

    def test_invite_rejects_bad_target(self, setup, ctx_for):
        with pytest.raises(ValidationError) as exc:
            _invite(setup, ctx_for(setup["analyst"]), resource_type="incident", resource_id="x")
        assert set(exc.value.details) == {"resource_type", "resource_id"}

    def test_invite_refused_on_closed_incident(self, setup, ctx_for):
        setup["incident"].status = "closed"
        db.session.commit()
        with pytest.raises(ConflictError):
            _invite(setup, ctx_for(setup["analyst"]))

    def test_bulk_is_all_or_nothing(self, setup, ctx_for):
        data = {
            "resource_type": "investigation",
            "resource_id": setup["investigation"].id,
            "invitations": [{"email": "a@partner.org"}, {"email": "broken"}],
        }
        with pytest.raises(ValidationError):
            sas.invite_bulk(data, ctx_for(setup["analyst"]))
        assert SharedAccess.query.count() == 0

        data["invitations"] = [{"email": "a@partner.org"}, {"email": "b@partner.org", "role": "viewer"}]
        results = sas.invite_bulk(data, ctx_for(setup["analyst"]))
        assert [r["role"] for r in results] == ["investigator", "viewer"]
        assert SharedAccess.query.count() == 2

    def test_bulk_limit(self, setup, ctx_for):
        data = {
            "resource_type": "investigation",
            "resource_id": setup["investigation"].id,
            "invitations": [{"email": f"u{i}@partner.org"} for i in range(sas.MAX_BULK_INVITES + 1)],
        }
        with pytest.raises(ValidationError):
            sas.invite_bulk(data, ctx_for(setup["analyst"]))

    def test_list_grants_filters(self, setup, ctx_for):
        ctx = ctx_for(setup["analyst"])
        _invite(setup, ctx)
        _invite(setup, ctx, resource_type="corrective_action", resource_id=setup["action"].id)
        assert len(sas.list_grants(ctx)) == 2
        only = sas.list_grants(ctx, resource_type="corrective_action")
        assert [g["resource_id"] for g in only] == [setup["action"].id]
        with pytest.raises(AuthorizationError):
            sas.list_grants(ctx_for(setup["reporter"]))


# ═════════════════════════════════════════════════════════════════════════════
# Token presentation
# ═════════════════════════════════════════════════════════════════════════════


class TestTokenPresentation:
    def test_first_use_accepts(self, setup, ctx_for):
        result = _invite(setup, ctx_for(setup["analyst"]))
        grant = sas.resolve_token(_token(result))
        assert grant.role == "investigator"
        assert grant.incident_id == setup["incident"].id
        assert grant.email == "dr.expert@partner.org"

        row = db.session.get(SharedAccess, result["id"])
        assert row.status == "accepted"
        assert row.accepted_at is not None
        assert row.last_accessed_at is not None

    def test_unknown_token_resolves_to_none(self):
        assert sas.resolve_token("0" * 64) is None
        assert sas.resolve_token("") is None

    def test_expired_token_grants_nothing(self, setup, ctx_for):
        result = _invite(setup, ctx_for(setup["analyst"]))
        row = db.session.get(SharedAccess, result["id"])
        row.token_expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        db.session.commit()
        assert sas.resolve_token(_token(result)) is None

    def test_expiry_must_be_future(self, setup, ctx_for):
        with pytest.raises(ValidationError):
            _invite(setup, ctx_for(setup["analyst"]), token_expires_at="2001-01-01")

    def test_revoke_is_idempotent(self, setup, ctx_for):
        ctx = ctx_for(setup["analyst"])
        result = _invite(setup, ctx)
        assert sas.revoke(result["id"], ctx)["status"] == "revoked"
        assert sas.revoke(result["id"], ctx)["status"] == "revoked"
        assert sas.resolve_token(_token(result)) is None


# ═════════════════════════════════════════════════════════════════════════════
# Over HTTP
# ═════════════════════════════════════════════════════════════════════════════


class TestOverHttp:
    def test_token_opens_investigation(self, client, setup, auth_headers):
        res = client.post("/api/v1/shared-access", json={
            "resource_type": "investigation",
            "resource_id": setup["investigation"].id,
            "email": "expert@partner.org",
        }, headers=auth_headers(setup["analyst"]))
        assert res.status_code == 201
        token = _token(res.get_json())

        res = client.get(f"/api/v1/investigations/{setup['investigation'].id}?token={token}")
        assert res.status_code == 200
        assert res.get_json()["can_edit"] is True

        res = client.get("/api/v1/auth/me", headers={"X-Share-Token": token})
        body = res.get_json()
        assert body["user"] is None
        assert body["grants"][0]["role"] == "investigator"

    def test_revoked_token_is_401(self, client, setup, auth_headers, ctx_for):
        result = _invite(setup, ctx_for(setup["analyst"]))
        token = _token(result)
        res = client.delete(f"/api/v1/shared-access/{result['id']}", headers=auth_headers(setup["analyst"]))
        assert res.status_code == 200
        res = client.get(f"/api/v1/investigations/{setup['investigation'].id}?token={token}")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_token_does_not_open_other_incidents(self, client, setup, ctx_for, make_incident):
        other = make_incident(setup["reporter"], status="investigating", with_investigation=True)
        token = _token(_invite(setup, ctx_for(setup["analyst"])))
        res = client.get(f"/api/v1/investigations/{other.investigation.id}?token={token}")
        assert res.status_code == 404
        res = client.get(f"/api/v1/incidents/{other.id}?token={token}")
        assert res.status_code == 404

    def test_bulk_and_list_over_http(self, client, setup, auth_headers):
        headers = auth_headers(setup["analyst"])
        res = client.put("/api/v1/shared-access", json={
            "resource_type": "corrective_action",
            "resource_id": setup["action"].id,
            "invitations": [{"email": "a@partner.org"}, {"email": "b@partner.org"}],
        }, headers=headers)
        assert res.status_code == 201
        assert res.get_json()["total"] == 2

        res = client.get(
            f"/api/v1/shared-access?resource_type=corrective_action&resource_id={setup['action'].id}",
            headers=headers,
        )
        assert res.status_code == 200
        assert {g["email"] for g in res.get_json()["items"]} == {"a@partner.org", "b@partner.org"}
