"""
Integration Tests for the HTTP surface
Run: pytest tests/test_api.py -v
"""
from sqlalchemy import select

from consent_vault.encryption_utils import looks_encrypted
from consent_vault.models import Profile

STAFF = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


def create_profile(client, **fields):
    body = {
        "email": "arjun@example.com",
        "full_name": "Arjun Sharma",
        "phone": "+353 87 123 4567",
        "city": "Dublin",
        "state": "Leinster",
        "country": "IE",
    }
    body.update(fields)
    resp = client.post("/api/profiles", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def stored_row(client, profile_id):
    with client.app.state.session_factory() as db:
        return db.execute(select(Profile).where(Profile.id == profile_id)).scalar_one()


class TestHealth:
    def test_health_reports_encryption(self, client):
        resp = client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json()["encryption"] is True

    def test_health_db(self, client):
        assert client.get("/api/health/db").json() == {"db": "ok", "result": 1}


class TestProfiles:
    def test_create_encrypts_at_rest_and_returns_plaintext(self, client):
        created = create_profile(client)

        assert created["full_name"] == "Arjun Sharma"
        assert created["email"] == "arjun@example.com"

        row = stored_row(client, created["id"])
        assert looks_encrypted(row.full_name)
        assert looks_encrypted(row.phone)
        assert looks_encrypted(row.city)
        assert row.email == "arjun@example.com"
        assert row.state == "Leinster"
        assert row.country == "IE"

    def test_duplicate_email(self, client):
        create_profile(client)
        resp = client.post("/api/profiles", json={"email": "arjun@example.com"})

        assert resp.status_code == 409

    def test_patch_touches_only_sent_fields(self, client):
        created = create_profile(client)
        before = stored_row(client, created["id"])

        resp = client.patch(f"/api/profiles/{created['id']}", json={"city": "Cork"})

        assert resp.status_code == 200
        assert resp.json()["city"] == "Cork"
        assert resp.json()["full_name"] == "Arjun Sharma"
        after = stored_row(client, created["id"])
        assert after.full_name == before.full_name
        assert after.phone == before.phone
        assert after.city != before.city and looks_encrypted(after.city)

    def test_get_profile(self, client):
        created = create_profile(client)

        resp = client.get(f"/api/profiles/{created['id']}")

        assert resp.json()["phone"] == "+353 87 123 4567"
        assert client.get("/api/profiles/missing").status_code == 404


class TestConsentEndpoints:
    def test_full_flow(self, client):
        parent = create_profile(client, email="anita@example.com", role="parent", full_name="Anita Sharma")
        child = create_profile(client, parent_id=parent["id"])
        parent_headers = {"X-User-Id": parent["id"], "X-User-Role": "parent"}

        assert client.get(f"/api/consent/{child['id']}", headers=parent_headers).status_code == 404

        resp = client.post(
            "/api/consent",
            json={"student_id": child["id"], "consented_by": parent["id"]},
            headers={"User-Agent": "pytest-browser", **parent_headers},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["consent_given"] is True
        assert body["user_agent"] == "pytest-browser"
        assert body["ip_address"]
        assert body["student"]["full_name"] == "Arjun Sharma"
        assert body["consented_by_user"]["full_name"] == "Anita Sharma"

        resp = client.post(
            f"/api/consent/{child['id']}/withdraw", json={"reason": "changed mind"}, headers=parent_headers
        )
        assert resp.json()["withdrawn"] is True
        assert resp.json()["withdrawn_reason"] == "changed mind"

        history = client.get(f"/api/consent/{child['id']}/history", headers=parent_headers).json()
        assert [e["action"] for e in history["events"]] == ["given", "withdrawn"]
        assert [e["actor_id"] for e in history["events"]] == [parent["id"], parent["id"]]
        assert history["state"] == "withdrawn"

    def test_hidden_from_anonymous(self, client):
        child = create_profile(client)
        client.post("/api/consent", json={"student_id": child["id"], "consented_by": child["id"]}, headers=STAFF)

        assert client.get(f"/api/consent/{child['id']}").status_code == 404
        assert client.get(f"/api/consent/{child['id']}", headers=STAFF).status_code == 200

    def test_withdraw_without_consent(self, client):
        child = create_profile(client)

        resp = client.post(f"/api/consent/{child['id']}/withdraw", json={}, headers=STAFF)

        assert resp.status_code == 409
        assert resp.json()["code"] == "CONSENT_STATE_ERROR"

    def test_anonymous_withdraw_is_rejected(self, client):
        child = create_profile(client)
        client.post("/api/consent", json={"student_id": child["id"], "consented_by": child["id"]}, headers=STAFF)

        resp = client.post(f"/api/consent/{child['id']}/withdraw", json={"reason": "not me"})

        assert resp.status_code == 404
        current = client.get(f"/api/consent/{child['id']}", headers=STAFF).json()
        assert current["consent_given"] is True
        assert current["withdrawn"] is False

    def test_unrelated_parent_cannot_give_or_withdraw(self, client):
        child = create_profile(client)
        stranger = create_profile(client, email="stranger@example.com", role="parent")
        stranger_headers = {"X-User-Id": stranger["id"], "X-User-Role": "parent"}

        resp = client.post(
            "/api/consent",
            json={"student_id": child["id"], "consented_by": stranger["id"]},
            headers=stranger_headers,
        )
        assert resp.status_code == 404

        client.post("/api/consent", json={"student_id": child["id"], "consented_by": child["id"]}, headers=STAFF)
        resp = client.post(f"/api/consent/{child['id']}/withdraw", json={}, headers=stranger_headers)
        assert resp.status_code == 404

    def test_withdraw_without_user_id_records_no_actor(self, client):
        child = create_profile(client)
        client.post("/api/consent", json={"student_id": child["id"], "consented_by": child["id"]}, headers=STAFF)

        resp = client.post(f"/api/consent/{child['id']}/withdraw", json={}, headers={"X-User-Role": "admin"})
        assert resp.status_code == 200

        history = client.get(f"/api/consent/{child['id']}/history", headers=STAFF).json()
        assert history["events"][-1]["action"] == "withdrawn"
        assert history["events"][-1]["actor_id"] is None

    def test_history_without_record_is_404(self, client):
        child = create_profile(client)

        assert client.get(f"/api/consent/{child['id']}/history", headers=STAFF).status_code == 404

    def test_batch(self, client):
        a = create_profile(client, email="a@example.com")
        b = create_profile(client, email="b@example.com")
        for sid in (a["id"], b["id"]):
            client.post("/api/consent", json={"student_id": sid, "consented_by": sid}, headers=STAFF)

        resp = client.post("/api/consent/batch", json={"student_ids": [a["id"], b["id"]]}, headers=STAFF)

        assert {r["student_id"] for r in resp.json()} == {a["id"], b["id"]}


class TestAdminEndpoints:
    def test_requires_staff(self, client):
        assert client.get("/api/admin/consents").status_code == 403
        assert client.get("/api/admin/consents/stats", headers={"X-User-Role": "parent"}).status_code == 403

    def test_listing_and_stats(self, client):
        a = create_profile(client, email="a@example.com")
        b = create_profile(client, email="b@example.com")
        create_profile(client, email="c@example.com")
        for sid in (a["id"], b["id"]):
            client.post("/api/consent", json={"student_id": sid, "consented_by": sid}, headers=STAFF)
        client.post(f"/api/consent/{b['id']}/withdraw", json={}, headers=STAFF)

        page = client.get("/api/admin/consents", params={"consent_status": "given"}, headers=STAFF).json()
        assert page["count"] == 1
        assert page["data"][0]["student"]["full_name"] == "Arjun Sharma"

        stats = client.get("/api/admin/consents/stats", headers=STAFF).json()
        assert stats == {"total_students": 3, "consented": 1, "not_consented": 2, "withdrawn": 1}

    def test_bad_status_rejected(self, client):
        resp = client.get("/api/admin/consents", params={"consent_status": "maybe"}, headers=STAFF)

        assert resp.status_code == 422
