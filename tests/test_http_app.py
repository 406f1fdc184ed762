# tests/test_http_app.py
"""HTTP tests for dispatch_core/transport/http_app.py (TestClient, in-memory store)."""
from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_TOKEN, TECH_B_TOKEN, TECH_TOKEN, make_job
from dispatch_core.config import Settings
from dispatch_core.transport.http_app import create_app


def _settings(**overrides) -> Settings:
    values = {
        "app_env": "dev",
        "store_backend": "memory",
        "enable_request_logging": False,
        "rate_limit_per_token": 100,
        "rate_limit_per_address": 200,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client(seeded_store, clock):
    app = create_app(_settings(), store=seeded_store, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestHealthAndHeaders:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_request_id_and_security_headers(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


class TestAuthentication:
    def test_missing_token(self, client):
        resp = client.get("/portal/jobs")
        assert resp.status_code == 401
        assert resp.json() == {"ok": False, "error": "Invalid/expired session", "error_code": "bad_session"}

    def test_unknown_token(self, client):
        resp = client.get("/portal/jobs", headers=_bearer("x" * 32))
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "bad_session"

    def test_expired_session(self, client, clock):
        clock.advance(3601)
        resp = client.get("/portal/jobs", headers=_bearer(TECH_TOKEN))

        assert resp.status_code == 401
        assert resp.json()["error_code"] == "session_expired"

    def test_query_token(self, client):
        resp = client.get("/portal/jobs", params={"token": TECH_TOKEN})
        assert resp.status_code == 200

    def test_body_token(self, client):
        resp = client.post("/portal/jobs/job_1/accept", json={"token": TECH_TOKEN})
        assert resp.status_code == 200

    def test_header_wins_over_query(self, client):
        resp = client.get(
            "/portal/jobs",
            headers=_bearer(TECH_TOKEN),
            params={"token": "y" * 32},
        )
        assert resp.status_code == 200


class TestPortal:
    def test_available_jobs(self, client):
        resp = client.get("/portal/jobs", headers=_bearer(TECH_TOKEN))

        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert [j["job_id"] for j in body["offers"]] == ["job_1"]
        assert body["offers"][0]["distance_miles"] == 7.5
        assert body["upcoming"] == [] and body["completed"] == []
        assert resp.headers["X-RateLimit-Limit"] == "100"

    def test_flagged_jobs_not_shown_to_technicians(self, seeded_store, clock):
        asyncio.run(seeded_store.insert("jobs", make_job("job_bad", dest_lat=None)))
        app = create_app(_settings(), store=seeded_store, clock=clock)
        with TestClient(app) as client:
            body = client.get("/portal/jobs", headers=_bearer(TECH_TOKEN)).json()

        assert [j["job_id"] for j in body["offers"]] == ["job_1"]
        assert "flagged" not in body
        assert "job_bad" not in str(body)

    def test_decline_then_buckets(self, client):
        resp = client.post("/portal/jobs/job_1/decline", headers=_bearer(TECH_TOKEN))
        assert resp.json() == {"ok": True, "job_id": "job_1", "status": "pending_assign"}

        assert client.get("/portal/jobs", headers=_bearer(TECH_TOKEN)).json()["offers"] == []
        offers_b = client.get("/portal/jobs", headers=_bearer(TECH_B_TOKEN)).json()["offers"]
        assert [j["job_id"] for j in offers_b] == ["job_1"]

        client.post("/portal/jobs/job_1/accept", headers=_bearer(TECH_B_TOKEN))
        body = client.get("/portal/jobs", headers=_bearer(TECH_B_TOKEN)).json()
        assert [j["job_id"] for j in body["upcoming"]] == ["job_1"]

    def test_accept_complete_and_payouts(self, client):
        accept = client.post("/portal/jobs/job_1/accept", headers=_bearer(TECH_TOKEN))
        assert accept.status_code == 200
        assert accept.json()["status"] == "accepted"

        complete = client.post("/portal/jobs/job_1/complete", headers=_bearer(TECH_TOKEN))
        assert complete.status_code == 200
        body = complete.json()
        assert body["ledger_created"] is True
        assert body["ledger"]["amount"] == "449.97"
        assert body["ledger"]["state"] == "pending"

        repeat = client.post("/portal/jobs/job_1/complete", headers=_bearer(TECH_TOKEN))
        assert repeat.json()["ledger_created"] is False
        assert repeat.json()["ledger"]["id"] == body["ledger"]["id"]

        payouts = client.get("/portal/payouts", headers=_bearer(TECH_TOKEN)).json()["payouts"]
        assert [p["job_id"] for p in payouts] == ["job_1"]

    def test_accept_taken_job_conflicts(self, client):
        client.post("/portal/jobs/job_1/accept", headers=_bearer(TECH_TOKEN))
        resp = client.post("/portal/jobs/job_1/accept", headers=_bearer(TECH_B_TOKEN))

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "invalid_transition"

    def test_unknown_job(self, client):
        resp = client.post("/portal/jobs/nope/accept", headers=_bearer(TECH_TOKEN))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "not_found"


class TestAdmin:
    def _ledger_id(self, client) -> str:
        client.post("/portal/jobs/job_1/accept", headers=_bearer(TECH_TOKEN))
        return client.post("/portal/jobs/job_1/complete", headers=_bearer(TECH_TOKEN)).json()["ledger"]["id"]

    def test_approve_reopen_audit(self, client):
        ledger_id = self._ledger_id(client)

        approve = client.post(
            f"/admin/payouts/{ledger_id}/state", json={"state": "approved"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert approve.status_code == 200
        assert approve.json()["ledger"]["state"] == "approved"

        reopen = client.post(
            f"/admin/payouts/{ledger_id}/reopen", json={"reason": "refund issued"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert reopen.json()["ledger"]["state"] == "pending"

        audit = client.get(f"/admin/payouts/{ledger_id}/audit", headers=_bearer(ADMIN_TOKEN))
        assert audit.json()["audit"]["matches"] is True

    def test_admin_token_in_body(self, client):
        ledger_id = self._ledger_id(client)
        resp = client.post(f"/admin/payouts/{ledger_id}/state", json={"state": "rejected", "token": ADMIN_TOKEN})
        assert resp.json()["ledger"]["state"] == "rejected"

    def test_technician_is_forbidden(self, client):
        ledger_id = self._ledger_id(client)
        resp = client.post(
            f"/admin/payouts/{ledger_id}/state", json={"state": "approved"}, headers=_bearer(TECH_TOKEN),
        )
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "unauthorized"

    def test_missing_state_is_400(self, client):
        ledger_id = self._ledger_id(client)
        resp = client.post(f"/admin/payouts/{ledger_id}/state", json={}, headers=_bearer(ADMIN_TOKEN))

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "validation_error"

    def test_unknown_state_is_400(self, client):
        ledger_id = self._ledger_id(client)
        resp = client.post(
            f"/admin/payouts/{ledger_id}/state", json={"state": "paid"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert resp.status_code == 400

    def test_dispatch_candidates_and_assign(self, client):
        resp = client.get("/admin/jobs/job_1/candidates", headers=_bearer(ADMIN_TOKEN))
        body = resp.json()
        assert resp.status_code == 200
        assert [m["technician_id"] for m in body["matches"]] == ["tech_a", "tech_b"]
        assert body["total_matches"] == 2

        assign = client.post(
            "/admin/jobs/job_1/assign", json={"technician_id": "tech_b"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert assign.json() == {
            "ok": True, "job_id": "job_1", "status": "accepted", "assigned_technician_id": "tech_b",
        }

        again = client.post(
            "/admin/jobs/job_1/assign", json={"technician_id": "tech_a"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert again.status_code == 409

    def test_dispatch_is_admin_only(self, client):
        resp = client.get("/admin/jobs/job_1/candidates", headers=_bearer(TECH_TOKEN))
        assert resp.status_code == 403

    def test_technician_status(self, client):
        resp = client.post(
            "/admin/technicians/tech_b/status", json={"status": "inactive"}, headers=_bearer(ADMIN_TOKEN),
        )
        assert resp.json() == {"ok": True, "technician_id": "tech_b", "status": "inactive"}


class TestRateLimiting:
    def test_token_ceiling(self, seeded_store, clock):
        app = create_app(_settings(rate_limit_per_token=2), store=seeded_store, clock=clock)
        with TestClient(app) as client:
            codes = [client.get("/portal/jobs", headers=_bearer(TECH_TOKEN)).status_code for _ in range(3)]
            denied = client.get("/portal/jobs", headers=_bearer(TECH_TOKEN))

            assert codes == [200, 200, 429]
            assert denied.json()["error_code"] == "rate_limit_exceeded"
            assert denied.headers["Retry-After"] == "60"

            clock.advance(61)
            assert client.get("/portal/jobs", headers=_bearer(TECH_TOKEN)).status_code == 200

    def test_address_ceiling_for_anonymous(self, seeded_store, clock):
        app = create_app(_settings(rate_limit_per_address=2), store=seeded_store, clock=clock)
        with TestClient(app) as client:
            codes = [client.get("/portal/jobs").status_code for _ in range(3)]

        assert codes == [401, 401, 429]

    def test_health_not_rate_limited(self, seeded_store, clock):
        app = create_app(_settings(rate_limit_per_address=1), store=seeded_store, clock=clock)
        with TestClient(app) as client:
            assert all(client.get("/health").status_code == 200 for _ in range(5))
