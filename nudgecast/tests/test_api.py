"""
Tests for API Endpoints

Drives the public routes through the FastAPI test client against the
per-test database.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import default_account
from fastapi.testclient import TestClient

from nudgecast.api.app import app
from nudgecast.api.public import get_db_session
from nudgecast.features.window_utils import utcnow
from nudgecast.guardrails.envelopes import protect_bill_envelope
from nudgecast.ingest.schema import FinancialProfile


@pytest.fixture
def client(session):
    """Get FastAPI test client bound to the test session."""
    def override():
        yield session

    app.dependency_overrides[get_db_session] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


def headers(user):
    return {"X-User-Id": user.user_id}


def nudge_payload(**overrides):
    payload = {
        "type": "auto-save",
        "message": "Save ₹500 today?",
        "reason": "There is spare room in this week's budget",
        "expires_at": (utcnow() + timedelta(days=1)).isoformat(),
        "amount": 500,
        "priority": 5,
    }
    payload.update(overrides)
    return payload


class TestPublicAPI:
    """Tests for the public endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_missing_caller(self, client):
        response = client.get("/api/nudges/active")

        assert response.status_code == 401
        assert response.json()["error_type"] == "unauthorized"

    def test_unknown_caller(self, client):
        response = client.get("/api/nudges/active", headers={"X-User-Id": "nobody"})

        assert response.status_code == 401

    def test_create_nudge(self, client, make_user):
        user = make_user()

        response = client.post("/api/nudges", json=nudge_payload(), headers=headers(user))

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["auto_accepted"] is False
        assert data["nudge"]["status"] == "pending"
        assert data["nudge"]["amount"] == 500.0

    def test_create_with_unknown_type(self, client, make_user):
        user = make_user()

        response = client.post("/api/nudges", json=nudge_payload(type="lottery"), headers=headers(user))

        assert response.status_code == 422
        assert response.json()["error_type"] == "invalid_request"

    def test_request_validation(self, client, make_user):
        user = make_user()
        payload = nudge_payload()
        del payload["message"]

        response = client.post("/api/nudges", json=payload, headers=headers(user))

        assert response.status_code == 422
        assert response.json()["error_type"] == "invalid_request"

    def test_accept_moves_money_once(self, client, session, make_user):
        user = make_user(balance="10000")
        created = client.post("/api/nudges", json=nudge_payload(), headers=headers(user)).json()
        nudge_id = created["nudge"]["nudge_id"]

        first = client.post(f"/api/nudges/{nudge_id}/accept", headers=headers(user))
        second = client.post(f"/api/nudges/{nudge_id}/accept", headers=headers(user))

        assert first.status_code == 200
        assert first.json()["nudge"]["status"] == "executed"
        assert second.status_code == 409
        assert second.json()["error_type"] == "already_processed"
        session.expire_all()
        assert default_account(session, user).balance == Decimal("9500.00")

    def test_accept_unknown_nudge(self, client, make_user):
        user = make_user()

        response = client.post("/api/nudges/missing/accept", headers=headers(user))

        assert response.status_code == 404
        assert response.json()["error_type"] == "not_found"

    def test_reject_then_list(self, client, make_user):
        user = make_user()
        nudge_id = client.post("/api/nudges", json=nudge_payload(), headers=headers(user)).json()["nudge"]["nudge_id"]

        rejected = client.post(f"/api/nudges/{nudge_id}/reject", headers=headers(user))
        active = client.get("/api/nudges/active", headers=headers(user))
        history = client.get("/api/nudges", headers=headers(user))

        assert rejected.json()["nudge"]["status"] == "rejected"
        assert active.json()["nudges"] == []
        assert [n["nudge_id"] for n in history.json()["nudges"]] == [nudge_id]

    def test_auto_nudge_toggle(self, client, make_user):
        user = make_user()

        response = client.put("/api/profile/auto-nudge", json={"enabled": True}, headers=headers(user))

        assert response.status_code == 200
        assert response.json()["auto_nudge_enabled"] is True


class TestForecastAPI:
    """Tests for the forecast and what-if endpoints."""

    def test_forecast(self, client, make_user):
        user = make_user(balance="20000")

        response = client.get("/api/forecast", params={"days": 7}, headers=headers(user))

        assert response.status_code == 200
        forecast = response.json()["forecast"]
        assert len(forecast["predictions"]) == 8
        assert forecast["predictions"][0]["day_offset"] == 0

    def test_forecast_range_is_validated(self, client, make_user):
        user = make_user()

        response = client.get("/api/forecast", params={"days": 120}, headers=headers(user))

        assert response.status_code == 422

    def test_what_if(self, client, make_user):
        user = make_user(balance="20000")
        body = {"scenarios": [
            {"type": "spending", "amount": 5000, "name": "Laptop"},
            {"type": "income", "amount": 3000, "name": "Weekend gig"},
        ]}

        response = client.post("/api/explain/what-if", json=body, headers=headers(user))

        assert response.status_code == 200
        assert response.json()["best_scenario"] == "Weekend gig"

    def test_what_if_rejects_unknown_scenario(self, client, make_user):
        user = make_user()
        body = {"scenarios": [{"type": "lottery", "amount": 100}]}

        response = client.post("/api/explain/what-if", json=body, headers=headers(user))

        assert response.status_code == 422


class TestEnvelopeAPI:
    """Tests for listing and releasing bill envelopes."""

    def _envelope(self, session, user, add_bill, amount=2000):
        bill = add_bill(user, amount, utcnow() + timedelta(days=3))
        envelope = protect_bill_envelope(session, user.user_id, amount, bill_id=bill.bill_id, due_date=bill.next_due_date)
        session.commit()
        return envelope

    def test_list_with_total(self, client, session, make_user, add_bill):
        user = make_user()
        envelope = self._envelope(session, user, add_bill)

        response = client.get("/api/bills/envelopes", headers=headers(user))

        assert response.status_code == 200
        data = response.json()
        assert [e["envelope_id"] for e in data["envelopes"]] == [envelope.envelope_id]
        assert data["envelopes"][0]["status"] == "active"
        assert data["protected_total"] == 2000.0

    def test_release_then_release_again(self, client, session, make_user, add_bill):
        user = make_user()
        envelope = self._envelope(session, user, add_bill)
        url = f"/api/bills/envelopes/{envelope.envelope_id}/release"

        first = client.post(url, headers=headers(user))
        second = client.post(url, headers=headers(user))
        active = client.get("/api/bills/envelopes", headers=headers(user)).json()
        everything = client.get("/api/bills/envelopes", params={"include_released": True}, headers=headers(user)).json()

        assert first.status_code == 200
        assert first.json()["envelope"]["status"] == "released"
        assert second.status_code == 409
        assert second.json()["error_type"] == "already_processed"
        assert active["envelopes"] == []
        assert active["protected_total"] == 0.0
        assert len(everything["envelopes"]) == 1

    def test_release_someone_elses_envelope(self, client, session, make_user, add_bill):
        owner = make_user()
        intruder = make_user()
        envelope = self._envelope(session, owner, add_bill)

        response = client.post(f"/api/bills/envelopes/{envelope.envelope_id}/release", headers=headers(intruder))

        assert response.status_code == 404
        assert response.json()["error_type"] == "not_found"


class TestGenerateAPI:

    def test_reports_delivery_hour(self, client, session, make_user):
        user = make_user(balance="50000")
        profile = session.query(FinancialProfile).filter(FinancialProfile.user_id == user.user_id).one()
        profile.optimal_nudge_hour = 19
        session.commit()

        response = client.post("/api/nudges/generate", headers=headers(user))

        assert response.status_code == 200
        assert response.json()["deliver_at_hour"] == 19

    def test_personalization_includes_timing(self, client, make_user):
        user = make_user()

        response = client.get("/api/profile/personalization", headers=headers(user))

        assert response.json()["summary"]["optimal_time"]["hour"] == 9
