"""
Tests for the Triage API router and the health endpoints.

The router is mounted on a bare FastAPI app and the engine singletons in
careline.triage.setup are patched with a harness-built engine, so no
startup hook (and no external service) is involved.
"""

import time
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from careline.routers.health import router as health_router
from careline.routers.triage_api import router as triage_router


def _wait_for(client, session_id: str, status: str, timeout: float = 3.0) -> dict:
    """Poll GET /sessions/{id} until the escalation reaches ``status``."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/triage/sessions/{session_id}").json()
        case = body.get("escalation_case")
        if case and case["status"] == status:
            return body
        time.sleep(0.02)
    raise AssertionError(f"escalation never reached {status}")


@pytest.fixture
def harness(harness_factory):
    return harness_factory()


@pytest.fixture
def client(harness):
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(triage_router)
    with patch("careline.triage.setup._engine", harness.engine), \
         patch("careline.triage.setup._harness_notifier", harness.notifier), \
         patch("careline.triage.setup._notifier_registry", harness.notifiers):
        with TestClient(app) as c:
            yield c
            c.portal.call(harness.engine.stop)


@pytest.fixture
def offline_client():
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(triage_router)
    with patch("careline.triage.setup._engine", None):
        with TestClient(app) as c:
            yield c


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Health
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHealth:

    def test_root_lists_endpoints(self, client):
        body = client.get("/").json()
        assert body["endpoints"]["submit_utterance"] == "/api/triage/utterances"

    def test_health_reports_engine(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["engine_ready"] is True

    def test_health_without_engine(self, offline_client):
        assert offline_client.get("/health").json()["engine_ready"] is False

    def test_triage_unavailable_without_engine(self, offline_client):
        resp = offline_client.post(
            "/api/triage/utterances", json={"patient_id": "P-1", "text": "hello"}
        )
        assert resp.status_code == 503
        assert "emergency number" in resp.json()["detail"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Utterances
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestUtterances:

    def test_mild_headache_is_tier1(self, client):
        resp = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "I have a mild headache"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["tier"] == 1
        assert body["state"] == "resolved"
        assert body["response"]

    def test_follow_up_question(self, client):
        body = client.post(
            "/api/triage/utterances", json={"patient_id": "P-1", "text": "hello"}
        ).json()
        assert body["state"] == "awaiting_followup"
        assert body["follow_up_question"]

    def test_empty_text_is_bad_request(self, client):
        resp = client.post("/api/triage/utterances", json={"patient_id": "P-1", "text": "  "})
        assert resp.status_code == 400

    def test_invalid_mode_is_bad_request(self, client):
        resp = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "hello", "mode": "fax"},
        )
        assert resp.status_code == 400
        assert "Invalid mode" in resp.json()["detail"]

    def test_missing_patient_is_validation_error(self, client):
        resp = client.post("/api/triage/utterances", json={"text": "hello"})
        assert resp.status_code == 422

    def test_unknown_session_without_create_is_404(self, client):
        resp = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "hello", "session_id": "nope", "allow_create": False},
        )
        assert resp.status_code == 404

    def test_duplicate_sequence_is_conflict(self, client):
        first = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "hello", "sequence": 0},
        ).json()
        resp = client.post(
            "/api/triage/utterances",
            json={
                "patient_id": "P-1", "text": "hello",
                "session_id": first["session_id"], "sequence": 0,
            },
        )
        assert resp.status_code == 409


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sessions and escalation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEscalationFlow:

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/triage/sessions/nope").status_code == 404

    def test_escalation_to_booked_appointment(self, client):
        body = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "I have crushing chest pain and I can't breathe"},
        ).json()
        assert body["tier"] == 3
        assert body["state"] == "escalating"
        sid = body["session_id"]

        view = _wait_for(client, sid, "appointment_offered")
        slot_id = view["escalation_case"]["offered_slots"][0]["slot_id"]

        resp = client.post(f"/api/triage/sessions/{sid}/appointment", json={"slot_id": slot_id})
        assert resp.status_code == 200
        assert resp.json()["status"] == "appointment_booked"

        resp = client.post(f"/api/triage/sessions/{sid}/acknowledge")
        assert resp.status_code == 200
        assert resp.json()["closed"] is True
        assert resp.json()["session"]["state"] == "escalated"

        messages = client.get("/api/triage/messages/P-1").json()["messages"]
        assert messages
        assert all(m["session_id"] == sid for m in messages)

    def test_unoffered_slot_is_bad_request(self, client):
        body = client.post(
            "/api/triage/utterances",
            json={"patient_id": "P-1", "text": "I have crushing chest pain and I can't breathe"},
        ).json()
        sid = body["session_id"]
        _wait_for(client, sid, "appointment_offered")

        resp = client.post(f"/api/triage/sessions/{sid}/appointment", json={"slot_id": "bogus"})
        assert resp.status_code == 400

    def test_handoff_reply_for_unknown_session(self, client):
        resp = client.post("/api/triage/sessions/nope/handoff", json={"accept": True})
        assert resp.status_code == 404

    def test_acknowledge_unknown_session(self, client):
        assert client.post("/api/triage/sessions/nope/acknowledge").status_code == 404


class TestStatus:

    def test_status_counts(self, client):
        client.post("/api/triage/utterances", json={"patient_id": "P-1", "text": "hello"})
        body = client.get("/api/triage/status").json()
        assert body["status"] == "ok"
        assert body["active_sessions"] == 1
        assert body["open_escalations"] == 0
        assert body["registered_channels"] == ["app"]
        assert body["detail"]["engine"]["follow_ups"] == 1

    def test_messages_empty_for_unknown_patient(self, client):
        body = client.get("/api/triage/messages/P-9").json()
        assert body == {"patient_id": "P-9", "messages": []}
