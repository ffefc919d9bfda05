"""
Tests for the httpx-backed collaborators.

Requests are served by httpx.MockTransport, so no network is touched.
"""

import json

import httpx
import pytest

from careline.triage.collaborators import AppointmentRequest, ProviderAlert
from careline.triage.http_collaborators import (
    CareServicesClient,
    HttpAppointments,
    HttpCommunication,
    HttpPatientData,
    HttpProviderAvailability,
)
from careline.triage.models import FindingSeverity, RedFlagFinding


SLOT = {
    "slot_id": "dr-lee-1",
    "provider_id": "dr-lee",
    "start": "2026-03-02T14:00:00+00:00",
    "mode": "in_person",
}


class Recorder:
    """MockTransport handler that records requests and replies from a route table."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"detail": "not found"})
        return response


def _client(routes, token: str = "") -> tuple[CareServicesClient, Recorder]:
    recorder = Recorder(routes)
    client = CareServicesClient(
        "https://care.example.test/api/", token, transport=httpx.MockTransport(recorder)
    )
    return client, recorder


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Patient data + availability
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPatientData:

    @pytest.mark.asyncio
    async def test_snapshot_is_parsed(self):
        client, recorder = _client({
            ("GET", "/api/patients/P-1/snapshot"): httpx.Response(200, json={
                "patient_id": "P-1",
                "active_prescriptions": [{"name": "metformin", "dose": "500 mg"}],
                "chronic_conditions": ["type 2 diabetes"],
                "assigned_provider_id": "dr-lee",
            }),
        }, token="secret")
        snapshot = await HttpPatientData(client).get_snapshot("P-1")
        await client.aclose()

        assert snapshot.assigned_provider_id == "dr-lee"
        assert snapshot.active_prescriptions[0].dose == "500 mg"
        assert recorder.requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        client, _ = _client({
            ("GET", "/api/patients/P-1/snapshot"): httpx.Response(503),
        })
        with pytest.raises(httpx.HTTPStatusError):
            await HttpPatientData(client).get_snapshot("P-1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        client, recorder = _client({
            ("GET", "/api/providers/dr-lee/availability"): httpx.Response(
                200, json={"available": True, "status": "online"}
            ),
        })
        status = await HttpProviderAvailability(client).check_availability("dr-lee")
        await client.aclose()

        assert status.available
        assert status.status == "online"
        assert "Authorization" not in recorder.requests[0].headers


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Communication
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCommunication:

    @pytest.mark.asyncio
    async def test_alert_posts_findings(self):
        client, recorder = _client({
            ("POST", "/api/providers/dr-lee/alerts"): httpx.Response(204),
        })
        alert = ProviderAlert(
            patient_id="P-1",
            provider_id="dr-lee",
            session_id="S-1",
            case_id="C-1",
            findings=[RedFlagFinding(type="cardiac_chest_pain", severity=FindingSeverity.CRITICAL)],
            summary="chest pain (8/10)",
        )
        await HttpCommunication(client).alert_provider(alert)
        await client.aclose()

        body = json.loads(recorder.requests[0].content)
        assert body["case_id"] == "C-1"
        assert body["findings"][0]["type"] == "cardiac_chest_pain"

    @pytest.mark.asyncio
    async def test_chat_handoff_returns_handle(self):
        client, recorder = _client({
            ("POST", "/api/handoffs/chat"): httpx.Response(200, json={"handle_id": "H-9"}),
        })
        handle = await HttpCommunication(client).start_chat("P-1", "dr-lee", {"case_id": "C-1"})
        await client.aclose()

        assert handle.handle_id == "H-9"
        assert handle.channel == "chat"
        assert handle.provider_id == "dr-lee"
        body = json.loads(recorder.requests[0].content)
        assert body["context"] == {"case_id": "C-1"}

    @pytest.mark.asyncio
    async def test_voice_handoff_uses_voice_route(self):
        client, recorder = _client({
            ("POST", "/api/handoffs/voice"): httpx.Response(200, json={"handle_id": "H-10"}),
        })
        handle = await HttpCommunication(client).start_voice("P-1", "dr-lee", {})
        await client.aclose()
        assert handle.channel == "voice"
        assert recorder.requests[0].url.path == "/api/handoffs/voice"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Appointments
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAppointments:

    @pytest.mark.asyncio
    async def test_slots_from_wrapped_body(self):
        client, recorder = _client({
            ("GET", "/api/providers/dr-lee/slots"): httpx.Response(200, json={"slots": [SLOT]}),
        })
        slots = await HttpAppointments(client).get_slots("dr-lee")
        await client.aclose()

        assert [s.slot_id for s in slots] == ["dr-lee-1"]
        params = recorder.requests[0].url.params
        assert params["urgent"] == "true"
        assert params["modes"] == "in_person,video"

    @pytest.mark.asyncio
    async def test_slots_from_bare_list(self):
        client, _ = _client({
            ("GET", "/api/providers/dr-lee/slots"): httpx.Response(200, json=[SLOT]),
        })
        slots = await HttpAppointments(client).get_slots("dr-lee", modes=("video",))
        await client.aclose()
        assert slots[0].mode == "in_person"

    @pytest.mark.asyncio
    async def test_book_posts_request(self):
        client, recorder = _client({
            ("POST", "/api/appointments"): httpx.Response(201, json={
                "appointment_id": "A-1", "patient_id": "P-1", "slot": SLOT,
            }),
        })
        appointment = await HttpAppointments(client).book(AppointmentRequest(
            patient_id="P-1", provider_id="dr-lee", slot_id="dr-lee-1", mode="in_person",
        ))
        await client.aclose()

        assert appointment.appointment_id == "A-1"
        assert appointment.slot.slot_id == "dr-lee-1"
        body = json.loads(recorder.requests[0].content)
        assert body["slot_id"] == "dr-lee-1"
        assert body["urgent"] is True
