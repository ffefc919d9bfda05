"""
HTTP Collaborators — httpx clients for the EMR, scheduling and
communication services.

Configuration (environment variables):
  CARE_SERVICES_URL    — base URL of the care-services API
  CARE_SERVICES_TOKEN  — bearer token (optional)

All clients raise on transport errors and non-2xx responses; the engine
components that call them own the timeout and fallback policy.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from careline.triage.collaborators import (
    Appointment,
    AppointmentProvider,
    AppointmentRequest,
    AppointmentSlot,
    AvailabilityStatus,
    CommunicationProvider,
    HandoffHandle,
    PatientDataProvider,
    PatientSnapshot,
    ProviderAlert,
    ProviderAvailabilityProvider,
)

logger = logging.getLogger("triage.http_collaborators")


class CareServicesClient:
    """Shared httpx.AsyncClient for every care-services collaborator."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def post_json(self, path: str, body: dict[str, Any]) -> Any:
        response = await self._client.post(path, json=body)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpPatientData(PatientDataProvider):
    def __init__(self, client: CareServicesClient) -> None:
        self._client = client

    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        data = await self._client.get_json(f"/patients/{patient_id}/snapshot")
        return PatientSnapshot.model_validate(data)


class HttpProviderAvailability(ProviderAvailabilityProvider):
    def __init__(self, client: CareServicesClient) -> None:
        self._client = client

    async def check_availability(self, provider_id: str) -> AvailabilityStatus:
        data = await self._client.get_json(f"/providers/{provider_id}/availability")
        return AvailabilityStatus.model_validate(data)


class HttpCommunication(CommunicationProvider):
    def __init__(self, client: CareServicesClient) -> None:
        self._client = client

    async def start_chat(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        return await self._start("chat", patient_id, provider_id, context)

    async def start_voice(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        return await self._start("voice", patient_id, provider_id, context)

    async def alert_provider(self, alert: ProviderAlert) -> None:
        await self._client.post_json(
            f"/providers/{alert.provider_id}/alerts",
            alert.model_dump(mode="json"),
        )

    async def _start(
        self,
        channel: str,
        patient_id: str,
        provider_id: str,
        context: dict[str, Any],
    ) -> HandoffHandle:
        data = await self._client.post_json(
            f"/handoffs/{channel}",
            {"patient_id": patient_id, "provider_id": provider_id, "context": context},
        )
        return HandoffHandle.model_validate(
            {"channel": channel, "provider_id": provider_id, **(data or {})}
        )


class HttpAppointments(AppointmentProvider):
    def __init__(self, client: CareServicesClient) -> None:
        self._client = client

    async def get_slots(
        self,
        provider_id: str,
        *,
        urgent: bool = True,
        modes: tuple[str, ...] = ("in_person", "video"),
    ) -> list[AppointmentSlot]:
        data = await self._client.get_json(
            f"/providers/{provider_id}/slots",
            params={"urgent": str(urgent).lower(), "modes": ",".join(modes)},
        )
        slots = data.get("slots", []) if isinstance(data, dict) else data
        return [AppointmentSlot.model_validate(s) for s in slots]

    async def book(self, request: AppointmentRequest) -> Appointment:
        data = await self._client.post_json(
            "/appointments", request.model_dump(mode="json")
        )
        return Appointment.model_validate(data)
