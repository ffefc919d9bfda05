"""
Harness Collaborators — in-memory implementations of every collaborator.

Used in development mode (no CARE_SERVICES_URL) and throughout the test
suite.  Everything is stored in memory so tests and the status endpoint can
inspect what the engine asked for.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any

from careline.triage.clock import Clock
from careline.triage.collaborators import (
    Appointment,
    AppointmentProvider,
    AppointmentRequest,
    AppointmentSlot,
    AvailabilityStatus,
    CommunicationProvider,
    DeliveryResult,
    HandoffHandle,
    PatientDataProvider,
    PatientMessage,
    PatientNotifier,
    PatientSnapshot,
    ProviderAlert,
    ProviderAvailabilityProvider,
)

logger = logging.getLogger("triage.harness")


class InMemoryPatientData(PatientDataProvider):
    """Snapshots keyed by patient id.  Unknown patients get an empty snapshot."""

    def __init__(self, snapshots: dict[str, PatientSnapshot] | None = None) -> None:
        self._snapshots: dict[str, PatientSnapshot] = dict(snapshots or {})
        self.unavailable = False
        self.calls = 0

    def put(self, snapshot: PatientSnapshot) -> None:
        self._snapshots[snapshot.patient_id] = snapshot

    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        self.calls += 1
        if self.unavailable:
            raise ConnectionError("patient data service unavailable")
        snapshot = self._snapshots.get(patient_id)
        if snapshot is None:
            return PatientSnapshot(patient_id=patient_id, chronic_conditions=[], active_prescriptions=[])
        return snapshot.model_copy(deep=True)


class StaticAvailability(ProviderAvailabilityProvider):
    """Availability per provider id, with a default for everyone else."""

    def __init__(self, default_available: bool = False) -> None:
        self._default = default_available
        self._statuses: dict[str, AvailabilityStatus] = {}
        self.checked: list[str] = []

    def set(self, provider_id: str, available: bool, status: str = "") -> None:
        self._statuses[provider_id] = AvailabilityStatus(
            available=available,
            status=status or ("online" if available else "off_shift"),
        )

    async def check_availability(self, provider_id: str) -> AvailabilityStatus:
        self.checked.append(provider_id)
        status = self._statuses.get(provider_id)
        if status is None:
            return AvailabilityStatus(
                available=self._default,
                status="online" if self._default else "off_shift",
            )
        return status


class InMemoryCommunication(CommunicationProvider):
    """Records hand-offs and provider alerts."""

    def __init__(self) -> None:
        self.handoffs: list[HandoffHandle] = []
        self.alerts: list[ProviderAlert] = []
        self.fail_handoff = False

    async def start_chat(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        return self._start("chat", provider_id)

    async def start_voice(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        return self._start("voice", provider_id)

    async def alert_provider(self, alert: ProviderAlert) -> None:
        self.alerts.append(alert)
        logger.info(
            "Harness provider alert → %s for patient %s (case %s)",
            alert.provider_id, alert.patient_id, alert.case_id,
        )

    def _start(self, channel: str, provider_id: str) -> HandoffHandle:
        if self.fail_handoff:
            raise ConnectionError(f"{channel} hand-off transport unavailable")
        handle = HandoffHandle(
            handle_id=str(uuid.uuid4())[:8], channel=channel, provider_id=provider_id
        )
        self.handoffs.append(handle)
        return handle


class InMemoryAppointments(AppointmentProvider):
    """Generates a handful of urgent slots and books them once each."""

    def __init__(self, clock: Clock | None = None, slot_count: int = 3) -> None:
        self._clock = clock or Clock()
        self._slot_count = slot_count
        self._slots: dict[str, AppointmentSlot] = {}
        self.bookings: list[Appointment] = []

    async def get_slots(
        self,
        provider_id: str,
        *,
        urgent: bool = True,
        modes: tuple[str, ...] = ("in_person", "video"),
    ) -> list[AppointmentSlot]:
        now = self._clock.now().replace(second=0, microsecond=0)
        first_offset = timedelta(hours=1) if urgent else timedelta(days=2)
        slots = []
        for i in range(self._slot_count):
            slot = AppointmentSlot(
                slot_id=f"{provider_id}-{i + 1}",
                provider_id=provider_id,
                start=now + first_offset + timedelta(hours=i),
                mode=modes[i % len(modes)],
            )
            self._slots.setdefault(slot.slot_id, slot)
            slots.append(self._slots[slot.slot_id])
        return slots

    async def book(self, request: AppointmentRequest) -> Appointment:
        slot = self._slots.get(request.slot_id)
        if slot is None:
            raise ValueError(f"Unknown slot {request.slot_id}")
        if any(b.slot.slot_id == slot.slot_id for b in self.bookings):
            raise ValueError(f"Slot {request.slot_id} already booked")
        appointment = Appointment(
            appointment_id=str(uuid.uuid4())[:8],
            patient_id=request.patient_id,
            slot=slot,
            urgent=request.urgent,
            confirmed_at=self._clock.now(),
        )
        self.bookings.append(appointment)
        return appointment


class HarnessNotifier(PatientNotifier):
    """Stores patient messages in memory for polling."""

    channel_name = "app"

    def __init__(self) -> None:
        # patient_id → list of PatientMessages
        self._message_log: dict[str, list[PatientMessage]] = defaultdict(list)

    async def send(self, message: PatientMessage) -> DeliveryResult:
        self._message_log[message.patient_id].append(message)
        logger.debug(
            "Harness stored message for %s (session %s)",
            message.patient_id, message.session_id,
        )
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            patient_id=message.patient_id,
        )

    def get_messages(self, patient_id: str) -> list[PatientMessage]:
        return list(self._message_log.get(patient_id, []))

    def clear(self, patient_id: str | None = None) -> None:
        if patient_id:
            self._message_log.pop(patient_id, None)
        else:
            self._message_log.clear()
