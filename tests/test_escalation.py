"""
Tests for the Escalation Coordinator.

Covers:
  - Provider alert + availability check on every escalation
  - Idempotency: repeated/concurrent escalate() → one case, one alert
  - Unavailable provider → urgent slots → booking
  - Available provider → hand-off offer → accept / decline / failure
  - Provider alert retries, per-attempt timeout and failure audit
  - Deadline overrun → emergency fallback + reliability incident
  - Acknowledgement, released sessions and closed-case lookup
"""

import asyncio

import pytest

from careline.triage.collaborators import (
    AvailabilityStatus,
    DeliveryResult,
    PatientMessage,
    ProviderAlert,
)
from careline.triage.errors import SessionNotFound
from careline.triage.events import AuditEventKind
from careline.triage.harness import (
    HarnessNotifier,
    InMemoryAppointments,
    InMemoryCommunication,
    StaticAvailability,
)
from careline.triage.models import (
    ConversationSession,
    EscalationPath,
    EscalationStatus,
    FindingSeverity,
    InteractionMode,
    RedFlagFinding,
    SymptomEvidence,
)


# ── Helpers ──


FINDING = RedFlagFinding(
    type="cardiac_chest_pain",
    severity=FindingSeverity.CRITICAL,
    rationale="Chest pain with shortness of breath",
)


def _session(sid: str = "S-1", mode: InteractionMode = InteractionMode.TEXT) -> ConversationSession:
    session = ConversationSession(session_id=sid, patient_id="P-1", mode=mode)
    session.merge_symptoms([
        SymptomEvidence(name="chest pain", severity=8),
        SymptomEvidence(name="shortness of breath", severity=6),
    ])
    return session


async def _escalate(h, sid: str = "S-1", mode: InteractionMode = InteractionMode.TEXT):
    return await h.escalation.escalate(
        _session(sid, mode),
        findings=[FINDING],
        reason="red_flag",
        provider_id="dr-lee",
    )


class SlowAppointments(InMemoryAppointments):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def get_slots(self, provider_id, *, urgent=True, modes=("in_person", "video")):
        await asyncio.sleep(self.delay)
        return await super().get_slots(provider_id, urgent=urgent, modes=modes)


class SlowAvailability(StaticAvailability):
    async def check_availability(self, provider_id: str) -> AvailabilityStatus:
        await asyncio.sleep(5)
        return AvailabilityStatus(available=True)


class FailingAlerts(InMemoryCommunication):
    async def alert_provider(self, alert: ProviderAlert) -> None:
        raise ConnectionError("pager down")


class FlakyAlerts(InMemoryCommunication):
    """Fails the first ``failures`` alerts, then delivers."""

    def __init__(self, failures: int = 2):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def alert_provider(self, alert: ProviderAlert) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("pager busy")
        await super().alert_provider(alert)


class HangingAlerts(InMemoryCommunication):
    """The first alert never returns."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def alert_provider(self, alert: ProviderAlert) -> None:
        self.attempts += 1
        if self.attempts == 1:
            await asyncio.sleep(10)
        await super().alert_provider(alert)


class HangingNotifier(HarnessNotifier):
    async def send(self, message: PatientMessage) -> DeliveryResult:
        await asyncio.sleep(10)
        return await super().send(message)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Start + idempotency
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEscalationStart:

    @pytest.mark.asyncio
    async def test_alerts_provider_and_checks_availability(self, make_harness):
        h = make_harness()
        case = await _escalate(h)
        assert case.status == EscalationStatus.PENDING
        assert case.provider_id == "dr-lee"

        outcome = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert h.availability.checked == ["dr-lee"]
        assert outcome.patient_notified

        await asyncio.sleep(0.05)
        assert len(h.communication.alerts) == 1
        alert = h.communication.alerts[0]
        assert alert.case_id == case.case_id
        assert "chest pain (8/10)" in alert.summary
        assert h.escalation.get_case("S-1").provider_alerted_at is not None

    @pytest.mark.asyncio
    async def test_repeated_escalate_returns_same_case(self, make_harness):
        h = make_harness()
        first, second = await asyncio.gather(_escalate(h), _escalate(h))
        third = await _escalate(h)

        assert first.case_id == second.case_id == third.case_id
        await h.escalation.wait_for_outcome("S-1", timeout=2)
        await asyncio.sleep(0.05)
        assert len(h.communication.alerts) == 1
        assert len(h.audit.of_kind(AuditEventKind.ESCALATION_STARTED, "S-1")) == 1
        assert h.escalation.get_metrics()["escalations_started"] == 1

    @pytest.mark.asyncio
    async def test_alert_failure_is_counted_but_patient_still_notified(self, make_harness, eventually):
        h = make_harness(communication=FailingAlerts(), deadline_seconds=0.3)
        await _escalate(h)
        outcome = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert outcome.patient_notified

        await eventually(lambda: h.escalation.get_metrics()["provider_alert_failures"] == 1)
        failed = h.audit.of_kind(AuditEventKind.PROVIDER_ALERT_FAILED, "S-1")
        assert len(failed) >= 2
        assert [e.detail["attempt"] for e in failed] == list(range(1, len(failed) + 1))
        assert failed[0].detail["error"] == "pager down"
        assert not h.audit.of_kind(AuditEventKind.PROVIDER_ALERT, "S-1")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Provider alert retries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestProviderAlert:

    @pytest.mark.asyncio
    async def test_alert_retried_until_delivered(self, make_harness, eventually):
        communication = FlakyAlerts(failures=2)
        h = make_harness(communication=communication)
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED

        await eventually(lambda: len(communication.alerts) == 1)
        sent = h.audit.of_kind(AuditEventKind.PROVIDER_ALERT, "S-1")
        assert sent[0].detail["attempts"] == 3
        assert len(h.audit.of_kind(AuditEventKind.PROVIDER_ALERT_FAILED, "S-1")) == 2
        assert h.escalation.get_metrics()["provider_alert_failures"] == 0

    @pytest.mark.asyncio
    async def test_hanging_alert_times_out_and_is_retried(self, make_harness, eventually):
        communication = HangingAlerts()
        h = make_harness(communication=communication, alert_timeout=0.05)
        await _escalate(h)

        await eventually(lambda: len(communication.alerts) == 1)
        failed = h.audit.of_kind(AuditEventKind.PROVIDER_ALERT_FAILED, "S-1")
        assert failed[0].detail["error"] == "TimeoutError"
        assert h.escalation.get_case("S-1").provider_alerted_at is not None

    @pytest.mark.asyncio
    async def test_fallback_case_gets_one_more_attempt(self, make_harness, eventually):
        communication = FailingAlerts()
        h = make_harness(
            communication=communication,
            appointments=InMemoryAppointments(slot_count=0),
            deadline_seconds=0.2,
        )
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.EMERGENCY_FALLBACK

        await eventually(lambda: h.escalation.get_metrics()["provider_alert_failures"] == 1)
        failed = h.audit.of_kind(AuditEventKind.PROVIDER_ALERT_FAILED, "S-1")
        # The final attempt lands after the retry window closed
        assert len(failed) >= 2


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Scheduled appointment path
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAppointmentPath:

    @pytest.mark.asyncio
    async def test_unavailable_provider_gets_slots_then_booking(self, make_harness):
        h = make_harness()
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)

        assert case.status == EscalationStatus.APPOINTMENT_OFFERED
        assert case.path == EscalationPath.SCHEDULED_APPOINTMENT
        assert len(case.offered_slots) == 3
        messages = h.notifier.get_messages("P-1")
        assert messages[-1].metadata["kind"] == "outcome"
        assert len(messages[-1].metadata["slots"]) == 3

        slot_id = case.offered_slots[0]["slot_id"]
        booked = await h.escalation.book_appointment("S-1", slot_id)
        assert booked.status == EscalationStatus.APPOINTMENT_BOOKED
        assert booked.appointment["slot"]["slot_id"] == slot_id
        assert len(h.appointments.bookings) == 1

        event = h.audit.of_kind(AuditEventKind.APPOINTMENT_BOOKED, "S-1")
        assert len(event) == 1
        assert event[0].detail["slot_id"] == slot_id

    @pytest.mark.asyncio
    async def test_booking_a_slot_that_was_not_offered(self, make_harness):
        h = make_harness()
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)
        with pytest.raises(ValueError):
            await h.escalation.book_appointment("S-1", "someone-else-9")

    @pytest.mark.asyncio
    async def test_booking_before_offer_is_rejected(self, make_harness):
        h = make_harness(availability=SlowAvailability(), availability_timeout=1.0)
        await _escalate(h)
        with pytest.raises(ValueError):
            await h.escalation.book_appointment("S-1", "dr-lee-1")

    @pytest.mark.asyncio
    async def test_availability_timeout_counts_as_unavailable(self, make_harness):
        h = make_harness(availability=SlowAvailability(), availability_timeout=0.05)
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.availability["status"] == "timeout"
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED

    @pytest.mark.asyncio
    async def test_no_slots_falls_back_to_emergency_guidance(self, make_harness):
        h = make_harness(appointments=InMemoryAppointments(slot_count=0))
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.EMERGENCY_FALLBACK
        assert "999" in case.patient_message
        event = h.audit.of_kind(AuditEventKind.EMERGENCY_FALLBACK, "S-1")
        assert event[0].detail["reason"] == "no_appointment_slots"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Immediate contact path
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHandoffPath:

    @pytest.mark.asyncio
    async def test_accepted_handoff_starts_chat(self, make_harness, eventually):
        availability = StaticAvailability(default_available=True)
        h = make_harness(availability=availability)
        await _escalate(h)
        await eventually(lambda: h.escalation.get_case("S-1").status
                         == EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE)

        offer = h.notifier.get_messages("P-1")[-1]
        assert offer.metadata["kind"] == "handoff_offer"

        await h.escalation.respond_to_handoff("S-1", accept=True)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.HANDED_OFF
        assert case.path == EscalationPath.IMMEDIATE_CONTACT
        assert case.handoff_channel == "chat"
        assert len(h.communication.handoffs) == 1
        assert h.audit.of_kind(AuditEventKind.HANDOFF_STARTED, "S-1")

    @pytest.mark.asyncio
    async def test_voice_session_gets_voice_handoff(self, make_harness, eventually):
        h = make_harness(availability=StaticAvailability(default_available=True))
        await _escalate(h, mode=InteractionMode.VOICE)
        await eventually(lambda: h.escalation.get_case("S-1").status
                         == EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE)
        await h.escalation.respond_to_handoff("S-1", accept=True)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.handoff_channel == "voice"

    @pytest.mark.asyncio
    async def test_declined_handoff_offers_appointment(self, make_harness, eventually):
        h = make_harness(availability=StaticAvailability(default_available=True))
        await _escalate(h)
        await eventually(lambda: h.escalation.get_case("S-1").status
                         == EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE)
        await h.escalation.respond_to_handoff("S-1", accept=False)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED
        assert h.communication.handoffs == []

    @pytest.mark.asyncio
    async def test_no_reply_offers_appointment(self, make_harness):
        h = make_harness(
            availability=StaticAvailability(default_available=True),
            handoff_reply_seconds=0.05,
        )
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED

    @pytest.mark.asyncio
    async def test_failed_handoff_offers_appointment(self, make_harness, eventually):
        communication = InMemoryCommunication()
        communication.fail_handoff = True
        h = make_harness(
            availability=StaticAvailability(default_available=True),
            communication=communication,
        )
        await _escalate(h)
        await eventually(lambda: h.escalation.get_case("S-1").status
                         == EscalationStatus.AWAITING_HANDOFF_ACCEPTANCE)
        await h.escalation.respond_to_handoff("S-1", accept=True)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)

        assert case.status == EscalationStatus.APPOINTMENT_OFFERED
        assert h.audit.of_kind(AuditEventKind.HANDOFF_FAILED, "S-1")
        assert h.escalation.get_metrics()["handoff_failures"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Deadline
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDeadline:

    @pytest.mark.asyncio
    async def test_slow_slot_lookup_hits_emergency_fallback(self, make_harness, caplog):
        h = make_harness(deadline_seconds=0.3, appointments=SlowAppointments(delay=5))

        with caplog.at_level("ERROR", logger="triage.escalation"):
            await _escalate(h)
            case = await h.escalation.wait_for_outcome("S-1", timeout=2)

        assert case.status == EscalationStatus.EMERGENCY_FALLBACK
        assert case.path == EscalationPath.EMERGENCY_FALLBACK
        assert case.patient_notified
        assert "999" in h.notifier.get_messages("P-1")[-1].message
        assert h.escalation.get_metrics()["deadline_exceeded"] == 1
        event = h.audit.of_kind(AuditEventKind.EMERGENCY_FALLBACK, "S-1")
        assert event[0].detail["reason"] == "deadline_exceeded"
        assert "RELIABILITY INCIDENT" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_slots_within_deadline_are_offered(self, make_harness):
        h = make_harness(deadline_seconds=1.0, appointments=SlowAppointments(delay=0.1))
        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED
        assert h.escalation.get_metrics()["deadline_exceeded"] == 0

    @pytest.mark.asyncio
    async def test_hanging_channel_does_not_hold_fallback(self, make_harness):
        h = make_harness(
            deadline_seconds=0.3,
            appointments=SlowAppointments(delay=5),
            fallback_notify_timeout=0.05,
        )
        h.notifiers.register(HangingNotifier())

        await _escalate(h)
        case = await h.escalation.wait_for_outcome("S-1", timeout=1)
        assert case.status == EscalationStatus.EMERGENCY_FALLBACK
        assert case.patient_notified
        assert "999" in case.patient_message


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Acknowledgement
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAcknowledge:

    @pytest.mark.asyncio
    async def test_acknowledge_closes_case(self, make_harness):
        h = make_harness()
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)

        closed = await h.escalation.acknowledge("S-1")
        assert closed.patient_notified
        assert h.escalation.open_cases == []
        assert h.escalation.get_case("S-1").case_id == closed.case_id
        assert h.audit.of_kind(AuditEventKind.ESCALATION_ACKNOWLEDGED, "S-1")

    @pytest.mark.asyncio
    async def test_acknowledge_is_idempotent(self, make_harness):
        h = make_harness()
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)
        first = await h.escalation.acknowledge("S-1")
        second = await h.escalation.acknowledge("S-1")
        assert first.case_id == second.case_id
        assert len(h.audit.of_kind(AuditEventKind.ESCALATION_ACKNOWLEDGED, "S-1")) == 1

    @pytest.mark.asyncio
    async def test_closing_drops_per_case_state(self, make_harness, eventually):
        h = make_harness()
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)
        await eventually(lambda: h.escalation.get_case("S-1").provider_alerted_at is not None)
        await h.escalation.acknowledge("S-1")

        coordinator = h.escalation
        assert "S-1" not in coordinator._contexts
        assert "S-1" not in coordinator._alert_state
        assert "S-1" not in coordinator._alert_deadlines
        assert "S-1" not in coordinator._outcomes

    @pytest.mark.asyncio
    async def test_alert_in_flight_keeps_state_until_done(self, make_harness, eventually):
        communication = HangingAlerts()
        h = make_harness(communication=communication, alert_timeout=0.2)
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)
        await h.escalation.acknowledge("S-1")
        assert h.escalation._alert_state["S-1"] == "pending"

        await eventually(lambda: len(communication.alerts) == 1)
        await eventually(lambda: "S-1" not in h.escalation._contexts)
        assert "S-1" not in h.escalation._alert_state

    @pytest.mark.asyncio
    async def test_released_session_closes_notified_case(self, make_harness):
        h = make_harness()
        await _escalate(h)
        await h.escalation.wait_for_outcome("S-1", timeout=2)

        await h.escalation.release_session("S-1")
        assert h.escalation.open_cases == []
        event = h.audit.of_kind(AuditEventKind.ESCALATION_CLOSED, "S-1")
        assert event[0].detail["reason"] == "session_ended"
        assert (await h.escalation.acknowledge("S-1")).patient_notified

    @pytest.mark.asyncio
    async def test_released_session_in_flight_closes_after_notification(self, make_harness, eventually):
        h = make_harness(availability=SlowAvailability(), availability_timeout=0.2)
        await _escalate(h)
        await h.escalation.release_session("S-1")
        assert len(h.escalation.open_cases) == 1

        case = await h.escalation.wait_for_outcome("S-1", timeout=2)
        assert case.status == EscalationStatus.APPOINTMENT_OFFERED
        await eventually(lambda: h.escalation.open_cases == [])
        assert h.audit.of_kind(AuditEventKind.ESCALATION_CLOSED, "S-1")

    @pytest.mark.asyncio
    async def test_acknowledge_before_notification_is_rejected(self, make_harness):
        h = make_harness(availability=SlowAvailability(), availability_timeout=1.0)
        await _escalate(h)
        with pytest.raises(ValueError):
            await h.escalation.acknowledge("S-1")

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_harness):
        h = make_harness()
        with pytest.raises(SessionNotFound):
            await h.escalation.acknowledge("nope")
        assert h.escalation.get_case("nope") is None
