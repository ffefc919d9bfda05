"""
Shared fixtures for the triage test suite.

Every engine built here runs on the in-memory harness collaborators with
short timings, so escalation deadlines and reorder windows fit inside a
unit test.  The ManualClock drives timestamps and inactivity; asyncio
timeouts still run on the event loop's clock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

import pytest
import pytest_asyncio

from careline.triage.audit import InMemoryAuditSink
from careline.triage.classifier import ClassifierAdapter
from careline.triage.clock import ManualClock
from careline.triage.collaborators import (
    IntentClassifier,
    NotifierRegistry,
    PatientSnapshot,
)
from careline.triage.engine import TriageEngine
from careline.triage.escalation import EscalationCoordinator
from careline.triage.harness import (
    HarnessNotifier,
    InMemoryAppointments,
    InMemoryCommunication,
    InMemoryPatientData,
    StaticAvailability,
)
from careline.triage.models import ClassificationResult, IntentCategory
from careline.triage.nlp.keyword_classifier import KeywordIntentClassifier
from careline.triage.nlp.symptom_extractor import KeywordSymptomExtractor
from careline.triage.registry import SessionRegistry
from careline.triage.responses import ResponseComposer
from careline.triage.router import TierRouter
from careline.triage.session import ConversationStateMachine


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Test doubles
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GatedClassifier(IntentClassifier):
    """Blocks every call until ``release()``; tracks concurrency."""

    def __init__(self, result: ClassificationResult | None = None) -> None:
        self.result = result or ClassificationResult(
            category=IntentCategory.OTHER, confidence=0.3
        )
        self.gate = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def classify(self, text, language, patient_context_ref):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        return self.result

    def release(self) -> None:
        self.gate.set()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true (fails the test on timeout)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Harness
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class TriageHarness:
    clock: ManualClock
    audit: InMemoryAuditSink
    patient_data: InMemoryPatientData
    availability: StaticAvailability
    communication: InMemoryCommunication
    appointments: InMemoryAppointments
    notifier: HarnessNotifier
    notifiers: NotifierRegistry
    adapter: ClassifierAdapter
    escalation: EscalationCoordinator
    machine: ConversationStateMachine
    registry: SessionRegistry
    engine: TriageEngine

    def audit_kinds(self, session_id: str | None = None) -> list[str]:
        return [
            e.kind.value for e in self.audit.events
            if session_id is None or e.session_id == session_id
        ]


def build_harness(
    *,
    classifier: IntentClassifier | None = None,
    snapshots: dict[str, PatientSnapshot] | None = None,
    appointments: InMemoryAppointments | None = None,
    communication: InMemoryCommunication | None = None,
    availability: StaticAvailability | None = None,
    tier1_seconds: float = 0.5,
    tier2_seconds: float = 0.7,
    voice_seconds: float = 0.9,
    deadline_seconds: float = 2.0,
    availability_timeout: float = 0.2,
    handoff_reply_seconds: float = 0.5,
    appointment_reserve_seconds: float = 0.2,
    alert_timeout: float = 0.2,
    fallback_notify_timeout: float = 0.2,
    inactivity_seconds: float = 1800,
    cleanup_interval_seconds: float = 60,
    reorder_window_seconds: float = 0.2,
    max_follow_ups: int = 5,
    data_retry_backoffs: tuple[float, ...] = (0.01, 0.02, 0.05),
) -> TriageHarness:
    clock = ManualClock()
    audit = InMemoryAuditSink()
    patient_data = InMemoryPatientData(snapshots)
    availability = availability or StaticAvailability(default_available=False)
    communication = communication or InMemoryCommunication()
    appointments = appointments or InMemoryAppointments(clock)
    notifier = HarnessNotifier()
    notifiers = NotifierRegistry(default_channel="app")
    notifiers.register(notifier)
    composer = ResponseComposer(emergency_number="999")

    adapter = ClassifierAdapter(
        classifier or KeywordIntentClassifier(),
        tier1_seconds=tier1_seconds,
        tier2_seconds=tier2_seconds,
        voice_seconds=voice_seconds,
    )
    escalation = EscalationCoordinator(
        availability=availability,
        communication=communication,
        appointments=appointments,
        notifiers=notifiers,
        audit=audit,
        composer=composer,
        clock=clock,
        deadline_seconds=deadline_seconds,
        availability_timeout=availability_timeout,
        handoff_reply_seconds=handoff_reply_seconds,
        appointment_reserve_seconds=appointment_reserve_seconds,
        alert_retry_delay=0.01,
        alert_timeout=alert_timeout,
        fallback_notify_timeout=fallback_notify_timeout,
    )
    machine = ConversationStateMachine(
        classifier=adapter,
        extractor=KeywordSymptomExtractor(),
        patient_data=patient_data,
        escalation=escalation,
        audit=audit,
        router=TierRouter(confidence_threshold=0.7, max_follow_ups=max_follow_ups),
        composer=composer,
        clock=clock,
        patient_data_timeout=0.2,
        on_call_provider_id="on-call",
    )
    registry = SessionRegistry(
        machine,
        audit=audit,
        clock=clock,
        inactivity_seconds=inactivity_seconds,
        cleanup_interval_seconds=cleanup_interval_seconds,
        reorder_window_seconds=reorder_window_seconds,
        closed_cache_size=50,
    )
    engine = TriageEngine(
        registry=registry,
        machine=machine,
        escalation=escalation,
        data_retry_backoffs=data_retry_backoffs,
    )
    return TriageHarness(
        clock=clock,
        audit=audit,
        patient_data=patient_data,
        availability=availability,
        communication=communication,
        appointments=appointments,
        notifier=notifier,
        notifiers=notifiers,
        adapter=adapter,
        escalation=escalation,
        machine=machine,
        registry=registry,
        engine=engine,
    )


@pytest.fixture
def harness_factory():
    """Synchronous builder (for TestClient-based tests)."""
    return build_harness


@pytest_asyncio.fixture
async def make_harness():
    """Builder whose engines are stopped when the test ends."""
    built: list[TriageHarness] = []

    def _make(**kwargs) -> TriageHarness:
        h = build_harness(**kwargs)
        built.append(h)
        return h

    yield _make
    for h in built:
        await h.engine.stop()


@pytest.fixture
def gated_classifier():
    return GatedClassifier()


@pytest.fixture
def eventually():
    """``await eventually(lambda: ...)`` polls until the predicate holds."""
    return wait_until
