"""
Engine Setup — initializes and wires together all triage components.

Called once during app startup.  If anything fails, the triage API answers
503 and the rest of the app keeps working.

Collaborators:
  CARE_SERVICES_URL set   → httpx clients against the care-services API
  CARE_SERVICES_URL empty → in-memory harness (development mode)

Classifier:
  CLASSIFIER_BACKEND=keyword → deterministic keyword classifier
  CLASSIFIER_BACKEND=gemini  → Gemini, falling back to keywords

Symptom extractor:
  EXTRACTOR_BACKEND=keyword → deterministic keyword extractor
  EXTRACTOR_BACKEND=gemini  → Gemini, merged with keyword evidence
"""

from __future__ import annotations

import logging

from careline import settings
from careline.triage.audit import InMemoryAuditSink, LoggingAuditSink
from careline.triage.classifier import ClassifierAdapter
from careline.triage.collaborators import (
    AppointmentProvider,
    AuditSink,
    CommunicationProvider,
    IntentClassifier,
    NotifierRegistry,
    PatientDataProvider,
    ProviderAvailabilityProvider,
    SymptomExtractor,
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
from careline.triage.http_collaborators import (
    CareServicesClient,
    HttpAppointments,
    HttpCommunication,
    HttpPatientData,
    HttpProviderAvailability,
)
from careline.triage.nlp.gemini_classifier import GeminiIntentClassifier
from careline.triage.nlp.gemini_extractor import GeminiSymptomExtractor
from careline.triage.nlp.keyword_classifier import KeywordIntentClassifier
from careline.triage.nlp.symptom_extractor import KeywordSymptomExtractor
from careline.triage.registry import SessionRegistry
from careline.triage.responses import ResponseComposer
from careline.triage.session import ConversationStateMachine

logger = logging.getLogger("triage.setup")

# Module-level singletons (set during initialize)
_engine: TriageEngine | None = None
_notifier_registry: NotifierRegistry | None = None
_harness_notifier: HarnessNotifier | None = None
_care_client: CareServicesClient | None = None


async def initialize_engine() -> TriageEngine:
    """
    Wire together all triage components and start background tasks.

    Returns the fully initialized TriageEngine instance.
    """
    global _engine, _notifier_registry, _harness_notifier, _care_client

    logger.info("Initializing CareLine triage engine...")

    # 1. Care-system collaborators
    patient_data: PatientDataProvider
    availability: ProviderAvailabilityProvider
    communication: CommunicationProvider
    appointments: AppointmentProvider
    audit_sink: AuditSink
    if settings.CARE_SERVICES_URL:
        _care_client = CareServicesClient(
            settings.CARE_SERVICES_URL, settings.CARE_SERVICES_TOKEN
        )
        patient_data = HttpPatientData(_care_client)
        availability = HttpProviderAvailability(_care_client)
        communication = HttpCommunication(_care_client)
        appointments = HttpAppointments(_care_client)
        audit_sink = LoggingAuditSink()
        logger.info("Care services: %s", settings.CARE_SERVICES_URL)
    else:
        patient_data = InMemoryPatientData()
        availability = StaticAvailability(default_available=False)
        communication = InMemoryCommunication()
        appointments = InMemoryAppointments()
        audit_sink = InMemoryAuditSink()
        logger.info("Care services: in-memory harness (development mode)")

    # 2. Patient notifiers
    _notifier_registry = NotifierRegistry(default_channel="app")
    _harness_notifier = HarnessNotifier()
    _notifier_registry.register(_harness_notifier)

    # 3. Classifier and extractor
    classifier: IntentClassifier
    if settings.CLASSIFIER_BACKEND == "gemini":
        classifier = GeminiIntentClassifier()
    else:
        classifier = KeywordIntentClassifier()
    logger.info("Intent classifier: %s", type(classifier).__name__)

    extractor: SymptomExtractor
    if settings.EXTRACTOR_BACKEND == "gemini":
        extractor = GeminiSymptomExtractor()
    else:
        extractor = KeywordSymptomExtractor()
    logger.info("Symptom extractor: %s", type(extractor).__name__)

    # 4. Components
    composer = ResponseComposer()
    escalation = EscalationCoordinator(
        availability=availability,
        communication=communication,
        appointments=appointments,
        notifiers=_notifier_registry,
        audit=audit_sink,
        composer=composer,
    )
    machine = ConversationStateMachine(
        classifier=ClassifierAdapter(classifier),
        extractor=extractor,
        patient_data=patient_data,
        escalation=escalation,
        audit=audit_sink,
        composer=composer,
    )
    registry = SessionRegistry(machine, audit=audit_sink)
    _engine = TriageEngine(registry=registry, machine=machine, escalation=escalation)
    await _engine.start()

    logger.info(
        "Triage engine initialized: channels=%s, deadline=%.0fs",
        _notifier_registry.registered_channels,
        settings.ESCALATION_DEADLINE_SECONDS,
    )
    return _engine


async def shutdown_engine() -> None:
    """Gracefully stop background tasks."""
    global _engine, _care_client
    if _engine:
        await _engine.stop()
        _engine = None
    if _care_client:
        await _care_client.aclose()
        _care_client = None
    logger.info("Triage engine shutdown complete")


def get_engine() -> TriageEngine | None:
    return _engine


def get_notifier_registry() -> NotifierRegistry | None:
    return _notifier_registry


def get_harness_notifier() -> HarnessNotifier | None:
    return _harness_notifier
