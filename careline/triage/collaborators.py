"""
Collaborator Contracts — the narrow interfaces the engine depends on.

These ABCs decouple the triage core from the NLP model, the EMR, the
scheduling system, the communication transport, the audit store and the
patient-facing channels.  The engine only ever initiates: it never owns
transport, persistence, or the classification model.

Adding a real backend is just:
  1. Implement the ABC (see http_collaborators.py for httpx clients)
  2. Wire it in setup.py
Zero changes to the state machine, router or coordinator.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from careline.triage.events import AuditEvent
from careline.triage.models import (
    ClassificationResult,
    RedFlagFinding,
    SymptomEvidence,
)

logger = logging.getLogger("triage.collaborators")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Wire types
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Prescription(BaseModel):
    name: str
    dose: str = ""           # "500 mg"
    schedule: str = ""       # "twice daily with food"
    instructions: str = ""


class PatientSnapshot(BaseModel):
    """Read-only EMR snapshot.  Staleness is the provider's concern."""

    patient_id: str
    chronic_conditions: list[str] = Field(default_factory=list)
    active_prescriptions: list[Prescription] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    treatment_history: list[str] = Field(default_factory=list)
    assigned_provider_id: Optional[str] = None
    retrieved_at: datetime = Field(default_factory=_now)


class AvailabilityStatus(BaseModel):
    available: bool
    status: str = ""  # "online", "in_clinic", "off_shift", ...
    next_available_time: Optional[datetime] = None


class HandoffHandle(BaseModel):
    handle_id: str
    channel: str  # "chat" | "voice"
    provider_id: str


class AppointmentSlot(BaseModel):
    slot_id: str
    provider_id: str
    start: datetime
    mode: str = "video"  # "in_person" | "video"


class AppointmentRequest(BaseModel):
    patient_id: str
    provider_id: str
    slot_id: str
    mode: str = "video"
    urgent: bool = True
    reason: str = ""


class Appointment(BaseModel):
    appointment_id: str
    patient_id: str
    slot: AppointmentSlot
    urgent: bool = True
    confirmed_at: datetime = Field(default_factory=_now)


class ProviderAlert(BaseModel):
    patient_id: str
    provider_id: str
    session_id: str
    case_id: str
    findings: list[RedFlagFinding] = Field(default_factory=list)
    summary: str = ""
    created_at: datetime = Field(default_factory=_now)


class PatientMessage(BaseModel):
    """A message the engine pushes to the patient outside a request/response."""

    patient_id: str
    session_id: str
    channel: str
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Outcome of a single message delivery attempt."""

    success: bool
    channel: str
    patient_id: str
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  NLP capabilities
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class IntentClassifier(ABC):
    """Black-box intent capability.  The engine bounds its latency."""

    @abstractmethod
    async def classify(
        self, text: str, language: str, patient_context_ref: str
    ) -> ClassificationResult:
        """Return category + confidence for one utterance."""


class SymptomExtractor(ABC):
    """Black-box medical entity extraction."""

    @abstractmethod
    async def extract(self, text: str, language: str) -> list[SymptomEvidence]:
        """Return the symptoms mentioned in one utterance."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Care-system collaborators
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PatientDataProvider(ABC):
    @abstractmethod
    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        """Return the patient's EMR snapshot.  May raise when unavailable."""


class ProviderAvailabilityProvider(ABC):
    @abstractmethod
    async def check_availability(self, provider_id: str) -> AvailabilityStatus:
        """Return whether the provider can take a hand-off right now."""


class CommunicationProvider(ABC):
    @abstractmethod
    async def start_chat(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        """Open a chat between patient and provider."""

    @abstractmethod
    async def start_voice(
        self, patient_id: str, provider_id: str, context: dict[str, Any]
    ) -> HandoffHandle:
        """Open a voice call between patient and provider."""

    @abstractmethod
    async def alert_provider(self, alert: ProviderAlert) -> None:
        """Page the provider about an urgent case."""


class AppointmentProvider(ABC):
    @abstractmethod
    async def get_slots(
        self,
        provider_id: str,
        *,
        urgent: bool = True,
        modes: tuple[str, ...] = ("in_person", "video"),
    ) -> list[AppointmentSlot]:
        """Return bookable slots, soonest first."""

    @abstractmethod
    async def book(self, request: AppointmentRequest) -> Appointment:
        """Book one slot.  Raises if the slot is gone."""


class AuditSink(ABC):
    """Append-only.  The engine writes, never reads."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist one audit event."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  OUTBOUND: pushing messages to patients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PatientNotifier(ABC):
    """Abstract outbound channel — delivers PatientMessages to a channel."""

    channel_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def send(self, message: PatientMessage) -> DeliveryResult:
        """Deliver a single message. Must not raise — return DeliveryResult."""


class NotifierRegistry:
    """
    Registry of active PatientNotifiers.

    The coordinator calls ``dispatch()`` — it never talks to a specific
    channel directly.  Unknown channels fall back to the default channel.
    """

    def __init__(self, default_channel: str = "app") -> None:
        self._notifiers: dict[str, PatientNotifier] = {}
        self._default_channel = default_channel

    def register(self, notifier: PatientNotifier) -> None:
        name = notifier.channel_name
        self._notifiers[name] = notifier
        logger.info("Registered patient notifier: %s", name)

    def get(self, channel_name: str) -> PatientNotifier | None:
        return self._notifiers.get(channel_name) or self._notifiers.get(
            self._default_channel
        )

    @property
    def registered_channels(self) -> list[str]:
        return list(self._notifiers.keys())

    async def dispatch(self, message: PatientMessage) -> DeliveryResult:
        """Route one message to the correct notifier (with single retry)."""
        notifier = self.get(message.channel)
        if notifier is None:
            logger.warning(
                "No notifier for channel '%s' — message not delivered",
                message.channel,
            )
            return DeliveryResult(
                success=False,
                channel=message.channel,
                patient_id=message.patient_id,
                error=f"No notifier registered for channel '{message.channel}'",
            )
        for attempt in range(2):
            try:
                result = await notifier.send(message)
                if result.success or attempt == 1:
                    return result
                logger.warning(
                    "Notify failed for %s on %s (attempt 1) — retrying",
                    message.patient_id, message.channel,
                )
                await asyncio.sleep(0.2)
            except Exception as exc:
                if attempt == 0:
                    logger.warning(
                        "Notifier '%s' error (attempt 1): %s — retrying",
                        message.channel, exc,
                    )
                    await asyncio.sleep(0.2)
                else:
                    logger.error(
                        "Notifier '%s' error after retry: %s",
                        message.channel, exc,
                    )
                    return DeliveryResult(
                        success=False,
                        channel=message.channel,
                        patient_id=message.patient_id,
                        error=str(exc),
                    )
        return DeliveryResult(
            success=False,
            channel=message.channel,
            patient_id=message.patient_id,
            error="Notify failed after retry",
        )
