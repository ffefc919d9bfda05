"""
Event envelopes — the inbound utterance format and the audit record format.

Every patient utterance that enters the engine is wrapped in an
UtteranceEnvelope.  The registry reads only envelope metadata (session id,
patient id, sequence) for routing and ordering; the state machine reads the
text.  Every classification decision, red-flag finding and escalation step
leaves exactly one AuditEvent.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from careline.triage.models import InteractionMode


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UtteranceEnvelope(BaseModel):
    """One patient utterance as delivered by the transport layer."""

    event_id: str = Field(default_factory=_new_uuid)
    patient_id: str
    text: str
    session_id: Optional[str] = None
    language: str = "en"
    mode: InteractionMode = InteractionMode.TEXT
    # Transport sequence number within the session; None → arrival order
    sequence: Optional[int] = None
    channel: str = "app"
    allow_create: bool = True
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)

    # ── Convenience factories ──

    @classmethod
    def text_message(
        cls,
        patient_id: str,
        text: str,
        *,
        session_id: str | None = None,
        language: str = "en",
        sequence: int | None = None,
        allow_create: bool = True,
    ) -> UtteranceEnvelope:
        return cls(
            patient_id=patient_id,
            text=text,
            session_id=session_id,
            language=language,
            mode=InteractionMode.TEXT,
            sequence=sequence,
            allow_create=allow_create,
        )

    @classmethod
    def voice_message(
        cls,
        patient_id: str,
        transcript: str,
        *,
        session_id: str | None = None,
        language: str = "en",
        sequence: int | None = None,
    ) -> UtteranceEnvelope:
        return cls(
            patient_id=patient_id,
            text=transcript,
            session_id=session_id,
            language=language,
            mode=InteractionMode.VOICE,
            sequence=sequence,
            channel="voice",
        )


class AuditEventKind(str, Enum):
    """All audit record kinds the engine writes."""

    # Classification / routing
    CLASSIFICATION = "CLASSIFICATION"
    FOLLOW_UP_REQUESTED = "FOLLOW_UP_REQUESTED"
    FOLLOW_UP_CAP_REACHED = "FOLLOW_UP_CAP_REACHED"
    TIER_DECIDED = "TIER_DECIDED"

    # Red flags
    RED_FLAG_FINDING = "RED_FLAG_FINDING"
    RED_FLAG_WATCH = "RED_FLAG_WATCH"
    RED_FLAG_DEGRADED = "RED_FLAG_DEGRADED"

    # Escalation steps
    ESCALATION_STARTED = "ESCALATION_STARTED"
    PROVIDER_ALERT = "PROVIDER_ALERT"
    PROVIDER_ALERT_FAILED = "PROVIDER_ALERT_FAILED"
    AVAILABILITY_CHECKED = "AVAILABILITY_CHECKED"
    HANDOFF_OFFERED = "HANDOFF_OFFERED"
    HANDOFF_STARTED = "HANDOFF_STARTED"
    HANDOFF_FAILED = "HANDOFF_FAILED"
    APPOINTMENT_OFFERED = "APPOINTMENT_OFFERED"
    APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
    EMERGENCY_FALLBACK = "EMERGENCY_FALLBACK"
    ESCALATION_ACKNOWLEDGED = "ESCALATION_ACKNOWLEDGED"
    ESCALATION_CLOSED = "ESCALATION_CLOSED"

    # Session lifecycle
    SESSION_ABANDONED = "SESSION_ABANDONED"


class AuditEvent(BaseModel):
    event_id: str = Field(default_factory=_new_uuid)
    kind: AuditEventKind
    session_id: str
    patient_id: str
    detail: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
