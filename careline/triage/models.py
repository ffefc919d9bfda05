"""
Triage domain models — sessions, evidence, classifications, findings and
escalation cases.

The Session Registry owns ConversationSession lifetime; the Escalation
Coordinator owns EscalationCase lifetime.  Everything handed across that
boundary is a deep copy, and an EscalationCase only stores the session id.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Tier(int, Enum):
    GENERAL_EDUCATION = 1
    MEDICATION_GUIDANCE = 2
    URGENT_ESCALATION = 3


class IntentCategory(str, Enum):
    GENERAL_HEALTH = "general_health"
    MEDICATION_QUERY = "medication_query"
    OTHER = "other"


class SessionState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    CLASSIFYING = "classifying"
    AWAITING_FOLLOWUP = "awaiting_followup"
    TIER_RESOLVED = "tier_resolved"
    ESCALATING = "escalating"
    # Terminal
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"


TERMINAL_STATES = {SessionState.RESOLVED, SessionState.ESCALATED, SessionState.ABANDONED}


class InteractionMode(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class TurnRole(str, Enum):
    PATIENT = "patient"
    ASSISTANT = "assistant"


class FindingSeverity(str, Enum):
    HIGH = "high"
    CRITICAL = "critical"


class EscalationPath(str, Enum):
    IMMEDIATE_CONTACT = "immediate_contact"
    SCHEDULED_APPOINTMENT = "scheduled_appointment"
    EMERGENCY_FALLBACK = "emergency_fallback"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    CHECKING_AVAILABILITY = "checking_availability"
    AWAITING_HANDOFF_ACCEPTANCE = "awaiting_handoff_acceptance"
    HANDED_OFF = "handed_off"
    APPOINTMENT_OFFERED = "appointment_offered"
    APPOINTMENT_BOOKED = "appointment_booked"
    EMERGENCY_FALLBACK = "emergency_fallback"


# Statuses at which the patient has been told what happens next
NOTIFIED_STATUSES = {
    EscalationStatus.HANDED_OFF,
    EscalationStatus.APPOINTMENT_OFFERED,
    EscalationStatus.APPOINTMENT_BOOKED,
    EscalationStatus.EMERGENCY_FALLBACK,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def normalize_symptom_name(name: str) -> str:
    """'  Chest  Pain ' → 'chest pain'."""
    return re.sub(r"\s+", " ", name.strip().lower())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Evidence, classification, findings
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SymptomEvidence(BaseModel):
    name: str
    description: str = ""
    onset: Optional[str] = None  # "2 days", "this morning", "sudden"
    severity: int = 5  # 1–10
    medications: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, v: str) -> str:
        return normalize_symptom_name(v)

    @field_validator("severity", mode="before")
    @classmethod
    def _clamp_severity(cls, v: Any) -> int:
        try:
            value = int(round(float(v)))
        except (TypeError, ValueError):
            value = 5
        return max(1, min(10, value))

    def merged_with(self, other: SymptomEvidence) -> SymptomEvidence:
        """Keep the highest severity and the union of medications."""
        medications = list(self.medications)
        for med in other.medications:
            if med not in medications:
                medications.append(med)
        stronger = other if other.severity > self.severity else self
        return SymptomEvidence(
            name=self.name,
            description=stronger.description or self.description or other.description,
            onset=self.onset or other.onset,
            severity=max(self.severity, other.severity),
            medications=medications,
        )


class ClassificationResult(BaseModel):
    """Opaque classifier output.  Frozen — never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    category: IntentCategory
    confidence: float
    sub_category: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(1.0, value))

    @classmethod
    def forced_low(cls, reason: str) -> ClassificationResult:
        """Result used when the adapter overran or failed."""
        return cls(category=IntentCategory.OTHER, confidence=0.0, sub_category=reason)


class RedFlagFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: FindingSeverity
    rationale: str = ""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Escalation case
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EscalationCase(BaseModel):
    case_id: str = Field(default_factory=_new_uuid)
    session_id: str  # lookup-only back-reference
    patient_id: str
    provider_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    deadline: datetime
    status: EscalationStatus = EscalationStatus.PENDING
    path: Optional[EscalationPath] = None
    findings: list[RedFlagFinding] = Field(default_factory=list)
    reason: str = ""
    provider_alerted_at: Optional[datetime] = None
    availability: Optional[dict[str, Any]] = None
    handoff_channel: Optional[str] = None  # "chat" | "voice"
    handoff_session: Optional[str] = None
    offered_slots: list[dict[str, Any]] = Field(default_factory=list)
    appointment: Optional[dict[str, Any]] = None
    patient_notified_at: Optional[datetime] = None
    patient_message: str = ""
    completed_at: Optional[datetime] = None

    @property
    def patient_notified(self) -> bool:
        return self.patient_notified_at is not None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Conversation session
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Turn(BaseModel):
    role: TurnRole
    text: str
    language: str = "en"
    mode: InteractionMode = InteractionMode.TEXT
    sequence: Optional[int] = None
    timestamp: datetime = Field(default_factory=_now)


class ConversationSession(BaseModel):
    session_id: str = Field(default_factory=_new_uuid)
    patient_id: str
    turns: list[Turn] = Field(default_factory=list)
    state: SessionState = SessionState.AWAITING_INPUT
    tier: Optional[Tier] = None
    symptoms: dict[str, SymptomEvidence] = Field(default_factory=dict)  # normalized name → evidence
    follow_up_count: int = 0
    asked_follow_ups: list[str] = Field(default_factory=list)
    red_flags: list[RedFlagFinding] = Field(default_factory=list)
    watch_flags: list[RedFlagFinding] = Field(default_factory=list)
    last_classification: Optional[ClassificationResult] = None
    mode: InteractionMode = InteractionMode.TEXT
    language: str = "en"
    resolved: bool = False
    escalated: bool = False
    needs_data_retry: bool = False
    escalation_case_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    last_activity: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def add_turn(self, turn: Turn) -> None:
        """Append-only; also bumps last_activity."""
        self.turns.append(turn)
        self.last_activity = turn.timestamp

    def merge_symptoms(self, evidence: list[SymptomEvidence]) -> None:
        for item in evidence:
            existing = self.symptoms.get(item.name)
            self.symptoms[item.name] = existing.merged_with(item) if existing else item

    def record_findings(self, findings: list[RedFlagFinding]) -> None:
        known = {(f.type, f.severity) for f in self.red_flags}
        for finding in findings:
            if (finding.type, finding.severity) not in known:
                self.red_flags.append(finding)
                known.add((finding.type, finding.severity))

    def record_watch(self, matches: list[RedFlagFinding]) -> None:
        known = {f.type for f in self.watch_flags}
        for match in matches:
            if match.type not in known:
                self.watch_flags.append(match)
                known.add(match.type)

    def patient_texts(self) -> list[str]:
        return [t.text for t in self.turns if t.role == TurnRole.PATIENT]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Outward views
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TurnOutcome(BaseModel):
    """What submit_utterance returns to the client-facing layer."""

    session_id: str
    state: SessionState
    tier: Optional[Tier] = None
    response: Optional[str] = None
    follow_up_question: Optional[str] = None
    escalation_case: Optional[EscalationCase] = None
    withheld_dosage: bool = False


class SessionView(BaseModel):
    """Read-only status snapshot for polling."""

    session: ConversationSession
    escalation_case: Optional[EscalationCase] = None
    closed: bool = False
