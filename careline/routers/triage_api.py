"""
Triage API — HTTP endpoints for the conversational triage engine.

Endpoints:
  POST /api/triage/utterances                      Submit one patient utterance
  GET  /api/triage/sessions/{id}                   Session + escalation snapshot
  POST /api/triage/sessions/{id}/handoff           Accept / decline a provider hand-off
  POST /api/triage/sessions/{id}/appointment       Pick one of the offered urgent slots
  POST /api/triage/sessions/{id}/acknowledge       Close a notified escalation
  GET  /api/triage/messages/{patient_id}           Messages pushed to the patient (harness)
  GET  /api/triage/status                          Active sessions + open escalations
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from careline.triage.engine import TriageEngine
from careline.triage.errors import (
    OutOfOrderUtterance,
    SessionAbandoned,
    SessionNotFound,
    TriageError,
)
from careline.triage.events import UtteranceEnvelope
from careline.triage.models import (
    EscalationCase,
    InteractionMode,
    SessionView,
    TurnOutcome,
)

logger = logging.getLogger("triage.api")

router = APIRouter(prefix="/api/triage", tags=["triage"])


# ── Request / Response Models ──


class UtteranceRequest(BaseModel):
    """Request body for POST /api/triage/utterances."""

    patient_id: str = Field(min_length=1)
    text: str
    session_id: Optional[str] = None
    language: str = "en"
    mode: str = "text"
    sequence: Optional[int] = Field(default=None, ge=0)
    channel: str = "app"
    allow_create: bool = True
    correlation_id: Optional[str] = None


class HandoffReplyRequest(BaseModel):
    accept: bool


class AppointmentChoiceRequest(BaseModel):
    slot_id: str = Field(min_length=1)


class TriageStatusResponse(BaseModel):
    status: str = "ok"
    active_sessions: int = 0
    open_escalations: int = 0
    registered_channels: list[str] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)


# ── Helpers ──


def _engine() -> TriageEngine:
    from careline.triage.setup import get_engine

    engine = get_engine()
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail="Triage is temporarily unavailable. Please try again shortly, "
                   "or call your local emergency number if you feel unwell.",
        )
    return engine


def _http_error(exc: Exception) -> HTTPException:
    """Map engine errors to status codes.  Bodies never leak internal state."""
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=404, detail=exc.user_message)
    if isinstance(exc, OutOfOrderUtterance):
        return HTTPException(status_code=409, detail=exc.user_message)
    if isinstance(exc, SessionAbandoned):
        return HTTPException(status_code=410, detail=exc.user_message)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TriageError):
        return HTTPException(status_code=500, detail=exc.user_message)
    return HTTPException(status_code=500, detail=TriageError.user_message)


# ── Endpoints ──


@router.post("/utterances", response_model=TurnOutcome)
async def submit_utterance(request: UtteranceRequest):
    """
    Run one patient utterance through the triage pipeline.

    Returns the turn outcome: a follow-up question, a Tier 1/2 answer, or a
    pending escalation case with urgent guidance.
    """
    engine = _engine()

    try:
        mode = InteractionMode(request.mode)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid mode: {request.mode}. "
                   f"Valid modes: {[m.value for m in InteractionMode]}",
        )

    envelope = UtteranceEnvelope(
        patient_id=request.patient_id,
        text=request.text,
        session_id=request.session_id,
        language=request.language,
        mode=mode,
        sequence=request.sequence,
        channel=request.channel,
        allow_create=request.allow_create,
        correlation_id=request.correlation_id,
    )
    try:
        return await engine.submit_utterance(envelope)
    except (TriageError, ValueError) as exc:
        raise _http_error(exc)
    except Exception as exc:
        logger.error("Utterance for %s failed: %s", request.patient_id, exc, exc_info=True)
        raise _http_error(exc)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str):
    engine = _engine()
    try:
        return engine.get_session_state(session_id)
    except SessionNotFound as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/handoff", response_model=EscalationCase)
async def respond_to_handoff(session_id: str, request: HandoffReplyRequest):
    engine = _engine()
    try:
        return await engine.respond_to_handoff(session_id, request.accept)
    except (TriageError, ValueError) as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/appointment", response_model=EscalationCase)
async def select_appointment(session_id: str, request: AppointmentChoiceRequest):
    engine = _engine()
    try:
        return await engine.select_appointment_slot(session_id, request.slot_id)
    except (TriageError, ValueError) as exc:
        raise _http_error(exc)


@router.post("/sessions/{session_id}/acknowledge", response_model=SessionView)
async def acknowledge_escalation(session_id: str):
    engine = _engine()
    try:
        return await engine.acknowledge_escalation(session_id)
    except (TriageError, ValueError) as exc:
        raise _http_error(exc)


@router.get("/messages/{patient_id}")
async def get_patient_messages(patient_id: str):
    """Messages the engine pushed to a patient through the harness channel."""
    _engine()
    from careline.triage.setup import get_harness_notifier

    notifier = get_harness_notifier()
    if notifier is None:
        return {"patient_id": patient_id, "messages": []}
    return {
        "patient_id": patient_id,
        "messages": [m.model_dump(mode="json") for m in notifier.get_messages(patient_id)],
    }


@router.get("/status", response_model=TriageStatusResponse)
async def triage_status():
    from careline.triage.setup import get_notifier_registry

    engine = _engine()
    detail = engine.status()
    notifiers = get_notifier_registry()
    return TriageStatusResponse(
        active_sessions=detail["sessions"]["active_sessions"],
        open_escalations=len(detail["open_cases"]),
        registered_channels=notifiers.registered_channels if notifiers else [],
        detail=detail,
    )
