"""
Triage Engine — the facade the client-facing layer talks to.

Wires the Session Registry, the state machine and the Escalation
Coordinator together and owns the engine's own background work
(patient-data retries after a Tier 2 answer had to withhold dosage).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from careline.triage.errors import SessionNotFound
from careline.triage.escalation import EscalationCoordinator
from careline.triage.events import UtteranceEnvelope
from careline.triage.models import (
    ConversationSession,
    EscalationCase,
    SessionState,
    SessionView,
    TurnOutcome,
)
from careline.triage.registry import SessionRegistry
from careline.triage.session import ConversationStateMachine

logger = logging.getLogger("triage.engine")

# Background patient-data retry delays (seconds)
DATA_RETRY_BACKOFFS: tuple[float, ...] = (0.1, 0.3, 0.9)


class TriageEngine:
    """
    Usage:
        engine = TriageEngine(registry=..., machine=..., escalation=...)
        await engine.start()
        outcome = await engine.submit_utterance(UtteranceEnvelope.text_message("P-1", "..."))
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        machine: ConversationStateMachine,
        escalation: EscalationCoordinator,
        data_retry_backoffs: tuple[float, ...] = DATA_RETRY_BACKOFFS,
    ) -> None:
        self._registry = registry
        self._machine = machine
        self._escalation = escalation
        self._data_retry_backoffs = data_retry_backoffs
        self._bg_tasks: set[asyncio.Task] = set()
        self._data_retries: set[str] = set()
        self._metrics: dict[str, Any] = {
            "utterances_processed": 0,
            "utterances_failed": 0,
            "follow_ups": 0,
            "resolved_by_tier": {"1": 0, "2": 0},
            "data_retries_succeeded": 0,
            "data_retries_exhausted": 0,
        }
        registry.on_abandon(self._session_abandoned)

    # ── Lifecycle ──

    async def start(self) -> None:
        await self._registry.start()
        logger.info("TriageEngine started")

    async def stop(self) -> None:
        for task in list(self._bg_tasks):
            task.cancel()
        if self._bg_tasks:
            await asyncio.gather(*self._bg_tasks, return_exceptions=True)
        await self._registry.stop()
        await self._escalation.stop()
        logger.info("TriageEngine stopped")

    # ── Outward interface ──

    async def submit_utterance(self, envelope: UtteranceEnvelope) -> TurnOutcome:
        if not envelope.text or not envelope.text.strip():
            raise ValueError("Utterance text must not be empty")
        if not envelope.patient_id.strip():
            raise ValueError("patient_id must not be empty")

        try:
            outcome = await self._registry.run_turn(envelope)
        except Exception:
            self._metrics["utterances_failed"] += 1
            raise

        self._metrics["utterances_processed"] += 1
        if outcome.follow_up_question:
            self._metrics["follow_ups"] += 1
        elif outcome.state == SessionState.RESOLVED and outcome.tier is not None:
            self._metrics["resolved_by_tier"][str(outcome.tier.value)] += 1

        if outcome.withheld_dosage:
            self._schedule_data_retry(outcome.session_id, envelope.patient_id)
        return outcome

    def get_session_state(self, session_id: str) -> SessionView:
        session, closed = self._registry.get_session(session_id)
        return SessionView(
            session=session,
            escalation_case=self._escalation.get_case(session_id),
            closed=closed,
        )

    async def respond_to_handoff(self, session_id: str, accept: bool) -> EscalationCase:
        return await self._escalation.respond_to_handoff(session_id, accept)

    async def select_appointment_slot(self, session_id: str, slot_id: str) -> EscalationCase:
        return await self._escalation.book_appointment(session_id, slot_id)

    async def acknowledge_escalation(self, session_id: str) -> SessionView:
        """Close the case and its session once the patient has been notified."""
        case = await self._escalation.acknowledge(session_id)
        try:
            session = await self._registry.close(session_id, SessionState.ESCALATED)
            closed = True
        except SessionNotFound:
            # Abandoned while the case was in flight; only its snapshot remains
            session, closed = self._registry.get_session(session_id)
        return SessionView(session=session, escalation_case=case, closed=closed)

    async def wait_for_escalation(self, session_id: str, timeout: float | None = None) -> EscalationCase:
        return await self._escalation.wait_for_outcome(session_id, timeout=timeout)

    def status(self) -> dict[str, Any]:
        return {
            "engine": dict(self._metrics),
            "sessions": self._registry.get_metrics(),
            "escalations": self._escalation.get_metrics(),
            "open_cases": [
                {
                    "case_id": c.case_id,
                    "session_id": c.session_id,
                    "status": c.status.value,
                    "deadline": c.deadline.isoformat(),
                }
                for c in self._escalation.open_cases
            ],
            "pending_data_retries": len(self._data_retries),
        }

    async def _session_abandoned(self, session: ConversationSession) -> None:
        await self._escalation.release_session(session.session_id)

    # ── Background patient-data retry ──

    def _schedule_data_retry(self, session_id: str, patient_id: str) -> None:
        if session_id in self._data_retries:
            return
        self._data_retries.add(session_id)
        task = asyncio.create_task(self._retry_patient_data(session_id, patient_id))
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)

    async def _retry_patient_data(self, session_id: str, patient_id: str) -> None:
        try:
            for attempt, delay in enumerate(self._data_retry_backoffs, start=1):
                await asyncio.sleep(delay)
                try:
                    await self._machine.refresh_snapshot(patient_id)
                except Exception as exc:
                    logger.warning(
                        "Patient data retry %d/%d for %s failed: %s",
                        attempt, len(self._data_retry_backoffs), patient_id, exc,
                    )
                    continue
                self._registry.mark_data_refreshed(session_id)
                self._metrics["data_retries_succeeded"] += 1
                logger.info("Patient data for %s refreshed on retry %d", patient_id, attempt)
                return
            self._metrics["data_retries_exhausted"] += 1
            logger.error(
                "Patient data for %s still unavailable after %d retries",
                patient_id, len(self._data_retry_backoffs),
            )
        finally:
            self._data_retries.discard(session_id)
