"""
Conversation State Machine — one triage turn for one session.

Per-turn pipeline:
  1. Append the patient turn
  2. Extract symptoms, classify (inside its envelope) and load the patient
     snapshot concurrently; merge the new evidence
  3. Evaluate red flags over the accumulated evidence (every turn,
     whatever the classifier said)
  4. Route → follow-up question, Tier 1/2 answer, or Tier 3 escalation
  5. Append the assistant turn and write the audit trail

The Session Registry guarantees that only one turn per session runs at a
time, so ``handle`` mutates the session it is given without locking.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Optional

from careline import settings
from careline.triage.audit import safe_record
from careline.triage.classifier import ClassifierAdapter
from careline.triage.clock import Clock
from careline.triage.collaborators import (
    AuditSink,
    PatientDataProvider,
    PatientSnapshot,
    SymptomExtractor,
)
from careline.triage.escalation import EscalationCoordinator
from careline.triage.events import AuditEvent, AuditEventKind, UtteranceEnvelope
from careline.triage.models import (
    ConversationSession,
    SessionState,
    SymptomEvidence,
    Tier,
    Turn,
    TurnOutcome,
    TurnRole,
)
from careline.triage.nlp.vocabulary import find_medications
from careline.triage.red_flags import RedFlagEvaluator, RedFlagReport
from careline.triage.responses import ResponseComposer
from careline.triage.router import RoutingAction, RoutingDecision, TierRouter

logger = logging.getLogger("triage.session")

# Patient turns fed to the classifier, so follow-up answers add context
CLASSIFIER_CONTEXT_TURNS = 5


class ConversationStateMachine:
    """
    Usage:
        machine = ConversationStateMachine(classifier=..., extractor=..., ...)
        outcome = await machine.handle(session, envelope)
    """

    def __init__(
        self,
        *,
        classifier: ClassifierAdapter,
        extractor: SymptomExtractor,
        patient_data: PatientDataProvider,
        escalation: EscalationCoordinator,
        audit: AuditSink,
        evaluator: RedFlagEvaluator | None = None,
        router: TierRouter | None = None,
        composer: ResponseComposer | None = None,
        clock: Clock | None = None,
        patient_data_timeout: float = settings.PATIENT_DATA_TIMEOUT_SECONDS,
        on_call_provider_id: str = settings.ON_CALL_PROVIDER_ID,
        snapshot_cache_size: int = 1000,
    ) -> None:
        self._classifier = classifier
        self._extractor = extractor
        self._patient_data = patient_data
        self._escalation = escalation
        self._audit = audit
        self._evaluator = evaluator or RedFlagEvaluator()
        self._router = router or TierRouter()
        self._composer = composer or ResponseComposer()
        self._clock = clock or Clock()
        self._patient_data_timeout = patient_data_timeout
        self._on_call_provider_id = on_call_provider_id
        self._snapshot_cache_size = snapshot_cache_size
        # patient_id → last good snapshot (bounded, LRU)
        self._snapshots: OrderedDict[str, PatientSnapshot] = OrderedDict()

    # ── Public API ──

    async def handle(self, session: ConversationSession, envelope: UtteranceEnvelope) -> TurnOutcome:
        if session.state == SessionState.ESCALATING:
            return await self._escalation_status(session, envelope)

        t0 = time.monotonic()
        session.mode = envelope.mode
        session.language = envelope.language
        session.add_turn(Turn(
            role=TurnRole.PATIENT,
            text=envelope.text,
            language=envelope.language,
            mode=envelope.mode,
            sequence=envelope.sequence,
            timestamp=self._clock.now(),
        ))
        session.state = SessionState.CLASSIFYING

        context_text = "\n".join(session.patient_texts()[-CLASSIFIER_CONTEXT_TURNS:])
        evidence, classification, snapshot = await asyncio.gather(
            self._extract(envelope, session),
            self._classifier.classify(
                context_text,
                envelope.language,
                session.patient_id,
                mode=envelope.mode,
                current_tier=session.tier,
            ),
            self._load_snapshot(session.patient_id),
        )
        session.merge_symptoms(evidence)
        session.last_classification = classification
        await self._record(session, AuditEventKind.CLASSIFICATION, {
            "category": classification.category.value,
            "confidence": round(classification.confidence, 3),
            "sub_category": classification.sub_category,
            "symptoms": sorted(session.symptoms),
        })

        report = self._evaluator.evaluate(session.symptoms.values(), snapshot)
        await self._audit_red_flags(session, report)

        medications = find_medications(context_text)
        for item in session.symptoms.values():
            for med in item.medications:
                if med not in medications:
                    medications.append(med)

        decision = self._router.route(
            classification,
            report,
            session.follow_up_count,
            snapshot=snapshot,
            medications=medications,
        )

        if decision.action == RoutingAction.FOLLOW_UP:
            outcome = await self._follow_up(session)
        elif decision.action == RoutingAction.ESCALATE:
            outcome = await self._escalate(session, envelope, report, decision, snapshot)
        else:
            outcome = await self._resolve(session, decision, medications)

        logger.info(
            "[timing] turn %s (%s): %.0fms → %s tier=%s",
            session.session_id, session.patient_id, (time.monotonic() - t0) * 1000,
            outcome.state.value, outcome.tier.value if outcome.tier else None,
        )
        return outcome

    async def refresh_snapshot(self, patient_id: str) -> PatientSnapshot:
        """Fetch a fresh snapshot.  Raises on failure (callers own the retry)."""
        snapshot = await asyncio.wait_for(
            self._patient_data.get_snapshot(patient_id),
            timeout=self._patient_data_timeout,
        )
        self._cache_snapshot(patient_id, snapshot)
        return snapshot

    # ── Decisions ──

    async def _follow_up(self, session: ConversationSession) -> TurnOutcome:
        session.follow_up_count += 1
        key, question = self._composer.follow_up(session)
        session.asked_follow_ups.append(key)
        session.state = SessionState.AWAITING_FOLLOWUP
        self._add_assistant_turn(session, question)
        await self._record(session, AuditEventKind.FOLLOW_UP_REQUESTED, {
            "follow_up_count": session.follow_up_count,
            "question": key,
        })
        return TurnOutcome(
            session_id=session.session_id,
            state=session.state,
            tier=session.tier,
            follow_up_question=question,
        )

    async def _resolve(
        self,
        session: ConversationSession,
        decision: RoutingDecision,
        medications: list[str],
    ) -> TurnOutcome:
        session.tier = decision.tier
        session.state = SessionState.TIER_RESOLVED
        session.needs_data_retry = decision.needs_data_retry
        if decision.tier == Tier.MEDICATION_GUIDANCE:
            response = self._composer.medication_guidance(decision, medications)
        else:
            response = self._composer.general_education(session)
        self._add_assistant_turn(session, response)
        await self._record(session, AuditEventKind.TIER_DECIDED, {
            "tier": decision.tier.value if decision.tier else None,
            "reason": decision.reason,
            "withhold_dosage": decision.withhold_dosage,
            "prescription_matches": [p.name for p in decision.prescription_matches],
            "interactions": [f"{a}+{b}" for a, b, _ in decision.interactions],
        })
        session.state = SessionState.RESOLVED
        session.resolved = True
        return TurnOutcome(
            session_id=session.session_id,
            state=session.state,
            tier=session.tier,
            response=response,
            withheld_dosage=decision.withhold_dosage,
        )

    async def _escalate(
        self,
        session: ConversationSession,
        envelope: UtteranceEnvelope,
        report: RedFlagReport,
        decision: RoutingDecision,
        snapshot: Optional[PatientSnapshot],
    ) -> TurnOutcome:
        session.tier = Tier.URGENT_ESCALATION
        session.state = SessionState.ESCALATING
        session.escalated = True
        if decision.reason == "ambiguous_classification":
            await self._record(session, AuditEventKind.FOLLOW_UP_CAP_REACHED, {
                "follow_up_count": session.follow_up_count,
            })
        await self._record(session, AuditEventKind.TIER_DECIDED, {
            "tier": Tier.URGENT_ESCALATION.value,
            "reason": decision.reason,
            "findings": [f.type for f in report.findings],
        })

        provider_id = (
            snapshot.assigned_provider_id
            if snapshot is not None and snapshot.assigned_provider_id
            else self._on_call_provider_id
        )
        case = await self._escalation.escalate(
            session.model_copy(deep=True),
            findings=list(session.red_flags),
            reason=decision.reason,
            provider_id=provider_id,
            channel=envelope.channel,
        )
        session.escalation_case_id = case.case_id
        response = self._composer.escalation_started(session.mode)
        self._add_assistant_turn(session, response)
        return TurnOutcome(
            session_id=session.session_id,
            state=session.state,
            tier=session.tier,
            response=response,
            escalation_case=case,
        )

    async def _escalation_status(
        self, session: ConversationSession, envelope: UtteranceEnvelope
    ) -> TurnOutcome:
        """A patient writing while their case is in flight never re-escalates."""
        session.add_turn(Turn(
            role=TurnRole.PATIENT,
            text=envelope.text,
            language=envelope.language,
            mode=envelope.mode,
            sequence=envelope.sequence,
            timestamp=self._clock.now(),
        ))
        case = self._escalation.get_case(session.session_id)
        response = self._composer.escalation_status(case)
        self._add_assistant_turn(session, response)
        return TurnOutcome(
            session_id=session.session_id,
            state=session.state,
            tier=session.tier,
            response=response,
            escalation_case=case,
        )

    # ── Collaborators ──

    async def _extract(self, envelope: UtteranceEnvelope, session: ConversationSession) -> list[SymptomEvidence]:
        budget = self._classifier.envelope_for(envelope.mode, session.tier)
        try:
            return await asyncio.wait_for(
                self._extractor.extract(envelope.text, envelope.language),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning("Symptom extraction for %s exceeded %.1fs", session.session_id, budget)
        except Exception as exc:
            logger.warning("Symptom extraction for %s failed: %s", session.session_id, exc)
        return []

    async def _load_snapshot(self, patient_id: str) -> Optional[PatientSnapshot]:
        try:
            return await self.refresh_snapshot(patient_id)
        except asyncio.TimeoutError:
            logger.warning("Patient data for %s timed out", patient_id)
        except Exception as exc:
            logger.warning("Patient data for %s unavailable: %s", patient_id, exc)
        stale = self._snapshots.get(patient_id)
        if stale is not None:
            logger.info("Using cached snapshot for %s (retrieved %s)", patient_id, stale.retrieved_at.isoformat())
        return stale

    def _cache_snapshot(self, patient_id: str, snapshot: PatientSnapshot) -> None:
        self._snapshots[patient_id] = snapshot
        self._snapshots.move_to_end(patient_id)
        while len(self._snapshots) > self._snapshot_cache_size:
            self._snapshots.popitem(last=False)

    # ── Audit ──

    async def _audit_red_flags(self, session: ConversationSession, report: RedFlagReport) -> None:
        if report.degraded and session.symptoms:
            await self._record(session, AuditEventKind.RED_FLAG_DEGRADED, {
                "skipped_rules": report.skipped_rules,
            })

        if report.findings:
            known = {(f.type, f.severity) for f in session.red_flags}
            session.record_findings(report.findings)
            for finding in report.findings:
                if (finding.type, finding.severity) not in known:
                    await self._record(session, AuditEventKind.RED_FLAG_FINDING, {
                        **finding.model_dump(mode="json"),
                        "evaluation_failed": report.failed,
                    })
        elif report.watch:
            known_watch = {f.type for f in session.watch_flags}
            session.record_watch(report.watch)
            for match in report.watch:
                if match.type not in known_watch:
                    await self._record(session, AuditEventKind.RED_FLAG_WATCH, match.model_dump(mode="json"))

    async def _record(self, session: ConversationSession, kind: AuditEventKind, detail: dict[str, Any]) -> None:
        await safe_record(self._audit, AuditEvent(
            kind=kind,
            session_id=session.session_id,
            patient_id=session.patient_id,
            detail=detail,
            timestamp=self._clock.now(),
        ))

    def _add_assistant_turn(self, session: ConversationSession, text: str) -> None:
        session.add_turn(Turn(
            role=TurnRole.ASSISTANT,
            text=text,
            language=session.language,
            mode=session.mode,
            timestamp=self._clock.now(),
        ))
