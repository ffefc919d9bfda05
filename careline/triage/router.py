"""
Tier Router — deterministic decision table.

First match wins:
  1. any red-flag finding                                   → Tier 3
  2. medication_query, no red flags, confidence ≥ threshold → Tier 2
  3. general_health, confidence ≥ threshold                 → Tier 1
  4. otherwise → ask a follow-up, or Tier 3 once the follow-up cap is spent

Tier 2 cross-references the patient's active prescriptions.  When they
cannot be read the decision still says Tier 2 but withholds dosage and
asks the engine to retry the patient data in the background.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from careline import settings
from careline.triage.collaborators import PatientSnapshot, Prescription
from careline.triage.errors import AmbiguousClassification
from careline.triage.models import ClassificationResult, IntentCategory, Tier
from careline.triage.nlp.vocabulary import canonical_drug
from careline.triage.red_flags import RedFlagReport

logger = logging.getLogger("triage.router")


class RoutingAction(str, Enum):
    RESPOND = "respond"
    FOLLOW_UP = "follow_up"
    ESCALATE = "escalate"


# Known interacting pairs (canonical names, order-free) → short warning
KNOWN_INTERACTIONS: dict[frozenset[str], str] = {
    frozenset({"warfarin", "aspirin"}): "increases bleeding risk",
    frozenset({"warfarin", "ibuprofen"}): "increases bleeding risk",
    frozenset({"warfarin", "naproxen"}): "increases bleeding risk",
    frozenset({"apixaban", "ibuprofen"}): "increases bleeding risk",
    frozenset({"apixaban", "aspirin"}): "increases bleeding risk",
    frozenset({"warfarin", "clarithromycin"}): "can raise warfarin levels",
    frozenset({"simvastatin", "clarithromycin"}): "raises the risk of muscle damage",
    frozenset({"atorvastatin", "clarithromycin"}): "raises the risk of muscle damage",
    frozenset({"methotrexate", "ibuprofen"}): "can raise methotrexate levels",
    frozenset({"lisinopril", "ibuprofen"}): "can affect kidney function and blood pressure",
    frozenset({"ramipril", "ibuprofen"}): "can affect kidney function and blood pressure",
    frozenset({"sertraline", "tramadol"}): "raises the risk of serotonin syndrome",
    frozenset({"fluoxetine", "tramadol"}): "raises the risk of serotonin syndrome",
    frozenset({"oxycodone", "codeine"}): "doubles up opioid effects",
    frozenset({"levothyroxine", "omeprazole"}): "can reduce levothyroxine absorption",
}


@dataclass
class RoutingDecision:
    action: RoutingAction
    tier: Optional[Tier] = None
    reason: str = ""
    withhold_dosage: bool = False
    needs_data_retry: bool = False
    prescription_matches: list[Prescription] = field(default_factory=list)
    interactions: list[tuple[str, str, str]] = field(default_factory=list)  # (drug, drug, warning)


class TierRouter:
    """
    Stateless.

    Usage:
        router = TierRouter()
        decision = router.route(classification, report, follow_up_count, snapshot, medications)
    """

    def __init__(
        self,
        confidence_threshold: float = settings.CONFIDENCE_THRESHOLD,
        max_follow_ups: int = settings.MAX_FOLLOW_UPS,
    ) -> None:
        self.confidence_threshold = confidence_threshold
        self.max_follow_ups = max_follow_ups

    def route(
        self,
        classification: ClassificationResult,
        report: RedFlagReport,
        follow_up_count: int,
        snapshot: Optional[PatientSnapshot] = None,
        medications: Optional[list[str]] = None,
    ) -> RoutingDecision:
        if report.findings:
            return RoutingDecision(
                action=RoutingAction.ESCALATE,
                tier=Tier.URGENT_ESCALATION,
                reason="red_flag",
            )

        confident = classification.confidence >= self.confidence_threshold

        if classification.category == IntentCategory.MEDICATION_QUERY and confident:
            return self._medication_decision(snapshot, medications or [])

        if classification.category == IntentCategory.GENERAL_HEALTH and confident:
            return RoutingDecision(
                action=RoutingAction.RESPOND,
                tier=Tier.GENERAL_EDUCATION,
                reason="general_health",
            )

        if follow_up_count >= self.max_follow_ups:
            err = AmbiguousClassification(
                f"confidence {classification.confidence:.2f} after {follow_up_count} follow-ups"
            )
            logger.warning("%s — forcing Tier 3", err)
            return RoutingDecision(
                action=RoutingAction.ESCALATE,
                tier=Tier.URGENT_ESCALATION,
                reason="ambiguous_classification",
            )

        return RoutingDecision(action=RoutingAction.FOLLOW_UP, reason="low_confidence")

    # ── Internal ──

    @staticmethod
    def _medication_decision(
        snapshot: Optional[PatientSnapshot], medications: list[str]
    ) -> RoutingDecision:
        if snapshot is None:
            logger.info("Tier 2 without prescriptions — withholding dosage")
            return RoutingDecision(
                action=RoutingAction.RESPOND,
                tier=Tier.MEDICATION_GUIDANCE,
                reason="medication_query",
                withhold_dosage=True,
                needs_data_retry=True,
            )

        mentioned = [canonical_drug(m) for m in medications]
        active = {canonical_drug(p.name): p for p in snapshot.active_prescriptions}
        matches = [active[name] for name in mentioned if name in active]

        interactions: list[tuple[str, str, str]] = []
        seen: set[frozenset[str]] = set()
        for drug in mentioned:
            for other in sorted(set(active) | set(mentioned)):
                pair = frozenset({drug, other})
                if drug == other or pair in seen:
                    continue
                warning = KNOWN_INTERACTIONS.get(pair)
                if warning:
                    seen.add(pair)
                    interactions.append((drug, other, warning))

        return RoutingDecision(
            action=RoutingAction.RESPOND,
            tier=Tier.MEDICATION_GUIDANCE,
            reason="medication_query",
            prescription_matches=matches,
            interactions=interactions,
        )
