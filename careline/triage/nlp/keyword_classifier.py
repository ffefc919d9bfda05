"""
Keyword Intent Classifier — deterministic default IntentClassifier.

Scores medication and general-health vocabulary.  Confidence grows with
the number of distinct hits, so a vague utterance lands below the 0.7 gate
and the state machine asks a follow-up.
"""

from __future__ import annotations

import logging
import re

from careline.triage.collaborators import IntentClassifier
from careline.triage.models import ClassificationResult, IntentCategory
from careline.triage.nlp.vocabulary import find_medications, find_symptoms

logger = logging.getLogger("triage.nlp.keyword_classifier")

MEDICATION_TERMS: list[str] = [
    r"\bmedication", r"\bmedicine", r"\bdos(e|age|es|ing)\b", r"\bpills?\b",
    r"\btablets?\b", r"\bprescription", r"\bprescribed\b", r"\bmg\b",
    r"side effects?", r"\brefill", r"missed (a|my) dose", r"interact",
    r"how (much|often|many) .* (take|have)", r"can i take", r"should i take",
    r"\bwith food\b",
]

GENERAL_HEALTH_TERMS: list[str] = [
    r"\bhealthy\b", r"\bdiet\b", r"\bexercise\b", r"\bsleep", r"\bweight\b",
    r"is it normal", r"what (can|should) i do", r"how (can|do) i (help|treat|get rid)",
    r"\bhome remed", r"\bself[- ]care\b", r"\bhydrat", r"\bvaccin",
    r"\bflu\b", r"\bfeel(ing)? (unwell|ill|poorly)\b",
]

LOW_CONFIDENCE = 0.3


class KeywordIntentClassifier(IntentClassifier):
    async def classify(
        self, text: str, language: str, patient_context_ref: str
    ) -> ClassificationResult:
        return self.classify_text(text)

    def classify_text(self, text: str) -> ClassificationResult:
        lowered = (text or "").lower()
        drugs = find_medications(lowered)
        medication_hits = len(drugs) + sum(
            1 for term in MEDICATION_TERMS if re.search(term, lowered)
        )
        symptoms = find_symptoms(lowered)
        general_hits = len(symptoms) + sum(
            1 for term in GENERAL_HEALTH_TERMS if re.search(term, lowered)
        )

        if medication_hits == 0 and general_hits == 0:
            return ClassificationResult(
                category=IntentCategory.OTHER,
                confidence=LOW_CONFIDENCE,
                sub_category="no_clinical_terms",
            )

        # A named drug plus a medication term is a clear medication question
        if medication_hits >= general_hits or (drugs and medication_hits >= 2):
            confidence = min(0.95, 0.55 + 0.15 * medication_hits)
            return ClassificationResult(
                category=IntentCategory.MEDICATION_QUERY,
                confidence=confidence,
                sub_category=drugs[0] if drugs else None,
            )

        confidence = min(0.95, 0.6 + 0.15 * general_hits)
        if medication_hits:
            # Mixed signals: keep the category but stay cautious
            confidence -= 0.1
        return ClassificationResult(
            category=IntentCategory.GENERAL_HEALTH,
            confidence=confidence,
            sub_category=symptoms[0] if symptoms else None,
        )
