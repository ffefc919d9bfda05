"""
Red-Flag Evaluator — deterministic urgency rules over symptoms + history.

This is the most safety-critical component of the engine.  It is a pure
function of its inputs: same symptoms and snapshot → same report.

Rule classes:
  a. Symptom rules — per-symptom severity thresholds, always-critical
     symptoms and dangerous symptom combinations
  b. Symptom + chronic condition combinations
  c. Symptom + active medication combinations

Escalation threshold: any CRITICAL match, or two or more HIGH matches.
A single HIGH match is reported as a watch item only.

Without a patient snapshot the evaluator runs degraded: class (b) and the
prescription half of class (c) are skipped (medications the patient named
are still checked) and the report says so.  Any internal failure,
including a malformed snapshot or one whose payload omitted a required
history field, yields a synthetic CRITICAL finding:
the evaluator never silently returns "no flags".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError

from careline.triage.collaborators import PatientSnapshot
from careline.triage.errors import RedFlagEvaluationFailure
from careline.triage.models import FindingSeverity, RedFlagFinding, SymptomEvidence
from careline.triage.nlp.vocabulary import canonical_drug

logger = logging.getLogger("triage.red_flags")

HIGH = FindingSeverity.HIGH
CRITICAL = FindingSeverity.CRITICAL


# ── a. Symptom rules ──

# (symptom, min severity, finding severity, type, rationale): checked in order,
# the first (strongest) rule per symptom wins
SEVERITY_RULES: list[tuple[str, int, FindingSeverity, str, str]] = [
    ("chest pain", 7, CRITICAL, "severe_chest_pain", "Severe chest pain"),
    ("chest pain", 1, HIGH, "chest_pain", "Chest pain reported"),
    ("shortness of breath", 8, CRITICAL, "severe_breathlessness", "Severe shortness of breath"),
    ("shortness of breath", 1, HIGH, "breathlessness", "Shortness of breath reported"),
    ("headache", 10, CRITICAL, "thunderclap_headache", "Worst-ever headache"),
    ("headache", 8, HIGH, "severe_headache", "Severe headache"),
    ("abdominal pain", 9, CRITICAL, "acute_abdomen", "Extreme abdominal pain"),
    ("abdominal pain", 8, HIGH, "severe_abdominal_pain", "Severe abdominal pain"),
    ("fever", 8, HIGH, "high_fever", "High fever"),
    ("bleeding", 8, CRITICAL, "heavy_bleeding", "Heavy bleeding"),
    ("bleeding", 1, HIGH, "bleeding", "Bleeding reported"),
    ("vomiting", 8, HIGH, "severe_vomiting", "Severe or persistent vomiting"),
    ("dizziness", 8, HIGH, "severe_dizziness", "Severe dizziness"),
    ("palpitations", 7, HIGH, "severe_palpitations", "Severe palpitations"),
    ("blurred vision", 7, HIGH, "severe_vision_change", "Sudden or severe vision change"),
    ("swelling", 8, HIGH, "severe_swelling", "Severe swelling"),
    ("high blood sugar", 8, HIGH, "severe_hyperglycaemia", "Very high blood sugar"),
    ("low blood sugar", 1, HIGH, "hypoglycaemia", "Low blood sugar reported"),
    ("confusion", 1, HIGH, "confusion", "Confusion / altered mental status"),
    ("fainting", 1, HIGH, "syncope", "Fainting / loss of consciousness"),
    ("weakness", 1, HIGH, "focal_weakness", "One-sided weakness"),
    ("black stool", 1, HIGH, "gi_bleeding", "Possible GI bleeding"),
]

# symptom → (type, rationale); critical at any severity
ALWAYS_CRITICAL: dict[str, tuple[str, str]] = {
    "suicidal thoughts": ("suicidal_ideation", "Suicidal thoughts expressed"),
    "throat swelling": ("anaphylaxis_signs", "Throat, tongue or lip swelling"),
    "facial droop": ("stroke_signs", "Facial droop"),
    "slurred speech": ("stroke_signs", "Slurred speech"),
    "seizure": ("seizure", "Seizure reported"),
    "vomiting blood": ("haematemesis", "Vomiting blood"),
}

# (required symptoms, finding severity, type, rationale)
SYMPTOM_COMBINATION_RULES: list[tuple[frozenset[str], FindingSeverity, str, str]] = [
    (frozenset({"chest pain", "shortness of breath"}), CRITICAL, "cardiac_chest_pain",
     "Chest pain with shortness of breath"),
    (frozenset({"chest pain", "fainting"}), CRITICAL, "cardiac_syncope",
     "Chest pain with fainting"),
    (frozenset({"chest pain", "palpitations"}), HIGH, "cardiac_arrhythmia",
     "Chest pain with palpitations"),
    (frozenset({"palpitations", "fainting"}), CRITICAL, "arrhythmic_syncope",
     "Palpitations with fainting"),
    (frozenset({"headache", "confusion"}), CRITICAL, "neurological_emergency",
     "Headache with confusion"),
    (frozenset({"fever", "confusion"}), CRITICAL, "possible_sepsis",
     "Fever with confusion"),
    (frozenset({"fever", "rash"}), HIGH, "fever_with_rash",
     "Fever with rash (possible meningitis)"),
    (frozenset({"hives", "shortness of breath"}), CRITICAL, "anaphylaxis_signs",
     "Hives with breathing difficulty"),
    (frozenset({"weakness", "numbness"}), CRITICAL, "stroke_signs",
     "Weakness with numbness"),
    (frozenset({"headache", "blurred vision"}), HIGH, "headache_with_vision_change",
     "Headache with vision change"),
]


# ── b. Symptom + chronic condition ──

# (symptom, condition keyword, min severity, finding severity, type, rationale)
CHRONIC_COMBINATION_RULES: list[tuple[str, str, int, FindingSeverity, str, str]] = [
    ("chest pain", "coronary", 1, CRITICAL, "cardiac_history_chest_pain",
     "Chest pain with coronary artery disease"),
    ("chest pain", "angina", 1, CRITICAL, "cardiac_history_chest_pain",
     "Chest pain with known angina"),
    ("chest pain", "heart", 1, CRITICAL, "cardiac_history_chest_pain",
     "Chest pain with heart disease"),
    ("shortness of breath", "heart failure", 1, CRITICAL, "heart_failure_decompensation",
     "Breathlessness with heart failure"),
    ("shortness of breath", "copd", 1, HIGH, "copd_exacerbation",
     "Breathlessness with COPD"),
    ("shortness of breath", "asthma", 1, HIGH, "asthma_exacerbation",
     "Breathlessness with asthma"),
    ("wheezing", "asthma", 1, HIGH, "asthma_exacerbation", "Wheezing with asthma"),
    ("swelling", "heart failure", 1, HIGH, "fluid_overload",
     "Swelling with heart failure"),
    ("fever", "immunosuppress", 1, CRITICAL, "febrile_immunosuppression",
     "Fever while immunosuppressed"),
    ("fever", "chemotherapy", 1, CRITICAL, "febrile_neutropenia_risk",
     "Fever during chemotherapy"),
    ("fever", "sickle cell", 1, CRITICAL, "sickle_cell_crisis_risk",
     "Fever with sickle cell disease"),
    ("confusion", "diabetes", 1, CRITICAL, "diabetic_emergency",
     "Confusion with diabetes"),
    ("low blood sugar", "diabetes", 1, HIGH, "diabetic_hypoglycaemia",
     "Low blood sugar with diabetes"),
    ("high blood sugar", "diabetes", 1, HIGH, "diabetic_hyperglycaemia",
     "High blood sugar with diabetes"),
    ("vomiting", "diabetes", 6, HIGH, "dka_risk", "Vomiting with diabetes"),
    ("headache", "hypertension", 7, HIGH, "hypertensive_headache",
     "Severe headache with hypertension"),
    ("abdominal pain", "pregnan", 1, HIGH, "pregnancy_abdominal_pain",
     "Abdominal pain in pregnancy"),
    ("bleeding", "pregnan", 1, CRITICAL, "pregnancy_bleeding", "Bleeding in pregnancy"),
    ("bleeding", "haemophilia", 1, CRITICAL, "bleeding_disorder", "Bleeding with haemophilia"),
    ("bleeding", "hemophilia", 1, CRITICAL, "bleeding_disorder", "Bleeding with hemophilia"),
]


# ── c. Symptom + active medication ──

# (symptom, canonical drug, min severity, finding severity, type, rationale)
MEDICATION_COMBINATION_RULES: list[tuple[str, str, int, FindingSeverity, str, str]] = [
    ("bleeding", "warfarin", 1, CRITICAL, "anticoagulant_bleeding", "Bleeding on warfarin"),
    ("bleeding", "apixaban", 1, CRITICAL, "anticoagulant_bleeding", "Bleeding on apixaban"),
    ("black stool", "warfarin", 1, CRITICAL, "anticoagulant_gi_bleeding",
     "Possible GI bleeding on warfarin"),
    ("black stool", "apixaban", 1, CRITICAL, "anticoagulant_gi_bleeding",
     "Possible GI bleeding on apixaban"),
    ("black stool", "ibuprofen", 1, HIGH, "nsaid_gi_bleeding",
     "Possible GI bleeding on ibuprofen"),
    ("black stool", "naproxen", 1, HIGH, "nsaid_gi_bleeding",
     "Possible GI bleeding on naproxen"),
    ("headache", "warfarin", 7, CRITICAL, "anticoagulant_head_bleed",
     "Severe headache on warfarin"),
    ("fever", "methotrexate", 1, CRITICAL, "immunosuppressant_infection",
     "Fever on methotrexate"),
    ("fever", "clozapine", 1, CRITICAL, "agranulocytosis_risk", "Fever on clozapine"),
    ("sore throat", "clozapine", 1, HIGH, "agranulocytosis_risk", "Sore throat on clozapine"),
    ("sore throat", "methotrexate", 1, HIGH, "immunosuppressant_infection",
     "Sore throat on methotrexate"),
    ("low blood sugar", "insulin", 1, HIGH, "insulin_hypoglycaemia",
     "Low blood sugar on insulin"),
    ("confusion", "insulin", 1, CRITICAL, "insulin_hypoglycaemia",
     "Confusion on insulin"),
    ("confusion", "oxycodone", 1, CRITICAL, "opioid_toxicity", "Confusion on oxycodone"),
    ("shortness of breath", "oxycodone", 1, CRITICAL, "opioid_respiratory_depression",
     "Breathing difficulty on oxycodone"),
    ("rash", "amoxicillin", 1, HIGH, "drug_allergy", "Rash on amoxicillin"),
    ("hives", "amoxicillin", 1, HIGH, "drug_allergy", "Hives on amoxicillin"),
    ("swelling", "lisinopril", 1, HIGH, "ace_inhibitor_angioedema",
     "Swelling on lisinopril"),
    ("swelling", "ramipril", 1, HIGH, "ace_inhibitor_angioedema",
     "Swelling on ramipril"),
    ("dizziness", "amlodipine", 7, HIGH, "hypotension", "Severe dizziness on amlodipine"),
    ("fainting", "furosemide", 1, HIGH, "hypotension", "Fainting on furosemide"),
]


_RANK = {HIGH: 1, CRITICAL: 2}

# Snapshot fields the chronic and prescription rules depend on
REQUIRED_HISTORY_FIELDS = ("chronic_conditions", "active_prescriptions")


@dataclass
class RedFlagReport:
    """Outcome of one evaluation."""

    matches: list[RedFlagFinding] = field(default_factory=list)
    findings: list[RedFlagFinding] = field(default_factory=list)  # escalation-forcing
    degraded: bool = False
    failed: bool = False
    skipped_rules: list[str] = field(default_factory=list)

    @property
    def escalate(self) -> bool:
        return bool(self.findings)

    @property
    def watch(self) -> list[RedFlagFinding]:
        """Matches that did not reach the escalation threshold."""
        return [] if self.findings else list(self.matches)


class RedFlagEvaluator:
    """
    Stateless rule engine.

    Usage:
        evaluator = RedFlagEvaluator()
        report = evaluator.evaluate(session.symptoms.values(), snapshot)
        if report.escalate: ...
    """

    def evaluate(
        self,
        symptoms: Iterable[SymptomEvidence],
        snapshot: PatientSnapshot | dict[str, Any] | None,
    ) -> RedFlagReport:
        try:
            return self._evaluate(list(symptoms), snapshot)
        except Exception as exc:
            err = exc if isinstance(exc, RedFlagEvaluationFailure) else RedFlagEvaluationFailure(str(exc))
            logger.error("Red-flag evaluation failed: %s — forcing critical finding", err, exc_info=True)
            finding = RedFlagFinding(
                type="evaluation_failure",
                severity=CRITICAL,
                rationale="Red-flag rules could not be evaluated; treating as urgent",
            )
            return RedFlagReport(matches=[finding], findings=[finding], failed=True)

    # ── Internal ──

    def _evaluate(
        self,
        symptoms: list[SymptomEvidence],
        snapshot: PatientSnapshot | dict[str, Any] | None,
    ) -> RedFlagReport:
        history = self._coerce_snapshot(snapshot)
        present = {s.name: s for s in symptoms}
        matches: dict[str, RedFlagFinding] = {}

        self._symptom_rules(present, matches)

        reported_drugs = {canonical_drug(m) for s in symptoms for m in s.medications}
        skipped: list[str] = []
        if history is None:
            skipped = ["chronic_condition", "active_prescription"]
            self._medication_rules(present, reported_drugs, matches)
        else:
            conditions = [c.lower() for c in history.chronic_conditions]
            self._chronic_rules(present, conditions, matches)
            drugs = reported_drugs | {
                canonical_drug(p.name) for p in history.active_prescriptions
            }
            self._medication_rules(present, drugs, matches)

        ordered = sorted(matches.values(), key=lambda f: (-_RANK[f.severity], f.type))
        critical = sum(1 for f in ordered if f.severity == CRITICAL)
        high = sum(1 for f in ordered if f.severity == HIGH)
        findings = ordered if (critical or high >= 2) else []

        if ordered:
            logger.info(
                "Red flags: %d critical, %d high → %s%s",
                critical, high,
                "escalate" if findings else "watch",
                " (degraded)" if history is None else "",
            )
        return RedFlagReport(
            matches=ordered,
            findings=findings,
            degraded=history is None,
            skipped_rules=skipped,
        )

    @staticmethod
    def _coerce_snapshot(
        snapshot: PatientSnapshot | dict[str, Any] | None,
    ) -> PatientSnapshot | None:
        if snapshot is None:
            return None
        if isinstance(snapshot, dict):
            try:
                snapshot = PatientSnapshot.model_validate(snapshot)
            except ValidationError as exc:
                raise RedFlagEvaluationFailure(f"malformed patient snapshot: {exc}") from exc
        if not isinstance(snapshot, PatientSnapshot):
            raise RedFlagEvaluationFailure(
                f"unsupported patient snapshot type: {type(snapshot).__name__}"
            )
        # An empty list is a fact; an absent field is a gap in the record
        missing = [f for f in REQUIRED_HISTORY_FIELDS if f not in snapshot.model_fields_set]
        if missing:
            raise RedFlagEvaluationFailure(
                f"patient snapshot missing history fields: {', '.join(missing)}"
            )
        return snapshot

    @staticmethod
    def _add(matches: dict[str, RedFlagFinding], severity: FindingSeverity, type_: str, rationale: str) -> None:
        existing = matches.get(type_)
        if existing is None or _RANK[severity] > _RANK[existing.severity]:
            matches[type_] = RedFlagFinding(type=type_, severity=severity, rationale=rationale)

    def _symptom_rules(self, present: dict[str, SymptomEvidence], matches: dict[str, RedFlagFinding]) -> None:
        for name, evidence in present.items():
            if name in ALWAYS_CRITICAL:
                type_, rationale = ALWAYS_CRITICAL[name]
                self._add(matches, CRITICAL, type_, rationale)

        seen: set[str] = set()
        for symptom, min_severity, severity, type_, rationale in SEVERITY_RULES:
            evidence = present.get(symptom)
            if evidence is None or symptom in seen:
                continue
            if evidence.severity >= min_severity:
                seen.add(symptom)
                self._add(matches, severity, type_, f"{rationale} ({evidence.severity}/10)")

        names = set(present)
        for required, severity, type_, rationale in SYMPTOM_COMBINATION_RULES:
            if required <= names:
                self._add(matches, severity, type_, rationale)

    def _chronic_rules(
        self,
        present: dict[str, SymptomEvidence],
        conditions: list[str],
        matches: dict[str, RedFlagFinding],
    ) -> None:
        for symptom, keyword, min_severity, severity, type_, rationale in CHRONIC_COMBINATION_RULES:
            evidence = present.get(symptom)
            if evidence is None or evidence.severity < min_severity:
                continue
            if any(keyword in condition for condition in conditions):
                self._add(matches, severity, type_, rationale)

    def _medication_rules(
        self,
        present: dict[str, SymptomEvidence],
        drugs: set[str],
        matches: dict[str, RedFlagFinding],
    ) -> None:
        for symptom, drug, min_severity, severity, type_, rationale in MEDICATION_COMBINATION_RULES:
            evidence = present.get(symptom)
            if evidence is None or evidence.severity < min_severity:
                continue
            if drug in drugs:
                self._add(matches, severity, type_, rationale)
