"""
Keyword Symptom Extractor — deterministic default SymptomExtractor.

Finds canonical symptoms per sentence, reads a severity from the nearest
preceding intensity word (or an explicit "7/10" rating), an onset phrase,
and attaches any medications mentioned in the same utterance.
"""

from __future__ import annotations

import logging
import re

from careline.triage.collaborators import SymptomExtractor
from careline.triage.models import SymptomEvidence
from careline.triage.nlp.vocabulary import SYMPTOM_PATTERNS, find_medications

logger = logging.getLogger("triage.nlp.symptoms")

DEFAULT_SEVERITY = 5

# (severity, cue regex), strongest first
SEVERITY_CUES: list[tuple[int, str]] = [
    (10, r"\b(worst|unbearable|excruciating|crushing|agoni[sz]ing)\b"),
    (8, r"\b(severe|terrible|intense|extreme|awful|really bad|very bad|horrible)\b"),
    (6, r"\b(bad|strong|quite bad|significant|getting worse)\b"),
    (5, r"\b(moderate)\b"),
    (3, r"\b(mild|slight|slightly|a little|a bit of|minor)\b"),
]

RATING_RE = re.compile(r"\b(\d{1,2})\s*(?:/|out of)\s*10\b")

ONSET_PATTERNS: list[str] = [
    r"\bsince (yesterday|this morning|last night|last week|this afternoon|\w+day)\b",
    r"\bfor (?:the (?:past|last) )?(?:\d+|a few|few|two|three|several|a couple of) (?:minutes|hours|days|weeks|months)\b",
    r"\b(this morning|last night|yesterday|today|an hour ago|\d+ (?:hours|days) ago)\b",
]
SUDDEN_RE = re.compile(r"\b(suddenly|sudden|out of nowhere|came on fast)\b")

SENTENCE_SPLIT_RE = re.compile(r"[.!?;\n]+")

# How far back from a symptom mention to look for an intensity word
CUE_WINDOW_CHARS = 30


class KeywordSymptomExtractor(SymptomExtractor):
    """
    Usage:
        extractor = KeywordSymptomExtractor()
        evidence = await extractor.extract("severe chest pain since this morning", "en")
    """

    async def extract(self, text: str, language: str) -> list[SymptomEvidence]:
        if not text or not text.strip():
            return []

        medications = find_medications(text)
        whole_onset = self._onset(text.lower())
        found: dict[str, SymptomEvidence] = {}

        for sentence in SENTENCE_SPLIT_RE.split(text):
            lowered = sentence.lower()
            if not lowered.strip():
                continue
            rating = self._rating(lowered)
            onset = self._onset(lowered) or whole_onset
            for name, patterns in SYMPTOM_PATTERNS.items():
                position = self._first_match(lowered, patterns)
                if position is None:
                    continue
                severity = rating or self._cue_before(lowered, position) or self._cue_anywhere(lowered)
                evidence = SymptomEvidence(
                    name=name,
                    description=sentence.strip(),
                    onset=onset,
                    severity=severity or DEFAULT_SEVERITY,
                    medications=medications,
                )
                existing = found.get(name)
                found[name] = existing.merged_with(evidence) if existing else evidence

        if found:
            logger.debug("Extracted symptoms: %s", list(found))
        return list(found.values())

    # ── Internal ──

    @staticmethod
    def _first_match(text: str, patterns: list[str]) -> int | None:
        positions = [m.start() for p in patterns if (m := re.search(p, text))]
        return min(positions) if positions else None

    @staticmethod
    def _rating(text: str) -> int | None:
        match = RATING_RE.search(text)
        if match:
            return int(match.group(1))
        return None

    @staticmethod
    def _cue_before(text: str, position: int) -> int | None:
        window = text[max(0, position - CUE_WINDOW_CHARS):position]
        for severity, cue in SEVERITY_CUES:
            if re.search(cue, window):
                return severity
        return None

    @staticmethod
    def _cue_anywhere(text: str) -> int | None:
        for severity, cue in SEVERITY_CUES:
            if re.search(cue, text):
                return severity
        return None

    @staticmethod
    def _onset(text: str) -> str | None:
        if SUDDEN_RE.search(text):
            return "sudden"
        for pattern in ONSET_PATTERNS:
            match = re.search(pattern, text)
            if match:
                return match.group(0)
        return None
