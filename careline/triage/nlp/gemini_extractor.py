"""
Gemini Symptom Extractor — LLM-backed SymptomExtractor.

Gemini reads the utterance against the canonical symptom list the red-flag
rules are written for.  The keyword extractor always runs as well and its
evidence is merged in (highest severity wins), so a symptom the keywords
catch is never lost to a terse or failed LLM reply.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from careline import settings
from careline.triage.collaborators import SymptomExtractor
from careline.triage.models import SymptomEvidence, normalize_symptom_name
from careline.triage.nlp.llm_utils import llm_generate, parse_json_reply
from careline.triage.nlp.symptom_extractor import KeywordSymptomExtractor
from careline.triage.nlp.vocabulary import SYMPTOM_PATTERNS, canonical_drug

logger = logging.getLogger("triage.nlp.gemini_extractor")

# Kept under the shortest response envelope so keyword evidence still lands
LLM_TIMEOUT_SECONDS = 2.5

EXTRACT_PROMPT = """\
You extract symptoms from a patient's message to a support line.

Use ONLY these symptom names:
{symptoms}

Return ONLY a JSON object:
{{"symptoms": [{{"name": "<symptom name>", "severity": <1-10>, \
"onset": "<when it started, or null>", "description": "<patient's words>"}}], \
"medications": ["<medicine the patient mentions>"]}}

Severity 10 is the worst the patient can imagine; use 5 when they do not say.
Return {{"symptoms": [], "medications": []}} if no listed symptom is present.

Language: {language}
Patient message:
{text}
"""


class GeminiSymptomExtractor(SymptomExtractor):
    """
    Usage:
        extractor = GeminiSymptomExtractor()            # lazy client
        extractor = GeminiSymptomExtractor(llm_client)  # injected (tests)
    """

    def __init__(
        self,
        llm_client=None,
        model_name: str | None = None,
        llm_timeout: float = LLM_TIMEOUT_SECONDS,
    ) -> None:
        self._client = llm_client
        self._model_name = model_name or settings.EXTRACTOR_MODEL
        self._llm_timeout = llm_timeout
        self._keywords = KeywordSymptomExtractor()

    @property
    def client(self):
        if self._client is None:
            try:
                from google import genai
                self._client = genai.Client(api_key=os.getenv("GOOGLE_API_KEY"))
            except Exception as exc:
                logger.error("Failed to create Gemini client: %s", exc)
        return self._client

    async def extract(self, text: str, language: str) -> list[SymptomEvidence]:
        keyword_evidence = await self._keywords.extract(text, language)
        if not text or not text.strip():
            return keyword_evidence

        client = self.client
        if client is None:
            return keyword_evidence

        prompt = EXTRACT_PROMPT.format(
            symptoms="\n".join(f"- {name}" for name in SYMPTOM_PATTERNS),
            language=language,
            text=text,
        )
        try:
            raw = await asyncio.wait_for(
                llm_generate(client, self._model_name, prompt),
                timeout=self._llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Extractor LLM exceeded %.1fs — keyword evidence only", self._llm_timeout)
            return keyword_evidence
        llm_evidence = self._parse(parse_json_reply(raw))
        if llm_evidence is None:
            logger.warning("Unusable extractor reply — keyword evidence only")
            return keyword_evidence
        return self._merge(llm_evidence, keyword_evidence)

    @staticmethod
    def _parse(data: dict[str, Any] | None) -> list[SymptomEvidence] | None:
        if not data or not isinstance(data.get("symptoms"), list):
            return None
        medications: list[str] = []
        for med in data.get("medications") or []:
            if isinstance(med, str) and med.strip():
                drug = canonical_drug(med)
                if drug not in medications:
                    medications.append(drug)

        evidence: list[SymptomEvidence] = []
        for item in data["symptoms"]:
            if not isinstance(item, dict):
                continue
            name = normalize_symptom_name(str(item.get("name") or ""))
            if name not in SYMPTOM_PATTERNS:
                logger.debug("Dropping non-canonical symptom %r from extractor reply", name)
                continue
            onset = item.get("onset")
            evidence.append(SymptomEvidence(
                name=name,
                description=str(item.get("description") or ""),
                onset=str(onset) if onset else None,
                severity=item.get("severity", 5),
                medications=medications,
            ))
        return evidence

    @staticmethod
    def _merge(
        primary: list[SymptomEvidence], extra: list[SymptomEvidence]
    ) -> list[SymptomEvidence]:
        merged: dict[str, SymptomEvidence] = {}
        for item in [*primary, *extra]:
            existing = merged.get(item.name)
            merged[item.name] = existing.merged_with(item) if existing else item
        return list(merged.values())
