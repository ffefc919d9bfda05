"""
Gemini Intent Classifier — LLM-backed IntentClassifier.

Asks Gemini for a JSON verdict.  Works in deterministic fallback mode
(keyword classifier) when no client can be created or the reply cannot
be parsed, so the engine always receives a ClassificationResult.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from careline import settings
from careline.triage.collaborators import IntentClassifier
from careline.triage.models import ClassificationResult, IntentCategory
from careline.triage.nlp.keyword_classifier import KeywordIntentClassifier
from careline.triage.nlp.llm_utils import llm_generate, parse_json_reply

logger = logging.getLogger("triage.nlp.gemini_classifier")

CLASSIFY_PROMPT = """\
You are the intake classifier of a patient support line. Classify the \
patient's message into exactly one category:

- "general_health": general health questions or everyday symptoms
- "medication_query": questions about the patient's own medicines, doses, \
schedules, side effects or interactions
- "other": anything else, or too vague to tell

Return ONLY a JSON object:
{{"category": "<category>", "confidence": <0.0-1.0>, "sub_category": "<short label or null>"}}

Use a confidence below 0.7 whenever the message is vague.

Language: {language}
Patient message:
{text}
"""


class GeminiIntentClassifier(IntentClassifier):
    """
    Usage:
        classifier = GeminiIntentClassifier()            # lazy client
        classifier = GeminiIntentClassifier(llm_client)  # injected (tests)
    """

    def __init__(self, llm_client=None, model_name: str | None = None) -> None:
        self._client = llm_client
        self._model_name = model_name or settings.CLASSIFIER_MODEL
        self._fallback = KeywordIntentClassifier()

    @property
    def client(self):
        if self._client is None:
            try:
                from google import genai
                self._client = genai.Client(api_key=os.getenv("GOOGLE_API_KEY"))
            except Exception as exc:
                logger.error("Failed to create Gemini client: %s", exc)
        return self._client

    async def classify(
        self, text: str, language: str, patient_context_ref: str
    ) -> ClassificationResult:
        client = self.client
        if client is None:
            return self._fallback.classify_text(text)

        raw = await llm_generate(
            client,
            self._model_name,
            CLASSIFY_PROMPT.format(language=language, text=text),
        )
        result = self._parse(parse_json_reply(raw))
        if result is None:
            logger.warning(
                "Unusable classifier reply for %s — keyword fallback",
                patient_context_ref,
            )
            return self._fallback.classify_text(text)
        return result

    @staticmethod
    def _parse(data: dict[str, Any] | None) -> ClassificationResult | None:
        if not data:
            return None
        try:
            category = IntentCategory(str(data.get("category", "")).strip().lower())
        except ValueError:
            return None
        sub = data.get("sub_category")
        return ClassificationResult(
            category=category,
            confidence=data.get("confidence", 0.0),
            sub_category=str(sub) if sub else None,
        )
