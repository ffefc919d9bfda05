"""
Intent Classifier Adapter — bounds the external classifier's latency.

Envelopes:
  text, no tier yet or Tier 1   → 3 s
  text, session at Tier 2       → 5 s
  voice                         → 7 s

An overrun (AdapterTimeout) or an adapter exception (AdapterUnavailable)
never propagates: the turn gets a forced low-confidence result, which
the state machine treats like any other unclear answer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from careline import settings
from careline.triage.collaborators import IntentClassifier
from careline.triage.errors import AdapterTimeout, AdapterUnavailable
from careline.triage.models import ClassificationResult, InteractionMode, Tier

logger = logging.getLogger("triage.classifier")


class ClassifierAdapter:
    def __init__(
        self,
        classifier: IntentClassifier,
        *,
        tier1_seconds: float = settings.TIER1_RESPONSE_SECONDS,
        tier2_seconds: float = settings.TIER2_RESPONSE_SECONDS,
        voice_seconds: float = settings.VOICE_RESPONSE_SECONDS,
    ) -> None:
        self._classifier = classifier
        self._tier1_seconds = tier1_seconds
        self._tier2_seconds = tier2_seconds
        self._voice_seconds = voice_seconds
        self.timeouts = 0
        self.failures = 0

    def envelope_for(self, mode: InteractionMode, current_tier: Optional[Tier]) -> float:
        if mode == InteractionMode.VOICE:
            return self._voice_seconds
        if current_tier == Tier.MEDICATION_GUIDANCE:
            return self._tier2_seconds
        return self._tier1_seconds

    async def classify(
        self,
        text: str,
        language: str,
        patient_context_ref: str,
        *,
        mode: InteractionMode = InteractionMode.TEXT,
        current_tier: Optional[Tier] = None,
    ) -> ClassificationResult:
        budget = self.envelope_for(mode, current_tier)
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._classifier.classify(text, language, patient_context_ref),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            self.timeouts += 1
            err = AdapterTimeout(f"classifier exceeded {budget:.1f}s envelope")
            logger.warning("%s for %s — forcing low confidence", err, patient_context_ref)
            return ClassificationResult.forced_low("adapter_timeout")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            err = AdapterUnavailable(str(exc))
            logger.warning(
                "Classifier unavailable for %s: %s — forcing low confidence",
                patient_context_ref, err,
            )
            return ClassificationResult.forced_low("adapter_unavailable")

        if not isinstance(result, ClassificationResult):
            self.failures += 1
            logger.warning("Classifier returned %s — forcing low confidence", type(result).__name__)
            return ClassificationResult.forced_low("adapter_unavailable")

        logger.info(
            "[timing] classify %s: %.0fms → %s (%.2f)",
            patient_context_ref, (time.monotonic() - t0) * 1000,
            result.category.value, result.confidence,
        )
        return result
