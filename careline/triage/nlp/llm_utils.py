"""
LLM utility functions — retry wrapper and JSON reply parsing.

Shared by the LLM-backed classifier and extractor.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

logger = logging.getLogger("triage.nlp.llm_utils")


async def llm_generate(
    client: Any,
    model: str,
    contents: str,
    max_retries: int = 1,
    base_backoff: float = 0.25,
) -> str | None:
    """
    Call the LLM with retry and exponential backoff.

    Returns the response text, or None if exhausted so callers use their
    deterministic fallback.  Retries are kept short: the caller runs inside
    a response envelope of a few seconds.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=contents,
            )
            text = response.text
            if isinstance(text, str) and text.strip():
                return text
            # Empty response: treat as transient failure
            logger.warning("LLM returned empty response (attempt %d)", attempt + 1)
        except Exception as exc:
            logger.warning(
                "LLM call failed (attempt %d/%d): %s",
                attempt + 1, max_retries + 1, exc,
            )

        if attempt < max_retries:
            await asyncio.sleep(base_backoff * (2 ** attempt))

    logger.error(
        "LLM call exhausted all %d attempts — returning None", max_retries + 1,
    )
    return None


def parse_json_reply(raw: str | None) -> dict[str, Any] | None:
    """Parse a JSON object out of an LLM reply, tolerating markdown fences."""
    if not raw or not raw.strip():
        return None
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        # Some models wrap the object in prose, so take the outermost braces
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None
