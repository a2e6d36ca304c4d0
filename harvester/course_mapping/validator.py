"""
Validator - checks semantic suggestions against ground truth.

Every suggestion is checked before it can become a secondary mapping:
- suggested code must exist in the master catalog (hallucination guard)
- confidence is clamped into [0, 100] and flagged if it was out of range
- alternatives are limited to catalog codes, sorted, and truncated
"""

import logging
import math
from datetime import datetime
from typing import Optional

from .errors import HallucinatedSuggestion
from .index import CatalogIndex
from .models import Alternative, SecondaryMapping
from .responses import SuggestionPayload

logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 3
FLAG_CONFIDENCE_CLAMPED = "confidence_clamped"
FLAG_ALTERNATIVES_DROPPED = "alternatives_dropped"

SUSPICIOUSLY_HIGH_CONFIDENCE = 98
SUSPICIOUSLY_LOW_CONFIDENCE = 20


def clamp_confidence(value: float) -> tuple[int, bool]:
    """Clamp to [0, 100]; returns (value, was_clamped)."""
    if value is None or math.isnan(value):
        return 0, True
    if value < 0:
        return 0, True
    if value > 100:
        return 100, True
    return int(round(value)), False


def validate_suggestion(
    suggestion: SuggestionPayload,
    index: CatalogIndex,
    model_id: str,
    produced_at: datetime,
    max_alternatives: int = MAX_ALTERNATIVES,
) -> Optional[SecondaryMapping]:
    """
    Turn a parsed suggestion into a SecondaryMapping.

    Returns:
        SecondaryMapping, or None when the model declined to suggest a code

    Raises:
        HallucinatedSuggestion: suggested code is not in the catalog
    """
    if not suggestion.suggested_code or not suggestion.suggested_code.strip():
        return None

    master = index.lookup_code(suggestion.suggested_code)
    if master is None:
        raise HallucinatedSuggestion(suggestion.suggested_code)

    flags = []
    confidence, clamped = clamp_confidence(suggestion.confidence)
    if clamped:
        logger.warning(
            f"Confidence {suggestion.confidence} for record {suggestion.record_ref} "
            f"clamped to {confidence}"
        )
        flags.append(FLAG_CONFIDENCE_CLAMPED)

    alternatives = {}
    dropped = False
    for alt in suggestion.alternatives:
        alt_master = index.lookup_code(alt.code)
        if alt_master is None:
            dropped = True
            continue
        if alt_master.code == master.code:
            continue
        alt_confidence, _ = clamp_confidence(alt.confidence)
        if alt_confidence > alternatives.get(alt_master.code, -1):
            alternatives[alt_master.code] = alt_confidence
    if dropped:
        flags.append(FLAG_ALTERNATIVES_DROPPED)

    ranked = sorted(alternatives.items(), key=lambda kv: (-kv[1], kv[0]))[:max_alternatives]

    return SecondaryMapping(
        code=master.code,
        cleaned_title=suggestion.cleaned_title.strip() or master.title,
        confidence=confidence,
        reasoning=suggestion.reasoning.strip(),
        model_id=model_id,
        produced_at=produced_at,
        alternatives=tuple(Alternative(code=c, confidence=conf) for c, conf in ranked),
        flags=tuple(flags),
    )


def detect_confidence_anomalies(
    mappings: list[SecondaryMapping],
    high: int = SUSPICIOUSLY_HIGH_CONFIDENCE,
    low: int = SUSPICIOUSLY_LOW_CONFIDENCE,
) -> dict:
    """Count suspiciously high/low confidences in a set of suggestions."""
    too_high = sum(1 for m in mappings if m.confidence > high)
    too_low = sum(1 for m in mappings if m.confidence < low)

    warnings = []
    if too_high:
        warnings.append(f"{too_high} suggestion(s) have suspiciously high confidence (>{high})")
    if too_low:
        warnings.append(f"{too_low} suggestion(s) have suspiciously low confidence (<{low})")

    return {"too_high": too_high, "too_low": too_low, "warnings": warnings}
