"""
Parsing of inference responses into tagged per-record outcomes.

The model's output is loosely typed text. Nothing downstream touches it
until it has been turned into one of:

    SuggestionOk(suggestion)        well-formed suggestion for the record
    SuggestionParseError(reason)    output for the record unusable
    SuggestionProviderError(kind)   the call itself failed
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class AlternativePayload(BaseModel):
    code: str
    confidence: float = 0

    @field_validator("code", mode="before")
    @classmethod
    def _code_to_str(cls, v):
        return str(v) if isinstance(v, (int, float)) else v


class SuggestionPayload(BaseModel):
    """One element of the model's JSON array."""
    record_ref: str
    cleaned_title: str = ""
    suggested_code: Optional[str] = None
    confidence: float
    reasoning: str = ""
    alternatives: List[AlternativePayload] = []

    @field_validator("record_ref", "suggested_code", mode="before")
    @classmethod
    def _ids_to_str(cls, v):
        return str(v) if isinstance(v, (int, float)) else v

    @field_validator("alternatives", mode="before")
    @classmethod
    def _null_alternatives(cls, v):
        return v or []


@dataclass(frozen=True)
class SuggestionOk:
    suggestion: SuggestionPayload


@dataclass(frozen=True)
class SuggestionParseError:
    reason: str


@dataclass(frozen=True)
class SuggestionProviderError:
    kind: str
    message: str = ""


SuggestionOutcome = Union[SuggestionOk, SuggestionParseError, SuggestionProviderError]


def strip_fences(text: str) -> str:
    """Pull the JSON out of a markdown code block if the model added one."""
    text = (text or "").strip()
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text


def _items_from(data) -> Optional[list]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("results", "mappings", "suggestions"):
            if isinstance(data.get(key), list):
                return data[key]
    return None


def parse_response(text: str, refs: list[str]) -> dict[str, SuggestionOutcome]:
    """
    Parse the model's text into one outcome per requested record.

    Args:
        text: Raw response text
        refs: record_ref values that were sent

    Returns:
        Dict mapping every ref to its outcome. Records the model skipped
        or garbled get SuggestionParseError; results for refs that were
        never sent are ignored.
    """
    try:
        data = json.loads(strip_fences(text))
    except json.JSONDecodeError as e:
        reason = f"Response is not valid JSON: {e.msg}"
        logger.warning(reason)
        return {ref: SuggestionParseError(reason) for ref in refs}

    items = _items_from(data)
    if items is None:
        reason = "Response is not a JSON array"
        logger.warning(reason)
        return {ref: SuggestionParseError(reason) for ref in refs}

    wanted = set(refs)
    outcomes: dict[str, SuggestionOutcome] = {}

    for position, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Response item {position} is not an object")
            continue

        try:
            suggestion = SuggestionPayload.model_validate(item)
        except PydanticValidationError as e:
            ref = item.get("record_ref")
            ref = str(ref) if ref is not None else None
            if ref in wanted and ref not in outcomes:
                outcomes[ref] = SuggestionParseError(
                    f"Invalid suggestion shape: {e.error_count()} error(s)"
                )
            continue

        if suggestion.record_ref not in wanted:
            logger.warning(f"Response references unknown record {suggestion.record_ref!r}")
            continue
        if suggestion.record_ref in outcomes:
            continue
        outcomes[suggestion.record_ref] = SuggestionOk(suggestion)

    for ref in refs:
        if ref not in outcomes:
            outcomes[ref] = SuggestionParseError("No result returned for record")

    return outcomes


def provider_error_outcomes(refs: list[str], kind: str, message: str = "") -> dict[str, SuggestionOutcome]:
    return {ref: SuggestionProviderError(kind, message) for ref in refs}
