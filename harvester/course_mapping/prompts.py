"""
Prompt construction for semantic matching.

A request carries the unresolved records plus a bounded slice of the
master catalog. Sending the whole catalog would blow the request size,
so candidates are restricted to the records' categories and capped,
keeping the entries closest to the records' titles.
"""

import json
from dataclasses import dataclass

from rapidfuzz import fuzz
from rapidfuzz.utils import default_process

from .index import CatalogIndex
from .models import MasterCourseRecord, NormalizedRecord

SYSTEM_CONTEXT = """You are a course mapping assistant. You map course titles and descriptions
extracted from school documents onto a master catalog of official course codes.

## RULES
- Only suggest codes that appear in the CANDIDATE COURSES list. Never invent a code.
- Clean each title into its standard catalog form (fix typos, expand abbreviations).
- Confidence is an integer 0-100:
  - 90-100: exact or near-exact title match
  - 75-89: clear semantic match with minor uncertainty
  - 50-74: plausible match, needs human review
  - below 50: weak; include alternatives
- Give a one or two sentence reasoning for every record.
- List up to 3 alternatives when the match is uncertain.
- Return one result per input record, using its record_ref unchanged.

## OUTPUT FORMAT
Return ONLY a JSON array, no markdown and no other text:
[
  {
    "record_ref": "12",
    "cleaned_title": "Biology 1",
    "suggested_code": "2000310",
    "confidence": 92,
    "reasoning": "Introductory biology course; title is an abbreviation of Biology 1.",
    "alternatives": [{"code": "2000320", "confidence": 40}]
  }
]
If nothing fits, set "suggested_code" to null and confidence below 50."""


@dataclass(frozen=True)
class InferenceRequest:
    """Everything sent to the inference service for one batch."""
    system_context: str
    candidates: tuple[MasterCourseRecord, ...]
    records: tuple[NormalizedRecord, ...]


def _relevance(record_titles: list[str], candidate: MasterCourseRecord) -> float:
    names = [candidate.title, *candidate.aliases]
    return max(
        fuzz.token_set_ratio(title, name, processor=default_process)
        for title in record_titles
        for name in names
    )


def select_candidates(
    records: list[NormalizedRecord],
    index: CatalogIndex,
    limit: int,
) -> list[MasterCourseRecord]:
    """
    Pick the catalog slice to send with a batch.

    Candidates come from the records' categories when every record has a
    known category; otherwise from the whole catalog. When the pool is
    larger than the limit, the entries most similar to the batch's titles
    are kept.
    """
    categories = {r.category for r in records}
    if None in categories or not categories:
        pool = index.for_category(None)
    else:
        pool = []
        seen = set()
        for category in sorted(categories):
            for candidate in index.for_category(category):
                if candidate.code not in seen:
                    seen.add(candidate.code)
                    pool.append(candidate)
        if not pool:
            pool = index.for_category(None)

    if limit <= 0 or len(pool) <= limit:
        return sorted(pool, key=lambda c: c.code)

    titles = [r.title for r in records]
    ranked = sorted(pool, key=lambda c: (-_relevance(titles, c), c.code))
    return sorted(ranked[:limit], key=lambda c: c.code)


def build_request(
    records: list[NormalizedRecord],
    index: CatalogIndex,
    candidate_limit: int,
) -> InferenceRequest:
    return InferenceRequest(
        system_context=SYSTEM_CONTEXT,
        candidates=tuple(select_candidates(records, index, candidate_limit)),
        records=tuple(records),
    )


def render_prompt(request: InferenceRequest) -> str:
    """User prompt text for a request."""
    catalog_lines = []
    for candidate in request.candidates:
        line = f"{candidate.code}: {candidate.title}"
        if candidate.category:
            line += f" [{candidate.category}]"
        if candidate.aliases:
            line += f" (also: {', '.join(sorted(candidate.aliases))})"
        catalog_lines.append(line)

    records = [
        {
            "record_ref": r.ref,
            "title": r.title,
            "code": r.code,
            "description": r.description,
            "category": r.category,
        }
        for r in request.records
    ]

    return (
        "## CANDIDATE COURSES\n"
        + "\n".join(catalog_lines)
        + "\n\n## RECORDS TO MAP\n"
        + json.dumps(records, indent=2)
        + "\n\nReturn one JSON result per record. RETURN ONLY VALID JSON."
    )
