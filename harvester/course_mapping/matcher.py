"""
Deterministic Matcher - rule-based mapping against the master catalog.

Rules are evaluated per record, first hit wins:

| Rule            | Compares                                  | Score |
|-----------------|-------------------------------------------|-------|
| CODE            | normalized code == catalog code           | 100   |
| CODE_PREFIX     | first N code chars == catalog code prefix | 85    |
| TITLE           | title == catalog title or alias           | 100   |
| SIMILAR_TITLE   | fuzzy title score >= threshold            | score |

Records failing every rule are left for the semantic stage. This stage
is pure: the same (record, catalog) always yields the same decision.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from rapidfuzz import fuzz
from rapidfuzz.utils import default_process

from .config import MatchSettings
from .index import CatalogIndex
from .models import MappingResult, MasterCourseRecord, MatchRule, NormalizedRecord, PrimaryMapping, RecordStatus
from .normalizer import normalize_code

logger = logging.getLogger(__name__)

CODE_PREFIX_SCORE = 85


def _most_specific(records: list[MasterCourseRecord]) -> MasterCourseRecord:
    """Prefer the shortest catalog title; code breaks remaining ties."""
    return min(records, key=lambda r: (len(r.title), r.code))


def _match_code(record: NormalizedRecord, index: CatalogIndex) -> Optional[PrimaryMapping]:
    found = index.lookup_code(record.code)
    if found is None:
        return None
    return PrimaryMapping(code=found.code, rule=MatchRule.CODE, score=100)


def _match_code_prefix(
    record: NormalizedRecord,
    index: CatalogIndex,
    prefix_length: int,
) -> Optional[PrimaryMapping]:
    code_key = normalize_code(record.code)
    if prefix_length <= 0 or len(code_key) < prefix_length:
        return None

    prefix = code_key[:prefix_length]
    candidates = [
        r for key, r in index.by_code.items()
        if len(key) >= prefix_length and key[:prefix_length] == prefix
    ]
    if not candidates:
        return None

    best = min(candidates, key=lambda r: (len(normalize_code(r.code)), r.code))
    return PrimaryMapping(code=best.code, rule=MatchRule.CODE_PREFIX, score=CODE_PREFIX_SCORE)


def _match_title(record: NormalizedRecord, index: CatalogIndex) -> Optional[PrimaryMapping]:
    found = index.lookup_title(record.title)
    if not found:
        return None
    return PrimaryMapping(code=_most_specific(found).code, rule=MatchRule.TITLE, score=100)


def title_similarity(a: str, b: str) -> float:
    """Order-independent token similarity, 0-100."""
    return fuzz.token_sort_ratio(a, b, processor=default_process)


def _match_similar_title(
    record: NormalizedRecord,
    index: CatalogIndex,
    threshold: float,
) -> Optional[PrimaryMapping]:
    best_score = 0.0
    best: list[MasterCourseRecord] = []

    for candidate in index.records:
        score = max(title_similarity(record.title, t) for t in index.titles_for(candidate))
        if score > best_score:
            best_score = score
            best = [candidate]
        elif score == best_score and best:
            best.append(candidate)

    if not best or best_score < threshold:
        return None

    return PrimaryMapping(
        code=_most_specific(best).code,
        rule=MatchRule.SIMILAR_TITLE,
        score=int(round(best_score)),
    )


def match_record(
    record: NormalizedRecord,
    index: CatalogIndex,
    settings: Optional[MatchSettings] = None,
) -> MappingResult:
    """
    Match a single normalized record against the catalog.

    Logic flow:
    1. Exact code
    2. Code prefix
    3. Exact title / alias
    4. Fuzzy title above threshold
    5. Unresolved - handed to the semantic stage
    """
    settings = settings or MatchSettings()

    mapping = None
    if record.code:
        mapping = (
            _match_code(record, index)
            or _match_code_prefix(record, index, settings.code_prefix_length)
        )
    if mapping is None:
        mapping = (
            _match_title(record, index)
            or _match_similar_title(record, index, settings.similarity_threshold)
        )

    if mapping is None:
        return MappingResult(
            record_id=record.record_id,
            status=RecordStatus.UNRESOLVED,
            detail="No code or title match in master catalog",
        )

    return MappingResult(
        record_id=record.record_id,
        status=RecordStatus.DETERMINISTIC_MATCH,
        primary_mapping=mapping,
        detail=f"Matched by {mapping.rule.value} rule (score {mapping.score})",
    )


def match_records(
    records: list[NormalizedRecord],
    index: CatalogIndex,
    settings: Optional[MatchSettings] = None,
) -> list[MappingResult]:
    """
    Run the deterministic matcher over a batch.

    Records are matched in a bounded thread pool; the stage shares no
    mutable state so results come back in input order.
    """
    settings = settings or MatchSettings()
    if not records:
        return []

    workers = max(1, min(settings.deterministic_workers, len(records)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda r: match_record(r, index, settings), records))

    resolved = sum(1 for r in results if r.primary_mapping is not None)
    logger.info(f"Deterministic pass: {resolved}/{len(results)} records resolved")
    return results


def split_resolved(
    records: list[NormalizedRecord],
    results: list[MappingResult],
) -> tuple[list[MappingResult], list[NormalizedRecord]]:
    """Separate resolved results from the records still needing a match."""
    resolved = []
    unresolved = []
    for record, result in zip(records, results):
        if result.primary_mapping is not None:
            resolved.append(result)
        else:
            unresolved.append(record)
    return resolved, unresolved
