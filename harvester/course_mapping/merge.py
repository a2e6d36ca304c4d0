"""
Merge - writes pipeline results back to the record store.

The merge is non-destructive:
- primary mappings are only written to records that have none
- secondary mappings replace the stored suggestion (history keeps the old one)
- records without any mapping in the result are not touched

Applying the same results twice leaves the store unchanged the second time.
"""

import logging
from typing import Iterable

from .adapters import RecordStore
from .models import MappingResult, RecordStatus

logger = logging.getLogger(__name__)


def merge_result(store: RecordStore, result: MappingResult) -> bool:
    """Apply one result. Returns True if the stored record changed."""
    if result.primary_mapping is None and result.secondary_mapping is None:
        return False
    return store.update_record_mapping(
        result.batch_id,
        result.element_id,
        primary=result.primary_mapping,
        secondary=result.secondary_mapping,
    )


def merge_results(store: RecordStore, results: Iterable[MappingResult]) -> int:
    """
    Apply results to the store.

    Returns:
        Number of records that changed
    """
    changed = 0
    for result in results:
        if merge_result(store, result):
            changed += 1
    logger.info(f"Merged results: {changed} record(s) updated")
    return changed


def summarize_results(results: list[MappingResult]) -> dict:
    """
    Aggregate statistics for a batch.

    agree/disagree compare primary and secondary codes on records that
    have both; average_confidence is over secondary mappings only.
    """
    with_primary = [r for r in results if r.primary_mapping is not None]
    with_secondary = [r for r in results if r.secondary_mapping is not None]
    both = [r for r in with_primary if r.secondary_mapping is not None]
    agree = sum(1 for r in both if r.primary_mapping.code == r.secondary_mapping.code)

    confidences = [r.secondary_mapping.confidence for r in with_secondary]
    average = round(sum(confidences) / len(confidences), 1) if confidences else 0.0

    by_status = {status.value: 0 for status in RecordStatus}
    for r in results:
        by_status[r.status.value] += 1

    return {
        "total": len(results),
        "with_primary": len(with_primary),
        "with_secondary": len(with_secondary),
        "agree": agree,
        "disagree": len(both) - agree,
        "average_confidence": average,
        "by_status": by_status,
    }
