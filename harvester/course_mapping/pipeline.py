"""
Mapping Pipeline - orchestrates a batch from stored rows to merged mappings.

Stages:
1. Load the batch and the (optionally category-restricted) catalog
2. Normalize - records with nothing to map are marked invalid
3. Deterministic pass - code, code prefix, title, fuzzy title
4. Semantic pass - unresolved records only, quota-gated
5. Merge - non-destructive write-back
6. Summary statistics

The semantic stage is the only one that spends quota. If it runs out of
credentials, everything produced so far is merged before the error is
re-raised.

remap() runs only the semantic stage, on chosen records, so suggestions
can be compared with primary mappings.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Optional

from .adapters import CatalogAdapter, RecordStore
from .config import Config, load_config
from .db import SqliteCatalogAdapter, SqliteCredentialStore, SqliteRecordStore, init_db
from .errors import MappingError, NoCredentialAvailable, ValidationError
from .index import build_index
from .inference import GeminiClient
from .matcher import match_records, split_resolved
from .merge import merge_results, summarize_results
from .models import ExtractedRecord, MappingResult, NormalizedRecord, RecordStatus
from .normalizer import normalize_record, records_from_rows
from .quota import QuotaAllocator
from .scheduler import start_scheduler
from .semantic import SemanticMatcher

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Outcome of one pipeline run."""
    batch_id: str
    results: list[MappingResult] = field(default_factory=list)
    summary: dict = field(default_factory=dict)
    updated: int = 0  # Records whose stored mappings changed

    def result_for(self, element_id: str) -> Optional[MappingResult]:
        return next((r for r in self.results if r.element_id == element_id), None)


class MappingPipeline:
    """Runs extraction batches through normalization, matching and merge."""

    def __init__(
        self,
        catalog: CatalogAdapter,
        store: RecordStore,
        semantic: Optional[SemanticMatcher] = None,
        config: Optional[Config] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.semantic = semantic
        self.config = config or Config()

    @property
    def semantic_enabled(self) -> bool:
        return self.semantic is not None and self.config.semantic.enabled

    def ingest(self, batch_id: str, rows: list[Any]) -> int:
        """Store raw extractor rows as a batch. Returns the number of new records."""
        records = records_from_rows(rows, batch_id)
        added = self.store.add_records(records)
        logger.info(f"Ingested batch {batch_id}: {added} new record(s) from {len(rows)} row(s)")
        return added

    def run_batch(
        self,
        batch_id: str,
        category: Optional[str] = None,
        refresh_suggestions: bool = False,
    ) -> BatchReport:
        """
        Map every record in a batch.

        Args:
            batch_id: Batch to process
            category: Restrict the catalog to one category
            refresh_suggestions: Re-send records that already carry a
                secondary mapping from an earlier run

        Returns:
            BatchReport with one result per record

        Raises:
            NoCredentialAvailable: semantic stage ran out of quota. The
                partial report (already merged) is on exc.report.
        """
        stored = self.store.get_batch(batch_id)
        index = build_index(self.catalog.list_catalog(category))
        logger.info(
            f"Running batch {batch_id}: {len(stored)} record(s) against "
            f"{index.record_count} catalog course(s)"
        )

        results: dict[tuple[str, str], MappingResult] = {}
        by_id: dict[tuple[str, str], ExtractedRecord] = {}
        to_match: list[NormalizedRecord] = []

        for record in stored:
            by_id[record.record_id] = record
            normalized = normalize_record(record)
            if normalized is None:
                logger.warning(f"Record {record.record_id} has no usable title; skipped")
                results[record.record_id] = MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.INVALID,
                    detail="Empty title after cleaning",
                )
            elif record.primary_mapping is not None:
                results[record.record_id] = MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.DETERMINISTIC_MATCH,
                    primary_mapping=record.primary_mapping,
                    detail="Primary mapping already stored",
                )
            else:
                results[record.record_id] = None
                to_match.append(normalized)

        matched = match_records(to_match, index, self.config.matching)
        for result in matched:
            results[result.record_id] = result
        _, unresolved = split_resolved(to_match, matched)

        pending = []
        for record in unresolved:
            previous = by_id[record.record_id].secondary_mapping
            if previous is not None and not refresh_suggestions:
                results[record.record_id] = MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.SEMANTIC_MATCH,
                    secondary_mapping=previous,
                    detail="Suggestion already stored",
                )
            else:
                pending.append(record)

        if pending and not self.semantic_enabled:
            logger.info(f"Semantic pass disabled; {len(pending)} record(s) left unresolved")
        elif pending:
            try:
                semantic_results = self.semantic.match(pending, index, batch_id)
            except NoCredentialAvailable as e:
                for result in e.partial_results:
                    results[result.record_id] = result
                e.report = self._finish(batch_id, self._with_stored(results.values(), by_id))
                raise
            for result in semantic_results:
                results[result.record_id] = result

        return self._finish(batch_id, self._with_stored(results.values(), by_id))

    def remap(
        self,
        batch_id: str,
        element_ids: Optional[list[str]] = None,
        dry_run: bool = False,
        category: Optional[str] = None,
    ) -> BatchReport:
        """
        Ask the inference service again for selected records.

        Unlike run_batch, records that already have a primary mapping are
        sent too, so suggestions can be compared with the rule-based
        result. Only secondary mappings are written; primaries appear in
        the report but are never touched.

        Args:
            batch_id: Batch to remap
            element_ids: Records to remap (default: the whole batch)
            dry_run: Return the suggestions without persisting them.
                Calls still spend quota.
            category: Restrict the catalog to one category

        Raises:
            MappingError: semantic matching is disabled
            ValidationError: no record selected
            NoCredentialAvailable: as in run_batch
        """
        if not self.semantic_enabled:
            raise MappingError("Semantic matching is disabled")

        stored = self.store.get_batch(batch_id)
        if element_ids is not None:
            wanted = set(element_ids)
            stored = [r for r in stored if r.element_id in wanted]
            missing = wanted - {r.element_id for r in stored}
            if missing:
                logger.warning(f"Remap of batch {batch_id}: unknown element id(s) {sorted(missing)}")

        by_id = {r.record_id: r for r in stored}
        results: dict[tuple[str, str], MappingResult] = {}
        to_send: list[NormalizedRecord] = []
        for record in stored:
            normalized = normalize_record(record)
            if normalized is None:
                results[record.record_id] = MappingResult(
                    record_id=record.record_id,
                    status=RecordStatus.INVALID,
                    detail="Empty title after cleaning",
                )
            else:
                results[record.record_id] = None
                to_send.append(normalized)

        if not to_send:
            raise ValidationError(f"No records to remap in batch {batch_id}")

        index = build_index(self.catalog.list_catalog(category))
        logger.info(
            f"Remapping {len(to_send)} record(s) in batch {batch_id}"
            f"{' (dry run)' if dry_run else ''}"
        )

        try:
            semantic_results = self.semantic.match(to_send, index, batch_id)
        except NoCredentialAvailable as e:
            for result in e.partial_results:
                results[result.record_id] = result
            e.report = self._finish_remap(batch_id, list(results.values()), by_id, dry_run)
            raise
        for result in semantic_results:
            results[result.record_id] = result

        return self._finish_remap(batch_id, list(results.values()), by_id, dry_run)

    def _finish_remap(
        self,
        batch_id: str,
        results: list[MappingResult],
        by_id: dict[tuple[str, str], ExtractedRecord],
        dry_run: bool,
    ) -> BatchReport:
        # Semantic results carry no primary, so only secondaries are merged
        updated = 0 if dry_run else merge_results(self.store, results)
        reported = [
            replace(r, primary_mapping=by_id[r.record_id].primary_mapping)
            for r in results
        ]
        return self._report(batch_id, reported, updated)

    @staticmethod
    def _with_stored(
        results: Iterable[MappingResult],
        by_id: dict[tuple[str, str], ExtractedRecord],
    ) -> list[MappingResult]:
        """Carry stored secondary mappings onto results that didn't produce one."""
        merged = []
        for result in results:
            stored = by_id[result.record_id].secondary_mapping
            if result.secondary_mapping is None and stored is not None:
                result = replace(result, secondary_mapping=stored)
            merged.append(result)
        return merged

    def _finish(self, batch_id: str, results: list[MappingResult]) -> BatchReport:
        return self._report(batch_id, results, merge_results(self.store, results))

    def _report(self, batch_id: str, results: list[MappingResult], updated: int) -> BatchReport:
        summary = summarize_results(results)
        logger.info(
            f"Batch {batch_id} done: {summary['with_primary']} primary, "
            f"{summary['with_secondary']} secondary, {summary['by_status']['unresolved']} unresolved"
        )
        return BatchReport(batch_id=batch_id, results=results, summary=summary, updated=updated)


def create_pipeline(
    db_path: Optional[Path] = None,
    config_path: Optional[str | Path] = None,
    start_reset_job: bool = False,
) -> MappingPipeline:
    """
    Wire a pipeline to the SQLite stores and the Gemini client.

    Long-running hosts pass start_reset_job=True to schedule the midnight
    UTC quota reset; stop it with scheduler.stop_scheduler() on shutdown.
    """
    config = load_config(config_path)
    init_db(db_path)

    semantic = None
    if config.semantic.enabled:
        client = GeminiClient(
            model=config.semantic.model_id,
            timeout=config.semantic.request_timeout,
            temperature=config.semantic.temperature,
            max_output_tokens=config.semantic.max_output_tokens,
        )
        allocator = QuotaAllocator(SqliteCredentialStore(db_path))
        semantic = SemanticMatcher(allocator, client, config)
        if start_reset_job:
            start_scheduler(allocator)
    elif start_reset_job:
        logger.info("Semantic pass disabled; quota reset job not started")

    return MappingPipeline(
        catalog=SqliteCatalogAdapter(db_path),
        store=SqliteRecordStore(db_path),
        semantic=semantic,
        config=config,
    )
