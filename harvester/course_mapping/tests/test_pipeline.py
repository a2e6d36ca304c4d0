"""
End-to-end tests for MappingPipeline with in-memory adapters and a
scripted inference client.

Run with: pytest harvester/course_mapping/tests/test_pipeline.py -v
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import CATALOG, FIXED_NOW, FakeGeminiClient, fixed_clock, reply_for, suggestion

from harvester.course_mapping.adapters import InMemoryCatalogAdapter, InMemoryRecordStore
from harvester.course_mapping.config import Config, SemanticSettings
from harvester.course_mapping.errors import MappingError, NoCredentialAvailable, ValidationError
from harvester.course_mapping.models import (
    CredentialRecord,
    ExtractedRecord,
    MatchRule,
    PrimaryMapping,
    RecordStatus,
)
from harvester.course_mapping.pipeline import BatchReport, MappingPipeline, create_pipeline
from harvester.course_mapping.quota import InMemoryCredentialStore, QuotaAllocator
from harvester.course_mapping.scheduler import get_scheduler_status, stop_scheduler
from harvester.course_mapping.semantic import SemanticMatcher


def record(element_id, raw_title, raw_code=None, batch_id="batch-1", **kwargs):
    return ExtractedRecord(batch_id=batch_id, element_id=element_id, raw_title=raw_title, raw_code=raw_code, **kwargs)


def build(records, script=(), credentials=None, config=None):
    """Pipeline over in-memory stores; returns (pipeline, store, client, credential_store)."""
    config = config or Config()
    if credentials is None:
        credentials = [CredentialRecord(
            id="cred-a", nickname="primary", api_key="key-a",
            reset_at=FIXED_NOW + timedelta(hours=12),
        )]
    credential_store = InMemoryCredentialStore(credentials, clock=fixed_clock)
    client = FakeGeminiClient(script)
    semantic = SemanticMatcher(
        QuotaAllocator(credential_store, clock=fixed_clock),
        client,
        config,
        sleep=lambda _: None,
        clock=fixed_clock,
    )
    store = InMemoryRecordStore(records)
    pipeline = MappingPipeline(InMemoryCatalogAdapter(CATALOG), store, semantic, config)
    return pipeline, store, client, credential_store


class TestDeterministicPath:

    def test_exact_code_match_makes_no_semantic_call(self):
        pipeline, store, client, credential_store = build([record("0", "Biology I", "2000310")])

        report = pipeline.run_batch("batch-1")

        result = report.result_for("0")
        assert result.status == RecordStatus.DETERMINISTIC_MATCH
        assert result.primary_mapping.code == "2000310"
        assert result.primary_mapping.rule == MatchRule.CODE
        assert result.secondary_mapping is None
        assert client.calls == []
        assert credential_store.list_usage() == []
        assert store.get_record("batch-1", "0").primary_mapping.code == "2000310"

    def test_invalid_records_reported(self):
        pipeline, store, _, _ = build([record("0", "-"), record("1", "Algebra I")])

        report = pipeline.run_batch("batch-1")

        assert report.result_for("0").status == RecordStatus.INVALID
        assert report.result_for("1").status == RecordStatus.DETERMINISTIC_MATCH
        assert report.summary["by_status"]["invalid"] == 1

    def test_stored_primary_is_kept(self):
        stored = PrimaryMapping(code="2000320", rule=MatchRule.TITLE)
        pipeline, store, _, _ = build([record("0", "Biology I", "2000310", primary_mapping=stored)])

        report = pipeline.run_batch("batch-1")

        assert report.result_for("0").primary_mapping == stored
        assert store.get_record("batch-1", "0").primary_mapping == stored


class TestSemanticPath:

    def test_unresolved_record_gets_secondary_mapping(self):
        pipeline, store, client, credential_store = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "2000310", 92)])],
        )

        report = pipeline.run_batch("batch-1")

        result = report.result_for("0")
        assert result.status == RecordStatus.SEMANTIC_MATCH
        assert result.primary_mapping is None
        assert result.secondary_mapping.code == "2000310"
        assert result.secondary_mapping.confidence == 92

        stored = store.get_record("batch-1", "0")
        assert stored.primary_mapping is None
        assert stored.secondary_mapping.code == "2000310"
        assert stored.secondary_mapping.confidence == 92
        assert len(client.calls) == 1
        assert len(credential_store.list_usage()) == 1

    def test_only_unresolved_records_are_sent(self):
        pipeline, _, client, _ = build(
            [record("0", "Biology I", "2000310"), record("1", "Into to Bio")],
            script=[reply_for([suggestion("1", "2000310", 88)])],
        )

        report = pipeline.run_batch("batch-1")

        prompt = client.calls[0]["prompt"]
        assert '"record_ref": "1"' in prompt
        assert '"record_ref": "0"' not in prompt
        assert report.summary["with_primary"] == 1
        assert report.summary["with_secondary"] == 1

    def test_hallucinated_code_never_stored(self):
        pipeline, store, _, _ = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "9999999", 97)])],
        )

        report = pipeline.run_batch("batch-1")

        assert report.result_for("0").status == RecordStatus.SEMANTIC_REJECTED
        assert store.get_record("batch-1", "0").secondary_mapping is None
        assert store.suggestion_history("batch-1", "0") == []

    def test_semantic_disabled(self):
        config = Config(semantic=SemanticSettings(enabled=False))
        pipeline, store, client, _ = build([record("0", "Into to Bio")], config=config)

        report = pipeline.run_batch("batch-1")

        assert report.result_for("0").status == RecordStatus.UNRESOLVED
        assert client.calls == []

    def test_no_semantic_matcher_configured(self):
        store = InMemoryRecordStore([record("0", "Into to Bio")])
        pipeline = MappingPipeline(InMemoryCatalogAdapter(CATALOG), store)

        report = pipeline.run_batch("batch-1")

        assert report.result_for("0").status == RecordStatus.UNRESOLVED

    def test_rerun_is_idempotent_and_spends_no_quota(self):
        pipeline, store, client, credential_store = build(
            [record("0", "Biology I", "2000310"), record("1", "Into to Bio")],
            script=[reply_for([suggestion("1", "2000310", 92)])],
        )

        first = pipeline.run_batch("batch-1")
        snapshot = store.get_batch("batch-1")
        second = pipeline.run_batch("batch-1")

        assert first.updated == 2
        assert second.updated == 0
        assert store.get_batch("batch-1") == snapshot
        assert len(client.calls) == 1
        assert second.result_for("1").secondary_mapping.confidence == 92

    def test_refresh_suggestions_resends(self):
        pipeline, store, client, _ = build(
            [record("0", "Into to Bio")],
            script=[
                reply_for([suggestion("0", "2000310", 70)]),
                reply_for([suggestion("0", "2000310", 92)]),
            ],
        )

        pipeline.run_batch("batch-1")
        pipeline.run_batch("batch-1", refresh_suggestions=True)

        assert len(client.calls) == 2
        assert store.get_record("batch-1", "0").secondary_mapping.confidence == 92
        assert len(store.suggestion_history("batch-1", "0")) == 2

    def test_category_restricts_catalog(self):
        pipeline, _, client, _ = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "2000310", 92)])],
        )

        pipeline.run_batch("batch-1", category="Science")

        prompt = client.calls[0]["prompt"]
        assert "2000310" in prompt
        assert "1200310" not in prompt


def catalog_with_alias(code, alias):
    """CATALOG with an extra alias on one course."""
    return [
        replace(c, aliases=c.aliases | {alias}) if c.code == code else c
        for c in CATALOG
    ]


class TestPrimaryAndSecondaryTogether:

    def rerun_with_alias(self, pipeline, store):
        """Second run against a catalog that now resolves the title by rule."""
        later = MappingPipeline(
            InMemoryCatalogAdapter(catalog_with_alias("2000310", "Into to Bio")),
            store,
            pipeline.semantic,
            pipeline.config,
        )
        return later.run_batch("batch-1")

    def test_agreeing_mappings_counted(self):
        pipeline, store, client, _ = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "2000310", 92)])],
        )
        pipeline.run_batch("batch-1")

        report = self.rerun_with_alias(pipeline, store)

        result = report.result_for("0")
        assert result.status == RecordStatus.DETERMINISTIC_MATCH
        assert result.primary_mapping.code == "2000310"
        assert result.secondary_mapping.code == "2000310"
        assert report.summary["with_secondary"] == 1
        assert report.summary["agree"] == 1
        assert report.summary["average_confidence"] == 92.0
        assert report.updated == 1
        assert len(client.calls) == 1

    def test_disagreeing_mappings_counted(self):
        pipeline, store, _, _ = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "2000320", 64)])],
        )
        pipeline.run_batch("batch-1")

        report = self.rerun_with_alias(pipeline, store)

        assert report.summary["agree"] == 0
        assert report.summary["disagree"] == 1
        assert store.get_record("batch-1", "0").secondary_mapping.code == "2000320"

    def test_stored_primary_reported_with_stored_secondary(self):
        pipeline, store, _, _ = build(
            [record("0", "Into to Bio")],
            script=[reply_for([suggestion("0", "2000310", 92)])],
        )
        pipeline.run_batch("batch-1")
        self.rerun_with_alias(pipeline, store)

        report = self.rerun_with_alias(pipeline, store)

        assert report.result_for("0").detail == "Primary mapping already stored"
        assert report.result_for("0").secondary_mapping.code == "2000310"
        assert report.summary["agree"] == 1
        assert report.updated == 0


class TestRemap:

    def primary_mapped_batch(self, script):
        primary = PrimaryMapping(code="2000310", rule=MatchRule.CODE)
        return build(
            [record("0", "Biology I", "2000310", primary_mapping=primary), record("1", "Into to Bio")],
            script=script,
        )

    def test_sends_primary_mapped_records_too(self):
        pipeline, store, client, _ = self.primary_mapped_batch([
            reply_for([suggestion("0", "2000310", 95), suggestion("1", "2000310", 88)]),
        ])

        report = pipeline.remap("batch-1")

        prompt = client.calls[0]["prompt"]
        assert '"record_ref": "0"' in prompt
        assert '"record_ref": "1"' in prompt
        first = report.result_for("0")
        assert first.status == RecordStatus.SEMANTIC_MATCH
        assert first.primary_mapping.code == "2000310"
        assert first.secondary_mapping.confidence == 95
        assert report.summary["agree"] == 1
        assert report.updated == 2

        stored = store.get_record("batch-1", "0")
        assert stored.primary_mapping.rule == MatchRule.CODE
        assert stored.secondary_mapping.confidence == 95

    def test_never_writes_primary(self):
        pipeline, store, _, _ = build(
            [record("0", "Biology I", "2000310")],
            script=[reply_for([suggestion("0", "2000310", 95)])],
        )

        pipeline.remap("batch-1")

        assert store.get_record("batch-1", "0").primary_mapping is None

    def test_selected_records_only(self):
        pipeline, store, client, _ = self.primary_mapped_batch([
            reply_for([suggestion("1", "2000310", 88)]),
        ])

        report = pipeline.remap("batch-1", element_ids=["1", "missing"])

        assert [r.element_id for r in report.results] == ["1"]
        assert '"record_ref": "0"' not in client.calls[0]["prompt"]
        assert store.get_record("batch-1", "0").secondary_mapping is None

    def test_dry_run_leaves_store_untouched(self):
        pipeline, store, client, credential_store = self.primary_mapped_batch([
            reply_for([suggestion("0", "2000310", 95), suggestion("1", "2000310", 88)]),
        ])
        snapshot = store.get_batch("batch-1")

        report = pipeline.remap("batch-1", dry_run=True)

        assert report.updated == 0
        assert report.result_for("1").secondary_mapping.code == "2000310"
        assert store.get_batch("batch-1") == snapshot
        assert store.suggestion_history("batch-1", "1") == []
        assert len(credential_store.list_usage()) == 1

    def test_replaces_earlier_suggestion(self):
        pipeline, store, _, _ = build(
            [record("0", "Into to Bio")],
            script=[
                reply_for([suggestion("0", "2000320", 60)]),
                reply_for([suggestion("0", "2000310", 90)]),
            ],
        )
        pipeline.run_batch("batch-1")

        pipeline.remap("batch-1")

        assert store.get_record("batch-1", "0").secondary_mapping.code == "2000310"
        assert len(store.suggestion_history("batch-1", "0")) == 2

    def test_nothing_selected(self):
        pipeline, _, client, _ = self.primary_mapped_batch([])

        with pytest.raises(ValidationError):
            pipeline.remap("batch-1", element_ids=["missing"])
        assert client.calls == []

    def test_semantic_disabled(self):
        config = Config(semantic=SemanticSettings(enabled=False))
        pipeline, _, client, _ = build([record("0", "Into to Bio")], config=config)

        with pytest.raises(MappingError):
            pipeline.remap("batch-1")
        assert client.calls == []

    def test_exhausted_quota_keeps_partial_report(self):
        exhausted = CredentialRecord(
            id="cred-a", nickname="primary", api_key="key-a",
            daily_limit=10, used_today=10,
            reset_at=FIXED_NOW + timedelta(hours=12),
        )
        pipeline, store, _, _ = build([record("0", "Into to Bio")], credentials=[exhausted])

        with pytest.raises(NoCredentialAvailable) as exc_info:
            pipeline.remap("batch-1")

        assert exc_info.value.report.result_for("0").status == RecordStatus.SEMANTIC_SKIPPED
        assert store.get_record("batch-1", "0").secondary_mapping is None


class TestQuotaExhaustion:

    def test_exhausted_credential_keeps_deterministic_results(self):
        exhausted = CredentialRecord(
            id="cred-a", nickname="primary", api_key="key-a",
            daily_limit=10, used_today=10,
            reset_at=FIXED_NOW + timedelta(hours=12),
        )
        pipeline, store, client, _ = build(
            [record("0", "Biology I", "2000310"), record("1", "Into to Bio")],
            credentials=[exhausted],
        )

        with pytest.raises(NoCredentialAvailable) as exc_info:
            pipeline.run_batch("batch-1")

        assert client.calls == []
        assert store.get_record("batch-1", "0").primary_mapping.code == "2000310"
        assert store.get_record("batch-1", "1").secondary_mapping is None

        report = exc_info.value.report
        assert isinstance(report, BatchReport)
        assert report.result_for("0").status == RecordStatus.DETERMINISTIC_MATCH
        assert report.result_for("1").status == RecordStatus.SEMANTIC_SKIPPED


class TestIngest:

    def test_ingest_then_run(self):
        pipeline, store, _, _ = build([])

        added = pipeline.ingest("batch-3", [
            {"CourseName": "Algebra I", "CourseCode": "1200310"},
            {"title": "English 1-2", "category": "English"},
            "garbage",
        ])
        report = pipeline.run_batch("batch-3")

        assert added == 3
        assert [r.element_id for r in report.results] == ["0", "1.1", "1.2"]
        assert {r.primary_mapping.code for r in report.results} == {"1200310", "1001310", "1001340"}


class TestCreatePipeline:

    def test_wires_sqlite_stores(self, tmp_path):
        pipeline = create_pipeline(tmp_path / "harvester.db")

        assert pipeline.semantic_enabled
        assert pipeline.store.get_batch("nothing") == []
        assert pipeline.catalog.list_catalog() == []
        assert (tmp_path / "harvester.db").exists()

    def test_starts_quota_reset_job(self, tmp_path):
        stop_scheduler()
        try:
            create_pipeline(tmp_path / "harvester.db", start_reset_job=True)

            status = get_scheduler_status()
            assert status["running"] is True
            assert [job["id"] for job in status["jobs"]] == ["quota_reset"]
        finally:
            stop_scheduler()

    def test_reset_job_off_by_default(self, tmp_path):
        stop_scheduler()
        create_pipeline(tmp_path / "harvester.db")

        assert get_scheduler_status()["running"] is False
