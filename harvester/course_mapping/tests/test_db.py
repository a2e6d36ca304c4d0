"""
Tests for the SQLite stores. Each test gets its own database file.

Run with: pytest harvester/course_mapping/tests/test_db.py -v
"""

import threading
from datetime import timedelta

import pytest

from conftest import CATALOG, FIXED_NOW, fixed_clock

from harvester.course_mapping import db
from harvester.course_mapping.db import (
    SqliteCatalogAdapter,
    SqliteCredentialStore,
    SqliteRecordStore,
    init_db,
    primary_from_json,
    primary_to_json,
)
from harvester.course_mapping.errors import NoCredentialAvailable, QuotaExceeded
from harvester.course_mapping.models import (
    Alternative,
    CredentialRecord,
    ExtractedRecord,
    MasterCourseRecord,
    MatchRule,
    PrimaryMapping,
    SecondaryMapping,
    UsageLogEntry,
)
from harvester.course_mapping.quota import QuotaAllocator


PRIMARY = PrimaryMapping(code="2000310", rule=MatchRule.CODE_PREFIX, score=85)


def secondary(code="2000310", confidence=92):
    return SecondaryMapping(
        code=code,
        cleaned_title="Biology 1",
        confidence=confidence,
        reasoning="Abbreviation",
        model_id="gemini-test",
        produced_at=FIXED_NOW,
        alternatives=(Alternative("2000320", 40),),
        flags=("confidence_clamped",),
    )


def credential(credential_id, used_today=0, daily_limit=20, reset_at=None):
    return CredentialRecord(
        id=credential_id,
        nickname=credential_id,
        api_key=f"key-{credential_id}",
        daily_limit=daily_limit,
        used_today=used_today,
        reset_at=reset_at or FIXED_NOW + timedelta(hours=12),
    )


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "harvester.db"
    init_db(path)
    return path


@pytest.fixture
def records(db_path):
    store = SqliteRecordStore(db_path)
    store.add_records([
        ExtractedRecord("batch-1", "0", "Biology I", raw_code="2000310"),
        ExtractedRecord("batch-1", "1", "Into to Bio", description="Cells and stuff"),
        ExtractedRecord("batch-2", "0", "Chemistry 1", category="Science"),
    ])
    return store


@pytest.fixture
def credentials(db_path):
    return SqliteCredentialStore(db_path, clock=fixed_clock)


class TestConnection:

    def test_init_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "harvester.db"
        init_db(path)
        assert path.exists()

    def test_default_path_is_module_setting(self, tmp_path, monkeypatch):
        path = tmp_path / "default.db"
        monkeypatch.setattr(db, "DB_PATH", path)
        init_db()

        SqliteRecordStore().add_records([ExtractedRecord("b", "0", "Biology I")])

        assert len(SqliteRecordStore(path).get_batch("b")) == 1

    def test_rollback_on_error(self, db_path):
        with pytest.raises(RuntimeError):
            with db.get_db(db_path) as conn:
                conn.execute("INSERT INTO catalog (code, title) VALUES ('x', 'y')")
                raise RuntimeError("boom")

        assert SqliteCatalogAdapter(db_path).list_catalog() == []


class TestSqliteCatalog:

    def test_upsert_and_list(self, db_path):
        adapter = SqliteCatalogAdapter(db_path)

        assert adapter.upsert_courses(CATALOG) == len(CATALOG)
        records = adapter.list_catalog()

        assert len(records) == len(CATALOG)
        biology = next(r for r in records if r.code == "2000310")
        assert biology.aliases == frozenset({"Biology I"})
        assert {r.code for r in adapter.list_catalog("science")} == {"2000310", "2000320", "2003340"}

    def test_upsert_refreshes_title(self, db_path):
        adapter = SqliteCatalogAdapter(db_path)
        adapter.upsert_courses(CATALOG)
        adapter.upsert_courses([MasterCourseRecord("2000310", "Biology One", "Science")])

        records = adapter.list_catalog()
        assert len(records) == len(CATALOG)
        assert next(r for r in records if r.code == "2000310").title == "Biology One"


class TestSqliteRecordStore:

    def test_get_batch_in_insertion_order(self, records):
        batch = records.get_batch("batch-1")

        assert [r.element_id for r in batch] == ["0", "1"]
        assert batch[1].description == "Cells and stuff"
        assert batch[0].primary_mapping is None

    def test_add_records_ignores_existing(self, records):
        assert records.add_records([ExtractedRecord("batch-1", "0", "Changed")]) == 0
        assert records.get_record("batch-1", "0").raw_title == "Biology I"

    def test_mappings_round_trip(self, records):
        assert records.update_record_mapping("batch-1", "0", primary=PRIMARY, secondary=secondary()) is True

        stored = records.get_record("batch-1", "0")
        assert stored.primary_mapping == PRIMARY
        assert stored.secondary_mapping == secondary()

    def test_primary_only_set_when_absent(self, records):
        records.update_record_mapping("batch-1", "0", primary=PRIMARY)
        other = PrimaryMapping(code="2000320", rule=MatchRule.TITLE)

        assert records.update_record_mapping("batch-1", "0", primary=other) is False
        assert records.get_record("batch-1", "0").primary_mapping == PRIMARY

    def test_secondary_overwrite_is_idempotent_and_audited(self, records):
        records.update_record_mapping("batch-1", "1", secondary=secondary(confidence=70))
        records.update_record_mapping("batch-1", "1", secondary=secondary(confidence=92))
        assert records.update_record_mapping("batch-1", "1", secondary=secondary(confidence=92)) is False

        assert records.get_record("batch-1", "1").secondary_mapping.confidence == 92
        history = records.suggestion_history("batch-1", "1")
        assert [h.mapping.confidence for h in history] == [70, 92]

    def test_update_touches_only_target(self, records):
        records.update_record_mapping("batch-1", "0", primary=PRIMARY)

        assert records.get_record("batch-1", "1").primary_mapping is None
        assert records.get_record("batch-2", "0").primary_mapping is None

    def test_unknown_record(self, records):
        with pytest.raises(KeyError):
            records.update_record_mapping("batch-9", "0", primary=PRIMARY)

    def test_delete_secondary(self, records):
        records.update_record_mapping("batch-1", "0", primary=PRIMARY, secondary=secondary())

        assert records.delete_secondary_mapping("batch-1", "0") is True
        assert records.delete_secondary_mapping("batch-1", "0") is False
        stored = records.get_record("batch-1", "0")
        assert stored.secondary_mapping is None
        assert stored.primary_mapping == PRIMARY

    def test_primary_json(self):
        assert primary_from_json(primary_to_json(PRIMARY)) == PRIMARY
        assert primary_from_json(None) is None


class TestSqliteCredentialStore:

    def test_reserve_and_release(self, credentials):
        credentials.add_credential(credential("a", daily_limit=5))

        assert credentials.reserve("a", 2).used_today == 2
        assert credentials.release("a").used_today == 1
        assert credentials.release("a", 10).used_today == 0

    def test_reserve_over_budget(self, credentials):
        credentials.add_credential(credential("a", daily_limit=5, used_today=4))

        with pytest.raises(QuotaExceeded) as exc_info:
            credentials.reserve("a", 2)

        assert exc_info.value.remaining == 1
        assert credentials.get_credential("a").used_today == 4

    def test_disabled_credentials(self, credentials):
        credentials.add_credential(credential("a"))
        credentials.add_credential(credential("b"))
        credentials.deactivate("a")
        credentials.delete("b")

        assert credentials.list_active_credentials() == []
        with pytest.raises(QuotaExceeded):
            credentials.reserve("a")
        with pytest.raises(KeyError):
            credentials.reserve("missing")

    def test_api_key_persisted(self, credentials):
        credentials.add_credential(credential("a"))
        assert credentials.get_credential("a").api_key == "key-a"

    def test_reset_if_due(self, credentials):
        credentials.add_credential(credential("a", used_today=20, reset_at=FIXED_NOW - timedelta(hours=1)))
        credentials.add_credential(credential("b", used_today=20))

        assert credentials.reset_if_due("a") is True
        assert credentials.reset_if_due("a") is False
        assert credentials.reset_if_due("b") is False

        a = credentials.get_credential("a")
        assert a.used_today == 0
        assert a.reset_at > FIXED_NOW
        assert credentials.get_credential("b").used_today == 20

    def test_allocator_over_sqlite(self, credentials):
        credentials.add_credential(credential("a", daily_limit=10, used_today=10))
        credentials.add_credential(credential("b", daily_limit=10, used_today=3))
        allocator = QuotaAllocator(credentials, clock=fixed_clock)

        with allocator.reservation() as held:
            held.mark_sent()

        assert held.credential_id == "b"
        assert credentials.get_credential("b").used_today == 4

        credentials.deactivate("b")
        with pytest.raises(NoCredentialAvailable):
            allocator.acquire()

    def test_concurrent_reserve_never_exceeds_budget(self, db_path):
        SqliteCredentialStore(db_path, clock=fixed_clock).add_credential(credential("a", daily_limit=20))
        successes = []
        lock = threading.Lock()

        def worker():
            store = SqliteCredentialStore(db_path, clock=fixed_clock)
            for _ in range(5):
                try:
                    store.reserve("a")
                    with lock:
                        successes.append(1)
                except QuotaExceeded:
                    pass

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 20
        assert SqliteCredentialStore(db_path).get_credential("a").used_today == 20

    def test_usage_log(self, credentials):
        credentials.add_credential(credential("a"))
        credentials.record_usage(UsageLogEntry("a", "batch-1", 2, 1200, True, cost_estimate=0.00012,
                                               timestamp=FIXED_NOW))
        credentials.record_usage(UsageLogEntry("a", "batch-1", 2, 0, False, error_kind="transient",
                                               timestamp=FIXED_NOW))

        usage = credentials.list_usage("a")

        assert [u.success for u in usage] == [True, False]
        assert usage[0].timestamp == FIXED_NOW
        assert usage[1].error_kind == "transient"
        assert credentials.list_usage("b") == []

        summary = credentials.usage_summary()
        assert summary == {"calls": 2, "failures": 1, "tokens": 1200, "cost": 0.00012}
