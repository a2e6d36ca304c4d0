"""
SQLite persistence - catalog, extracted records, credentials, usage log
and suggestion history.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .adapters import CatalogAdapter, RecordStore, filter_category
from .config import settings
from .errors import QuotaExceeded
from .models import (
    Alternative,
    CredentialRecord,
    CredentialState,
    ExtractedRecord,
    MasterCourseRecord,
    MatchRule,
    PrimaryMapping,
    SecondaryMapping,
    SuggestionHistoryEntry,
    UsageLogEntry,
)
from .quota import CredentialStore, next_reset_after, utcnow

logger = logging.getLogger(__name__)

# Database location
DB_PATH = Path(settings.DB_PATH)


@contextmanager
def get_db(db_path: Optional[Path] = None):
    """Context manager for database connections."""
    conn = sqlite3.connect(str(db_path or DB_PATH), timeout=5.0)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: Optional[Path] = None):
    """Initialize database tables."""
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)

    with get_db(path) as conn:
        # WAL lets readers proceed while a reservation is being written
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")

        conn.executescript("""
            -- Master catalog: read-only during pipeline runs
            CREATE TABLE IF NOT EXISTS catalog (
                code TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT DEFAULT '',
                aliases TEXT,  -- JSON array
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            -- Extracted course rows, one per (batch, element)
            CREATE TABLE IF NOT EXISTS extracted_records (
                batch_id TEXT NOT NULL,
                element_id TEXT NOT NULL,
                raw_title TEXT NOT NULL,
                raw_code TEXT,
                description TEXT,
                category TEXT,
                primary_mapping TEXT,    -- JSON object
                secondary_mapping TEXT,  -- JSON object
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (batch_id, element_id)
            );

            CREATE TABLE IF NOT EXISTS credentials (
                id TEXT PRIMARY KEY,
                nickname TEXT NOT NULL,
                api_key TEXT,
                is_active INTEGER DEFAULT 1,
                is_deleted INTEGER DEFAULT 0,  -- Soft delete flag
                rate_limit_per_minute INTEGER NOT NULL,
                daily_limit INTEGER NOT NULL,
                used_today INTEGER DEFAULT 0,
                reset_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                CHECK (used_today >= 0 AND used_today <= daily_limit)
            );

            -- One row per inference call attempt; never deleted
            CREATE TABLE IF NOT EXISTS usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                credential_id TEXT NOT NULL,
                batch_id TEXT NOT NULL,
                records_attempted INTEGER DEFAULT 0,
                tokens_used INTEGER DEFAULT 0,
                success INTEGER NOT NULL,
                error_kind TEXT,
                cost_estimate REAL DEFAULT 0,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (credential_id) REFERENCES credentials(id)
            );

            -- Every accepted secondary mapping; never deleted
            CREATE TABLE IF NOT EXISTS suggestion_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                batch_id TEXT NOT NULL,
                element_id TEXT NOT NULL,
                mapping TEXT NOT NULL,  -- JSON object
                recorded_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_catalog_category ON catalog(category);
            CREATE INDEX IF NOT EXISTS idx_records_batch ON extracted_records(batch_id);
            CREATE INDEX IF NOT EXISTS idx_usage_credential ON usage_log(credential_id);
            CREATE INDEX IF NOT EXISTS idx_usage_batch ON usage_log(batch_id);
            CREATE INDEX IF NOT EXISTS idx_history_record ON suggestion_history(batch_id, element_id);
        """)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def primary_to_json(mapping: PrimaryMapping) -> str:
    return json.dumps({
        "code": mapping.code,
        "rule": mapping.rule.value,
        "score": mapping.score,
        "method": mapping.method,
    })


def primary_from_json(value: Optional[str]) -> Optional[PrimaryMapping]:
    if not value:
        return None
    data = json.loads(value)
    return PrimaryMapping(
        code=data["code"],
        rule=MatchRule(data["rule"]),
        score=data.get("score", 100),
        method=data.get("method", "deterministic"),
    )


def secondary_to_json(mapping: SecondaryMapping) -> str:
    return json.dumps({
        "code": mapping.code,
        "cleaned_title": mapping.cleaned_title,
        "confidence": mapping.confidence,
        "reasoning": mapping.reasoning,
        "model_id": mapping.model_id,
        "produced_at": _iso(mapping.produced_at),
        "alternatives": [{"code": a.code, "confidence": a.confidence} for a in mapping.alternatives],
        "flags": list(mapping.flags),
    })


def secondary_from_json(value: Optional[str]) -> Optional[SecondaryMapping]:
    if not value:
        return None
    data = json.loads(value)
    return SecondaryMapping(
        code=data["code"],
        cleaned_title=data.get("cleaned_title", ""),
        confidence=data["confidence"],
        reasoning=data.get("reasoning", ""),
        model_id=data.get("model_id", ""),
        produced_at=_parse_dt(data.get("produced_at")),
        alternatives=tuple(Alternative(a["code"], a["confidence"]) for a in data.get("alternatives", [])),
        flags=tuple(data.get("flags", [])),
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class SqliteCatalogAdapter(CatalogAdapter):

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path

    def upsert_courses(self, records: Iterable[MasterCourseRecord]) -> int:
        """Insert or refresh catalog rows. Codes are never rewritten."""
        rows = [
            (r.code, r.title, r.category, json.dumps(sorted(r.aliases)))
            for r in records
        ]
        with get_db(self.db_path) as conn:
            conn.executemany("""
                INSERT INTO catalog (code, title, category, aliases)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    title = excluded.title,
                    category = excluded.category,
                    aliases = excluded.aliases
            """, rows)
        return len(rows)

    def list_catalog(self, category: Optional[str] = None) -> list[MasterCourseRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM catalog ORDER BY code").fetchall()
        records = [
            MasterCourseRecord(
                code=row["code"],
                title=row["title"],
                category=row["category"] or "",
                aliases=frozenset(json.loads(row["aliases"] or "[]")),
            )
            for row in rows
        ]
        return filter_category(records, category)


# ---------------------------------------------------------------------------
# Extracted records
# ---------------------------------------------------------------------------

def _record_from_row(row: sqlite3.Row) -> ExtractedRecord:
    return ExtractedRecord(
        batch_id=row["batch_id"],
        element_id=row["element_id"],
        raw_title=row["raw_title"],
        raw_code=row["raw_code"],
        description=row["description"],
        category=row["category"],
        primary_mapping=primary_from_json(row["primary_mapping"]),
        secondary_mapping=secondary_from_json(row["secondary_mapping"]),
    )


class SqliteRecordStore(RecordStore):

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path

    def add_records(self, records: Iterable[ExtractedRecord]) -> int:
        """Insert new records; existing (batch_id, element_id) rows are left alone."""
        added = 0
        with get_db(self.db_path) as conn:
            for r in records:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO extracted_records
                    (batch_id, element_id, raw_title, raw_code, description, category,
                     primary_mapping, secondary_mapping)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    r.batch_id, r.element_id, r.raw_title, r.raw_code, r.description, r.category,
                    primary_to_json(r.primary_mapping) if r.primary_mapping else None,
                    secondary_to_json(r.secondary_mapping) if r.secondary_mapping else None,
                ))
                added += cursor.rowcount
        return added

    def get_record(self, batch_id: str, element_id: str) -> Optional[ExtractedRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM extracted_records WHERE batch_id = ? AND element_id = ?",
                (batch_id, element_id)
            ).fetchone()
        return _record_from_row(row) if row else None

    def get_batch(self, batch_id: str) -> list[ExtractedRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM extracted_records WHERE batch_id = ? ORDER BY rowid",
                (batch_id,)
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def update_record_mapping(
        self,
        batch_id: str,
        element_id: str,
        primary: Optional[PrimaryMapping] = None,
        secondary: Optional[SecondaryMapping] = None,
    ) -> bool:
        now = utcnow().isoformat()
        changed = False

        with get_db(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT secondary_mapping FROM extracted_records WHERE batch_id = ? AND element_id = ?",
                (batch_id, element_id)
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown record: {batch_id}/{element_id}")

            if primary is not None:
                cursor = conn.execute("""
                    UPDATE extracted_records
                    SET primary_mapping = ?, updated_at = ?
                    WHERE batch_id = ? AND element_id = ? AND primary_mapping IS NULL
                """, (primary_to_json(primary), now, batch_id, element_id))
                changed = changed or cursor.rowcount > 0

            if secondary is not None and secondary_from_json(row["secondary_mapping"]) != secondary:
                encoded = secondary_to_json(secondary)
                conn.execute("""
                    UPDATE extracted_records
                    SET secondary_mapping = ?, updated_at = ?
                    WHERE batch_id = ? AND element_id = ?
                """, (encoded, now, batch_id, element_id))
                conn.execute("""
                    INSERT INTO suggestion_history (batch_id, element_id, mapping, recorded_at)
                    VALUES (?, ?, ?, ?)
                """, (batch_id, element_id, encoded, now))
                changed = True

        return changed

    def delete_secondary_mapping(self, batch_id: str, element_id: str) -> bool:
        with get_db(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE extracted_records
                SET secondary_mapping = NULL, updated_at = ?
                WHERE batch_id = ? AND element_id = ? AND secondary_mapping IS NOT NULL
            """, (utcnow().isoformat(), batch_id, element_id))
            return cursor.rowcount > 0

    def suggestion_history(self, batch_id: str, element_id: str) -> list[SuggestionHistoryEntry]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("""
                SELECT * FROM suggestion_history
                WHERE batch_id = ? AND element_id = ?
                ORDER BY id
            """, (batch_id, element_id)).fetchall()
        return [
            SuggestionHistoryEntry(
                batch_id=row["batch_id"],
                element_id=row["element_id"],
                mapping=secondary_from_json(row["mapping"]),
                recorded_at=_parse_dt(row["recorded_at"]),
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def _credential_from_row(row: sqlite3.Row) -> CredentialRecord:
    return CredentialRecord(
        id=row["id"],
        nickname=row["nickname"],
        api_key=row["api_key"] or "",
        is_active=bool(row["is_active"]),
        is_deleted=bool(row["is_deleted"]),
        rate_limit_per_minute=row["rate_limit_per_minute"],
        daily_limit=row["daily_limit"],
        used_today=row["used_today"],
        reset_at=_parse_dt(row["reset_at"]),
    )


class SqliteCredentialStore(CredentialStore):
    """
    Credential store backed by SQLite.

    reserve() is a single conditional UPDATE, so concurrent callers in
    any number of threads or processes can never push used_today past
    daily_limit.
    """

    def __init__(self, db_path: Optional[Path] = None, clock=utcnow):
        self.db_path = db_path
        self._clock = clock

    def add_credential(self, credential: CredentialRecord):
        with get_db(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO credentials
                (id, nickname, api_key, is_active, is_deleted, rate_limit_per_minute,
                 daily_limit, used_today, reset_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                credential.id, credential.nickname, credential.api_key,
                int(credential.is_active), int(credential.is_deleted),
                credential.rate_limit_per_minute, credential.daily_limit,
                credential.used_today, _iso(credential.reset_at),
            ))

    def deactivate(self, credential_id: str):
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE credentials SET is_active = 0 WHERE id = ?", (credential_id,))

    def delete(self, credential_id: str):
        """Soft delete; the row stays for the usage log's sake."""
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE credentials SET is_deleted = 1 WHERE id = ?", (credential_id,))

    def list_active_credentials(self) -> list[CredentialRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM credentials WHERE is_active = 1 AND is_deleted = 0 ORDER BY id"
            ).fetchall()
        return [_credential_from_row(row) for row in rows]

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM credentials WHERE id = ?", (credential_id,)).fetchone()
        return _credential_from_row(row) if row else None

    def _require(self, credential_id: str) -> CredentialRecord:
        credential = self.get_credential(credential_id)
        if credential is None:
            raise KeyError(f"Unknown credential: {credential_id}")
        return credential

    def reserve(self, credential_id: str, n: int = 1) -> CredentialRecord:
        if n < 1:
            raise ValueError("Reservation size must be positive")
        self._require(credential_id)
        self.reset_if_due(credential_id)

        with get_db(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE credentials
                SET used_today = used_today + ?
                WHERE id = ? AND is_active = 1 AND is_deleted = 0
                  AND used_today + ? <= daily_limit
            """, (n, credential_id, n))
            reserved = cursor.rowcount > 0

        credential = self._require(credential_id)
        if not reserved:
            remaining = 0 if credential.state == CredentialState.DISABLED else credential.remaining
            raise QuotaExceeded(credential_id, n, remaining)
        return credential

    def release(self, credential_id: str, n: int = 1) -> CredentialRecord:
        if n < 1:
            raise ValueError("Release size must be positive")
        with get_db(self.db_path) as conn:
            conn.execute(
                "UPDATE credentials SET used_today = MAX(0, used_today - ?) WHERE id = ?",
                (n, credential_id)
            )
        return self._require(credential_id)

    def record_usage(self, entry: UsageLogEntry) -> None:
        with get_db(self.db_path) as conn:
            conn.execute("""
                INSERT INTO usage_log
                (credential_id, batch_id, records_attempted, tokens_used, success,
                 error_kind, cost_estimate, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.credential_id, entry.batch_id, entry.records_attempted,
                entry.tokens_used, int(entry.success), entry.error_kind,
                entry.cost_estimate, _iso(entry.timestamp),
            ))

    def reset_if_due(self, credential_id: str, now: Optional[datetime] = None) -> bool:
        """
        Roll the credential over to a new day if its boundary has passed.

        Both updates are conditional on the stored reset_at, so only one
        of several concurrent callers performs the reset.
        """
        now = now or self._clock()
        boundary = _iso(next_reset_after(now))
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE credentials SET reset_at = ? WHERE id = ? AND reset_at IS NULL",
                (boundary, credential_id)
            )
            if cursor.rowcount:
                return True
            cursor = conn.execute("""
                UPDATE credentials SET used_today = 0, reset_at = ?
                WHERE id = ? AND reset_at <= ?
            """, (boundary, credential_id, _iso(now)))
            if cursor.rowcount:
                logger.info(f"Daily quota reset for credential {credential_id}")
            return cursor.rowcount > 0

    def list_usage(self, credential_id: Optional[str] = None) -> list[UsageLogEntry]:
        query = "SELECT * FROM usage_log"
        params: list[Any] = []
        if credential_id is not None:
            query += " WHERE credential_id = ?"
            params.append(credential_id)
        query += " ORDER BY id"

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            UsageLogEntry(
                credential_id=row["credential_id"],
                batch_id=row["batch_id"],
                records_attempted=row["records_attempted"],
                tokens_used=row["tokens_used"],
                success=bool(row["success"]),
                error_kind=row["error_kind"],
                cost_estimate=row["cost_estimate"],
                timestamp=_parse_dt(row["timestamp"]),
            )
            for row in rows
        ]

    def usage_summary(self, credential_id: Optional[str] = None) -> Dict[str, Any]:
        """Totals over the usage log: calls, failures, tokens and cost."""
        query = """
            SELECT COUNT(*) AS calls,
                   COALESCE(SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END), 0) AS failures,
                   COALESCE(SUM(tokens_used), 0) AS tokens,
                   COALESCE(SUM(cost_estimate), 0) AS cost
            FROM usage_log
        """
        params: list[Any] = []
        if credential_id is not None:
            query += " WHERE credential_id = ?"
            params.append(credential_id)
        with get_db(self.db_path) as conn:
            row = conn.execute(query, params).fetchone()
        return {
            "calls": row["calls"],
            "failures": row["failures"],
            "tokens": row["tokens"],
            "cost": round(row["cost"], 6),
        }
