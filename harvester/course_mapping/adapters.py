"""
Adapters for the pipeline's two collaborators:

- CatalogAdapter: read-only access to the master course catalog
- RecordStore: extraction batches and targeted mapping updates

In-memory and file-backed implementations live here; SQLite-backed ones
are in db.py.
"""

import csv
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional

from .errors import ValidationError
from .models import (
    ExtractedRecord,
    MasterCourseRecord,
    PrimaryMapping,
    SecondaryMapping,
    SuggestionHistoryEntry,
)
from .normalizer import CATEGORY_FIELDS, CODE_FIELDS, TITLE_FIELDS, get_field, normalize_title_key

logger = logging.getLogger(__name__)

ALIAS_FIELDS = ["aliases", "Aliases", "alias", "alternate_titles"]
ALIAS_SEPARATOR = "|"


def parse_aliases(value: Any) -> frozenset[str]:
    """Aliases come as a list or a "|"-separated string."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(ALIAS_SEPARATOR)
    return frozenset(a.strip() for a in value if isinstance(a, str) and a.strip())


def course_from_raw(raw: Any) -> MasterCourseRecord:
    """
    Build a MasterCourseRecord from a catalog row.

    Raises:
        ValidationError: row is not an object or lacks a code or title
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Catalog row is {type(raw).__name__}, expected an object")

    code = get_field(raw, CODE_FIELDS)
    title = get_field(raw, TITLE_FIELDS)
    if not code or not title:
        raise ValidationError(f"Catalog row missing code or title: {raw}")

    aliases = next((raw[f] for f in ALIAS_FIELDS if raw.get(f)), None)
    return MasterCourseRecord(
        code=code,
        title=title,
        category=get_field(raw, CATEGORY_FIELDS) or "",
        aliases=parse_aliases(aliases),
    )


def filter_category(
    records: Iterable[MasterCourseRecord],
    category: Optional[str],
) -> list[MasterCourseRecord]:
    if not category:
        return list(records)
    key = normalize_title_key(category)
    return [r for r in records if normalize_title_key(r.category) == key]


class CatalogAdapter(ABC):
    """Read-only source of master course records."""

    @abstractmethod
    def list_catalog(self, category: Optional[str] = None) -> list[MasterCourseRecord]:
        """All catalog records, or only those in a category."""
        pass


class InMemoryCatalogAdapter(CatalogAdapter):

    def __init__(self, records: Iterable[MasterCourseRecord] = ()):
        self._records = tuple(records)

    def list_catalog(self, category: Optional[str] = None) -> list[MasterCourseRecord]:
        return filter_category(self._records, category)


class FileCatalogAdapter(CatalogAdapter):
    """
    Catalog loaded from a CSV or JSON export.

    JSON files hold either a list of course objects or an object with a
    "courses" list. CSV files need a header row. Rows without a code or
    title are logged and skipped. The file is read once, on first use.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._records: Optional[list[MasterCourseRecord]] = None
        self._lock = threading.Lock()

    def _read_rows(self) -> list[Any]:
        suffix = self.path.suffix.lower()
        if suffix == ".json":
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                data = data.get("courses", [])
            if not isinstance(data, list):
                raise ValidationError(f"{self.path}: expected a list of courses")
            return data
        if suffix == ".csv":
            with open(self.path, newline="", encoding="utf-8-sig") as f:
                return list(csv.DictReader(f))
        raise ValidationError(f"Unsupported catalog file type: {self.path.suffix}")

    def _load(self) -> list[MasterCourseRecord]:
        with self._lock:
            if self._records is None:
                records = []
                for position, row in enumerate(self._read_rows()):
                    try:
                        records.append(course_from_raw(row))
                    except ValidationError as e:
                        logger.warning(f"{self.path.name} row {position}: {e}")
                logger.info(f"Loaded {len(records)} catalog records from {self.path.name}")
                self._records = records
            return self._records

    def list_catalog(self, category: Optional[str] = None) -> list[MasterCourseRecord]:
        return filter_category(self._load(), category)


class RecordStore(ABC):
    """
    Storage for extracted records and their mappings.

    Updates are addressed by (batch_id, element_id) and never touch any
    other record.
    """

    @abstractmethod
    def add_records(self, records: Iterable[ExtractedRecord]) -> int:
        """Insert new records; existing ids are left alone. Returns the number added."""
        pass

    @abstractmethod
    def get_batch(self, batch_id: str) -> list[ExtractedRecord]:
        pass

    @abstractmethod
    def update_record_mapping(
        self,
        batch_id: str,
        element_id: str,
        primary: Optional[PrimaryMapping] = None,
        secondary: Optional[SecondaryMapping] = None,
    ) -> bool:
        """
        Apply mappings to one record.

        The primary mapping is only written when the record has none;
        the secondary mapping replaces whatever was stored. Returns True
        if the stored record changed.

        Raises:
            KeyError: no such record
        """
        pass

    @abstractmethod
    def delete_secondary_mapping(self, batch_id: str, element_id: str) -> bool:
        """Remove a record's secondary mapping. Returns True if one was removed."""
        pass

    @abstractmethod
    def suggestion_history(self, batch_id: str, element_id: str) -> list[SuggestionHistoryEntry]:
        """Every secondary mapping ever stored for the record, oldest first."""
        pass


class InMemoryRecordStore(RecordStore):
    """Thread-safe in-memory record store."""

    def __init__(self, records: Iterable[ExtractedRecord] = ()):
        self._records: dict[tuple[str, str], ExtractedRecord] = {}
        self._history: list[SuggestionHistoryEntry] = []
        self._lock = threading.Lock()
        self.add_records(records)

    def add_records(self, records: Iterable[ExtractedRecord]) -> int:
        """Insert new records; existing ids are left alone."""
        added = 0
        with self._lock:
            for record in records:
                if record.record_id not in self._records:
                    self._records[record.record_id] = record
                    added += 1
        return added

    def get_record(self, batch_id: str, element_id: str) -> Optional[ExtractedRecord]:
        with self._lock:
            return self._records.get((batch_id, element_id))

    def get_batch(self, batch_id: str) -> list[ExtractedRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.batch_id == batch_id]

    def update_record_mapping(
        self,
        batch_id: str,
        element_id: str,
        primary: Optional[PrimaryMapping] = None,
        secondary: Optional[SecondaryMapping] = None,
    ) -> bool:
        key = (batch_id, element_id)
        with self._lock:
            if key not in self._records:
                raise KeyError(f"Unknown record: {batch_id}/{element_id}")
            current = self._records[key]
            updated = current

            if primary is not None and current.primary_mapping is None:
                updated = replace(updated, primary_mapping=primary)
            if secondary is not None and current.secondary_mapping != secondary:
                updated = replace(updated, secondary_mapping=secondary)
                self._history.append(SuggestionHistoryEntry(batch_id, element_id, secondary))

            if updated is current:
                return False
            self._records[key] = updated
            return True

    def delete_secondary_mapping(self, batch_id: str, element_id: str) -> bool:
        key = (batch_id, element_id)
        with self._lock:
            current = self._records.get(key)
            if current is None or current.secondary_mapping is None:
                return False
            self._records[key] = replace(current, secondary_mapping=None)
            return True

    def suggestion_history(self, batch_id: str, element_id: str) -> list[SuggestionHistoryEntry]:
        with self._lock:
            return [
                h for h in self._history
                if h.batch_id == batch_id and h.element_id == element_id
            ]
