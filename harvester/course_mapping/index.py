"""
Catalog Index - Fast lookup structures for course matching.

Instead of scanning the whole master catalog for every extracted row,
we build lookup dictionaries once per run:
- by_code: O(1) exact code match on the normalized code
- by_title: O(1) exact title/alias match, case-insensitive
- by_category: catalog slice for bounded semantic requests
"""

from dataclasses import dataclass, field
from typing import Optional

from .models import MasterCourseRecord
from .normalizer import normalize_code, normalize_title_key


@dataclass
class CatalogIndex:
    """
    Indexed master catalog.

    Attributes:
        by_code: normalized code -> record
        by_title: case-folded title or alias -> records (a title can
            be shared by several codes)
        by_category: case-folded category -> records
        records: all records, in catalog order
    """
    by_code: dict[str, MasterCourseRecord] = field(default_factory=dict)
    by_title: dict[str, list[MasterCourseRecord]] = field(default_factory=dict)
    by_category: dict[str, list[MasterCourseRecord]] = field(default_factory=dict)
    records: list[MasterCourseRecord] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)

    def lookup_code(self, code: Optional[str]) -> Optional[MasterCourseRecord]:
        """Look up a record by exact (normalized) code."""
        key = normalize_code(code)
        if not key:
            return None
        return self.by_code.get(key)

    def contains_code(self, code: Optional[str]) -> bool:
        return self.lookup_code(code) is not None

    def lookup_title(self, title: Optional[str]) -> list[MasterCourseRecord]:
        """Look up records whose title or alias equals the given title."""
        return self.by_title.get(normalize_title_key(title), [])

    def for_category(self, category: Optional[str]) -> list[MasterCourseRecord]:
        """Catalog slice for a category; whole catalog when category is unknown."""
        if not category:
            return list(self.records)
        return list(self.by_category.get(normalize_title_key(category), []))

    def titles_for(self, record: MasterCourseRecord) -> list[str]:
        """Title plus aliases, title first."""
        return [record.title, *sorted(record.aliases)]


def build_index(records: list[MasterCourseRecord]) -> CatalogIndex:
    """
    Build lookup index from catalog records.

    Args:
        records: MasterCourseRecords from a catalog adapter

    Returns:
        CatalogIndex with code, title and category lookups.
        Duplicate codes keep the first record seen.
    """
    index = CatalogIndex()

    for record in records:
        code_key = normalize_code(record.code)
        if not code_key or code_key in index.by_code:
            continue
        index.by_code[code_key] = record
        index.records.append(record)

        for title in index.titles_for(record):
            title_key = normalize_title_key(title)
            if not title_key:
                continue
            entries = index.by_title.setdefault(title_key, [])
            if record not in entries:
                entries.append(record)

        category_key = normalize_title_key(record.category)
        if category_key:
            index.by_category.setdefault(category_key, []).append(record)

    return index
