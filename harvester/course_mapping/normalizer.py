"""
Record normalizer - cleans raw extracted rows into a matchable shape.

The extractor emits loosely-typed dicts whose field names vary by
document ("name", "CourseName", "title", ...). Everything here is pure:
no I/O, no logging side effects beyond debug output.
"""

import logging
import re
from typing import Any, Iterable, Optional

from .errors import ValidationError
from .models import ExtractedRecord, NormalizedRecord

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0e-\x1f\x7f-\x9f]")  # Tab, newline, VT, FF and CR are whitespace
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_COMPOUND_TITLE = re.compile(r"^(.+?)\s*(\d+)\s*-\s*(\d+)$")

# Placeholder values the extractor writes for "no data"
_MISSING_VALUES = {"", "-", "null", "none", "n/a"}

# Field name variants seen in extractor output, in priority order
TITLE_FIELDS = ["name", "CourseName", "title", "courseName", "course_name", "Name", "rawTitle"]
CODE_FIELDS = ["code", "CourseCode", "course_id", "courseCode", "Code", "rawCode"]
DESCRIPTION_FIELDS = ["description", "CourseDescription", "Description", "desc", "overview", "Overview"]
CATEGORY_FIELDS = ["category", "Category", "CategoryName", "subject", "Subject", "Department", "department"]

# Don't expand ranges wider than this ("Math 101-205" is not ten courses)
MAX_COMPOUND_SPAN = 10


def normalize_text(value: Optional[str]) -> str:
    """Strip control characters, collapse internal whitespace, trim."""
    if value is None:
        return ""
    text = _CONTROL_CHARS.sub("", str(value))
    return _WHITESPACE.sub(" ", text).strip()


def normalize_code(value: Optional[str]) -> str:
    """Comparison key for course codes: lowercase alphanumerics only."""
    if not value:
        return ""
    return _NON_ALNUM.sub("", str(value).lower())


def normalize_title_key(value: Optional[str]) -> str:
    """Comparison key for titles: cleaned and case-folded."""
    return normalize_text(value).casefold()


def _optional(value: Optional[str]) -> Optional[str]:
    cleaned = normalize_text(value)
    if cleaned.lower() in _MISSING_VALUES:
        return None
    return cleaned


def normalize_record(record: ExtractedRecord) -> Optional[NormalizedRecord]:
    """
    Clean an extracted record for matching.

    Returns:
        NormalizedRecord, or None when the title is empty after cleaning
        (nothing meaningful to map; the record is dropped).
    """
    title = _optional(record.raw_title)
    if not title:
        logger.debug(f"Dropping record {record.record_id}: empty title after cleaning")
        return None

    return NormalizedRecord(
        batch_id=record.batch_id,
        element_id=record.element_id,
        title=title,
        code=_optional(record.raw_code),
        description=_optional(record.description),
        category=_optional(record.category),
    )


def get_field(row: dict, variants: list[str]) -> Optional[str]:
    for variant in variants:
        value = row.get(variant)
        if value is None or isinstance(value, (dict, list)):
            continue
        cleaned = _optional(str(value))
        if cleaned:
            return cleaned
    return None


def record_from_raw(raw: Any, batch_id: str, element_id: str) -> ExtractedRecord:
    """
    Build an ExtractedRecord from an extractor row.

    Accepts the field name variants listed above; placeholder values
    ("-", "null") count as missing.

    Raises:
        ValidationError: if the row is not a mapping
    """
    if not isinstance(raw, dict):
        raise ValidationError(
            f"Record {batch_id}/{element_id} is {type(raw).__name__}, expected an object"
        )

    return ExtractedRecord(
        batch_id=batch_id,
        element_id=element_id,
        raw_title=get_field(raw, TITLE_FIELDS) or "",
        raw_code=get_field(raw, CODE_FIELDS),
        description=get_field(raw, DESCRIPTION_FIELDS),
        category=get_field(raw, CATEGORY_FIELDS),
    )


def split_compound_title(title: str) -> list[str]:
    """
    Expand compound course entries.

    "English 1-4" -> ["English 1", "English 2", "English 3", "English 4"]
    Titles without a numeric range, or with a descending or overly wide
    range, come back unchanged.
    """
    match = _COMPOUND_TITLE.match(title or "")
    if not match:
        return [title]

    subject, start_str, end_str = match.groups()
    start, end = int(start_str), int(end_str)
    if end <= start or end - start > MAX_COMPOUND_SPAN:
        return [title]

    return [f"{subject.strip()} {i}" for i in range(start, end + 1)]


def dedupe_records(records: Iterable[ExtractedRecord]) -> list[ExtractedRecord]:
    """Drop later records that repeat an earlier (title, code) pair."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for record in records:
        key = (normalize_title_key(record.raw_title), normalize_code(record.raw_code))
        if key in seen:
            logger.debug(f"Dropping duplicate record {record.record_id}")
            continue
        seen.add(key)
        unique.append(record)
    return unique


def records_from_rows(rows: list[Any], batch_id: str) -> list[ExtractedRecord]:
    """
    Turn one extraction's rows into ExtractedRecords.

    Element ids are the row position; a compound row expands into
    "<pos>.<n>" children. Rows that aren't objects are logged and
    skipped, duplicates are dropped.
    """
    records = []
    for position, row in enumerate(rows):
        try:
            record = record_from_raw(row, batch_id, str(position))
        except ValidationError as e:
            logger.warning(f"Skipping row: {e}")
            continue

        titles = split_compound_title(record.raw_title)
        if len(titles) == 1:
            records.append(record)
            continue

        for n, title in enumerate(titles, start=1):
            records.append(ExtractedRecord(
                batch_id=batch_id,
                element_id=f"{position}.{n}",
                raw_title=title,
                raw_code=record.raw_code,
                description=record.description,
                category=record.category,
            ))

    return dedupe_records(records)
