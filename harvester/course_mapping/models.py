"""
Data models for the course mapping pipeline.

All structured data uses dataclasses for type hints, __eq__, and __repr__.
Catalog entries and extracted records are read-only inputs (frozen);
mapping results are built up by the pipeline stages.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class MatchRule(str, Enum):
    """Which deterministic rule produced a primary mapping."""
    CODE = "code"                    # Normalized code equals a catalog code
    CODE_PREFIX = "code_prefix"      # First N code characters equal a catalog code's
    TITLE = "title"                  # Title equals catalog title or alias
    SIMILAR_TITLE = "similar_title"  # Fuzzy title score above threshold


class RecordStatus(str, Enum):
    """Per-record outcome of a pipeline run."""
    DETERMINISTIC_MATCH = "deterministic_match"
    SEMANTIC_MATCH = "semantic_match"
    SEMANTIC_REJECTED = "semantic_rejected"  # Suggestion not in catalog
    SEMANTIC_FAILED = "semantic_failed"      # Malformed response or provider error
    SEMANTIC_SKIPPED = "semantic_skipped"    # No credential / stage aborted
    UNRESOLVED = "unresolved"
    INVALID = "invalid"                      # Dropped by the normalizer


class CredentialState(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    DISABLED = "disabled"  # Deactivated or deleted


@dataclass(frozen=True)
class MasterCourseRecord:
    """
    A canonical course from the master catalog.

    The code is the stable identifier and never changes once issued.
    """
    code: str
    title: str
    category: str = ""
    aliases: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Alternative:
    """A runner-up suggestion from the inference service."""
    code: str
    confidence: int


@dataclass(frozen=True)
class PrimaryMapping:
    """Authoritative mapping produced by the deterministic matcher."""
    code: str
    rule: MatchRule
    score: int = 100
    method: str = "deterministic"


@dataclass(frozen=True)
class SecondaryMapping:
    """
    Semantic suggestion produced by the inference service.

    Carries its own timestamp and model identity so every stored
    suggestion can be audited independently of the primary mapping.
    """
    code: str
    cleaned_title: str
    confidence: int
    reasoning: str
    model_id: str
    produced_at: datetime
    alternatives: tuple[Alternative, ...] = ()
    flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExtractedRecord:
    """
    A single course row from an extraction batch.

    Identity is the parent batch plus the element id, which is stable
    within the batch and is what targeted updates are addressed by.
    """
    batch_id: str
    element_id: str
    raw_title: str
    raw_code: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    primary_mapping: Optional[PrimaryMapping] = None
    secondary_mapping: Optional[SecondaryMapping] = None

    @property
    def record_id(self) -> tuple[str, str]:
        return (self.batch_id, self.element_id)


@dataclass(frozen=True)
class NormalizedRecord:
    """Cleaned, matchable shape of an ExtractedRecord."""
    batch_id: str
    element_id: str
    title: str
    code: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None

    @property
    def record_id(self) -> tuple[str, str]:
        return (self.batch_id, self.element_id)

    @property
    def ref(self) -> str:
        """Reference used to tie inference responses back to records."""
        return self.element_id


@dataclass
class MappingResult:
    """
    Output of the pipeline for a single record.

    primary_mapping comes only from the deterministic pass;
    secondary_mapping only from the semantic pass.
    """
    record_id: tuple[str, str]
    status: RecordStatus
    primary_mapping: Optional[PrimaryMapping] = None
    secondary_mapping: Optional[SecondaryMapping] = None
    detail: str = ""  # Human-readable explanation

    @property
    def batch_id(self) -> str:
        return self.record_id[0]

    @property
    def element_id(self) -> str:
        return self.record_id[1]


@dataclass
class CredentialRecord:
    """
    A rate-limited credential for the inference service.

    daily_limit is derived from the effective per-minute rate; one unit
    of the nominal rate is held back as a safety margin.
    """
    id: str
    nickname: str
    api_key: str = field(default="", repr=False)
    is_active: bool = True
    is_deleted: bool = False
    rate_limit_per_minute: int = 19
    daily_limit: int = 19 * 1440
    used_today: int = 0
    reset_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.used_today)

    @property
    def state(self) -> CredentialState:
        if not self.is_active or self.is_deleted:
            return CredentialState.DISABLED
        if self.used_today >= self.daily_limit:
            return CredentialState.EXHAUSTED
        return CredentialState.ACTIVE


@dataclass(frozen=True)
class UsageLogEntry:
    """Append-only audit record, one per inference call attempt."""
    credential_id: str
    batch_id: str
    records_attempted: int
    tokens_used: int
    success: bool
    error_kind: Optional[str] = None
    cost_estimate: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SuggestionHistoryEntry:
    """Append-only copy of every secondary mapping ever accepted for a record."""
    batch_id: str
    element_id: str
    mapping: SecondaryMapping
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
