# Course Mapping: maps extracted course rows onto the master catalog
# Deterministic rules first, quota-gated semantic suggestions second

from .models import (
    MasterCourseRecord,
    ExtractedRecord,
    NormalizedRecord,
    PrimaryMapping,
    SecondaryMapping,
    Alternative,
    MappingResult,
    MatchRule,
    RecordStatus,
    CredentialRecord,
    CredentialState,
    UsageLogEntry,
    SuggestionHistoryEntry,
)
from .errors import (
    MappingError,
    ValidationError,
    NoCredentialAvailable,
    TemporarilyExhausted,
    QuotaExceeded,
    ProviderError,
    ProviderTransient,
    ProviderRateLimited,
    ProviderRequestError,
    ProviderNotSent,
    ProviderMalformed,
    HallucinatedSuggestion,
)
from .config import Config, load_config
from .normalizer import normalize_record, record_from_raw, records_from_rows
from .index import build_index, CatalogIndex
from .matcher import match_record, match_records
from .quota import QuotaAllocator, InMemoryCredentialStore, make_credential
from .inference import GeminiClient
from .semantic import SemanticMatcher
from .validator import validate_suggestion
from .adapters import (
    CatalogAdapter,
    InMemoryCatalogAdapter,
    FileCatalogAdapter,
    RecordStore,
    InMemoryRecordStore,
)
from .db import SqliteCatalogAdapter, SqliteRecordStore, SqliteCredentialStore, init_db
from .merge import merge_results, summarize_results
from .pipeline import MappingPipeline, BatchReport, create_pipeline

__version__ = "1.0.0"

__all__ = [
    # Models
    "MasterCourseRecord",
    "ExtractedRecord",
    "NormalizedRecord",
    "PrimaryMapping",
    "SecondaryMapping",
    "Alternative",
    "MappingResult",
    "MatchRule",
    "RecordStatus",
    "CredentialRecord",
    "CredentialState",
    "UsageLogEntry",
    "SuggestionHistoryEntry",
    # Errors
    "MappingError",
    "ValidationError",
    "NoCredentialAvailable",
    "TemporarilyExhausted",
    "QuotaExceeded",
    "ProviderError",
    "ProviderTransient",
    "ProviderRateLimited",
    "ProviderRequestError",
    "ProviderNotSent",
    "ProviderMalformed",
    "HallucinatedSuggestion",
    # Config
    "Config",
    "load_config",
    # Normalizer / index / matcher
    "normalize_record",
    "record_from_raw",
    "records_from_rows",
    "build_index",
    "CatalogIndex",
    "match_record",
    "match_records",
    # Quota
    "QuotaAllocator",
    "InMemoryCredentialStore",
    "make_credential",
    # Semantic
    "GeminiClient",
    "SemanticMatcher",
    "validate_suggestion",
    # Adapters
    "CatalogAdapter",
    "InMemoryCatalogAdapter",
    "FileCatalogAdapter",
    "RecordStore",
    "InMemoryRecordStore",
    "SqliteCatalogAdapter",
    "SqliteRecordStore",
    "SqliteCredentialStore",
    "init_db",
    # Merge / pipeline
    "merge_results",
    "summarize_results",
    "MappingPipeline",
    "BatchReport",
    "create_pipeline",
]
