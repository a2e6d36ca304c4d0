"""
Configuration for the course mapping pipeline.

Tunables are declarative JSON - edit mapping_config.json, not the code.
Deployment values (endpoint, model, database path) come from the
environment via Settings.
"""

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

DEFAULT_CONFIG_PATH = Path(__file__).parent / "mapping_config.json"


@dataclass
class MatchSettings:
    """Settings for the deterministic matcher."""
    similarity_threshold: float = 88.0  # rapidfuzz score, 0-100
    code_prefix_length: int = 7
    deterministic_workers: int = 4


@dataclass
class QuotaSettings:
    """Per-credential rate/day limit pair."""
    nominal_rate_limit_per_minute: int = 20
    rate_limit_per_minute: int = 19  # One unit held back as safety margin

    @property
    def daily_limit(self) -> int:
        return self.rate_limit_per_minute * 1440


@dataclass
class RetrySettings:
    """Retry/backoff policy for inference calls."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff for the given 1-based attempt number."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


@dataclass
class SemanticSettings:
    """Settings for the AI-assisted matcher."""
    enabled: bool = True
    batch_size: int = 20
    candidate_limit: int = 200
    max_alternatives: int = 3
    model_id: str = "gemini-2.0-flash"
    temperature: float = 0.3
    max_output_tokens: int = 4000
    request_timeout: float = 30.0
    cost_per_million_tokens: float = 0.10  # USD


@dataclass
class Config:
    """Full configuration for the course mapping pipeline."""
    matching: MatchSettings = field(default_factory=MatchSettings)
    quota: QuotaSettings = field(default_factory=QuotaSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    semantic: SemanticSettings = field(default_factory=SemanticSettings)


def load_config(config_path: Optional[str | Path] = None) -> Config:
    """
    Load configuration from JSON file.

    Args:
        config_path: Path to mapping_config.json (defaults to the
            module's bundled file)

    Returns:
        Config with matching, quota, retry and semantic settings.
        Missing keys fall back to dataclass defaults.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    with open(path, "r") as f:
        data = json.load(f)

    matching_data = data.get("matching", {})
    quota_data = data.get("quota", {})
    retry_data = data.get("retry", {})
    semantic_data = data.get("semantic", {})

    matching = MatchSettings(
        similarity_threshold=float(matching_data.get("similarity_threshold", 88.0)),
        code_prefix_length=int(matching_data.get("code_prefix_length", 7)),
        deterministic_workers=int(matching_data.get("deterministic_workers", 4)),
    )

    quota = QuotaSettings(
        nominal_rate_limit_per_minute=int(quota_data.get("nominal_rate_limit_per_minute", 20)),
        rate_limit_per_minute=int(quota_data.get("rate_limit_per_minute", 19)),
    )
    if quota.rate_limit_per_minute > quota.nominal_rate_limit_per_minute:
        raise ValueError(
            f"rate_limit_per_minute ({quota.rate_limit_per_minute}) exceeds "
            f"nominal limit ({quota.nominal_rate_limit_per_minute})"
        )

    retry = RetrySettings(
        max_attempts=int(retry_data.get("max_attempts", 3)),
        base_delay=float(retry_data.get("base_delay", 1.0)),
        max_delay=float(retry_data.get("max_delay", 30.0)),
    )
    if retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be at least 1")

    defaults = SemanticSettings()
    semantic = SemanticSettings(
        enabled=bool(semantic_data.get("enabled", defaults.enabled)),
        batch_size=int(semantic_data.get("batch_size", defaults.batch_size)),
        candidate_limit=int(semantic_data.get("candidate_limit", defaults.candidate_limit)),
        max_alternatives=int(semantic_data.get("max_alternatives", defaults.max_alternatives)),
        model_id=semantic_data.get("model_id", defaults.model_id),
        temperature=float(semantic_data.get("temperature", defaults.temperature)),
        max_output_tokens=int(semantic_data.get("max_output_tokens", defaults.max_output_tokens)),
        request_timeout=float(semantic_data.get("request_timeout", defaults.request_timeout)),
        cost_per_million_tokens=float(
            semantic_data.get("cost_per_million_tokens", defaults.cost_per_million_tokens)
        ),
    )

    return Config(matching=matching, quota=quota, retry=retry, semantic=semantic)


class Settings:
    """Deployment settings loaded from environment variables."""

    # Gemini API
    GEMINI_API_URL: str = os.environ.get(
        "GEMINI_API_URL",
        "https://generativelanguage.googleapis.com/v1beta/models"
    )
    GEMINI_MODEL: str = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")

    # Database
    DB_PATH: str = os.environ.get("HARVESTER_DB_PATH", "data/harvester.db")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
