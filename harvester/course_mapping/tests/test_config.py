"""
Tests for configuration loading.

Run with: pytest harvester/course_mapping/tests/test_config.py -v
"""

import json

import pytest

from harvester.course_mapping.config import (
    Config,
    QuotaSettings,
    RetrySettings,
    get_settings,
    load_config,
)


def write_config(tmp_path, data):
    path = tmp_path / "mapping_config.json"
    path.write_text(json.dumps(data))
    return path


class TestLoadConfig:

    def test_bundled_defaults(self):
        config = load_config()

        assert config.matching.similarity_threshold == 88.0
        assert config.matching.code_prefix_length == 7
        assert config.quota.rate_limit_per_minute == 19
        assert config.retry.max_attempts == 3
        assert config.semantic.enabled is True
        assert config.semantic.batch_size == 20

    def test_bundled_file_matches_dataclass_defaults(self):
        assert load_config() == Config()

    def test_partial_file_falls_back_to_defaults(self, tmp_path):
        path = write_config(tmp_path, {"semantic": {"batch_size": 5, "enabled": False}})

        config = load_config(path)

        assert config.semantic.batch_size == 5
        assert config.semantic.enabled is False
        assert config.semantic.model_id == "gemini-2.0-flash"
        assert config.matching.similarity_threshold == 88.0

    def test_effective_rate_above_nominal_rejected(self, tmp_path):
        path = write_config(tmp_path, {"quota": {"nominal_rate_limit_per_minute": 20, "rate_limit_per_minute": 21}})

        with pytest.raises(ValueError):
            load_config(path)

    def test_zero_attempts_rejected(self, tmp_path):
        path = write_config(tmp_path, {"retry": {"max_attempts": 0}})

        with pytest.raises(ValueError):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.json")


class TestSettings:

    def test_daily_limit_from_effective_rate(self):
        assert QuotaSettings().daily_limit == 19 * 1440 == 27360

    def test_backoff_doubles_and_caps(self):
        retry = RetrySettings(base_delay=1.0, max_delay=5.0)

        assert [retry.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_settings_cached(self):
        assert get_settings() is get_settings()
