"""Tests for engine settings."""

import os
import tempfile

import pytest
from pydantic import ValidationError

from libs.common.settings import SegmentationSettings, get_settings


class TestSettings:
    """Test settings configuration."""

    def test_defaults(self):
        settings = SegmentationSettings(_env_file=None)

        assert settings.context_confidence_threshold == 0.6
        assert settings.escalation_confidence_threshold == 0.5
        assert settings.max_parallel_segments == 5
        assert settings.query_timeout_seconds is None
        assert settings.cache_ttl_seconds == 300
        assert settings.cache_backend == "memory"

    def test_settings_from_env_file(self):
        """Values are read from a .env file with the SEGMENTATION_ prefix."""
        env_vars = {
            "SEGMENTATION_MAX_PARALLEL_SEGMENTS": "2",
            "SEGMENTATION_QUERY_TIMEOUT_SECONDS": "12.5",
            "SEGMENTATION_REDIS_URL": "redis://localhost:6379/0",
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".env", delete=False) as f:
            for key, value in env_vars.items():
                f.write(f"{key}={value}\n")
            env_file = f.name

        try:
            settings = SegmentationSettings(_env_file=env_file)
            assert settings.max_parallel_segments == 2
            assert settings.query_timeout_seconds == 12.5
            assert settings.cache_backend == "redis"
        finally:
            os.unlink(env_file)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SEGMENTATION_ENABLE_ESCALATION", "false")
        monkeypatch.setenv("SEGMENTATION_MAX_ESCALATIONS", "7")

        settings = SegmentationSettings(_env_file=None)

        assert settings.enable_escalation is False
        assert settings.max_escalations == 7

    def test_cache_disabled(self):
        settings = SegmentationSettings(_env_file=None, cache_enabled=False, redis_url="redis://localhost")

        assert settings.cache_backend == "disabled"

    def test_model_suggestions_need_every_tier(self):
        with pytest.raises(ValidationError) as exc_info:
            SegmentationSettings(_env_file=None, model_suggestions={"tiny": "m", "small": "m"})
        assert "missing tiers" in str(exc_info.value)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("context_confidence_threshold", 1.5),
            ("max_parallel_segments", 0),
            ("segment_timeout_seconds", 0),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            SegmentationSettings(_env_file=None, **{field: value})

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
