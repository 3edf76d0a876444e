"""Settings for the query segmentation engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SegmentationSettings(BaseSettings):
    """Engine settings, read from ``SEGMENTATION_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SEGMENTATION_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = True

    # Runner thresholds (empirical defaults carried over unchanged)
    context_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    escalation_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    structured_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    fallback_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    max_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    relevance_boost: float = Field(default=1.2, gt=0.0)
    context_facts_per_dependency: int = Field(default=3, ge=0)
    max_facts_per_segment: int = Field(default=10, ge=1)

    # Execution
    segment_timeout_seconds: float = Field(default=30.0, gt=0.0)
    query_timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    max_parallel_segments: int = Field(default=5, ge=1)
    enable_escalation: bool = True
    max_escalations: int = Field(default=3, ge=0)
    assumed_tokens_per_second: float = Field(default=50.0, gt=0.0)

    # Caching
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=300, ge=1)
    cache_max_entries: int = Field(default=1000, ge=1)
    redis_url: Optional[str] = None

    # Synthesis
    final_results_limit: int = Field(default=10, ge=1)
    summary_findings_limit: int = Field(default=5, ge=1)

    # Model defaults
    model_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    model_max_tokens: int = Field(default=1000, ge=1)
    openai_model: str = "gpt-4o-mini"
    model_suggestions: Dict[str, str] = Field(
        default_factory=lambda: {
            "tiny": "gpt-4o-mini",
            "small": "gpt-4o-mini",
            "medium": "gpt-4o",
            "large": "gpt-4o",
        }
    )

    @field_validator("model_suggestions")
    @classmethod
    def validate_model_suggestions(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Every complexity tier needs a suggested model."""
        missing = {"tiny", "small", "medium", "large"} - set(v)
        if missing:
            raise ValueError(f"Model suggestions missing tiers: {sorted(missing)}")
        return v

    @property
    def cache_backend(self) -> str:
        """Name of the cache backend implied by the configuration."""
        if not self.cache_enabled:
            return "disabled"
        return "redis" if self.redis_url else "memory"


@lru_cache
def get_settings() -> SegmentationSettings:
    """Get cached settings instance."""
    return SegmentationSettings()
