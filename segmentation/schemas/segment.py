"""Segment and execution plan schemas.

A segmentation is a closed set of ``Segment`` records plus the staged
``ExecutionPlan`` derived from their dependencies. Both are validated once at
construction and frozen afterwards; the coordinator never mutates them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

SegmentType = Literal[
    "entity",
    "relation",
    "constraint",
    "intent",
    "context",
    "comparison",
    "synthesis",
]
ComplexityTier = Literal["tiny", "small", "medium", "large"]
SearchStrategy = Literal["factual", "exploratory", "comparative", "temporal"]
AssignedTool = Literal["fetch", "xmlhttp", "code_exec", "mcp", "ocr"]
SegmentationStrategy = Literal["comparison", "sequential", "complex", "simple", "custom"]

COMPLEXITY_TIERS: Tuple[ComplexityTier, ...] = ("tiny", "small", "medium", "large")


def next_tier(tier: ComplexityTier) -> ComplexityTier:
    """Return the next more capable tier (``large`` stays ``large``)."""
    index = COMPLEXITY_TIERS.index(tier)
    return COMPLEXITY_TIERS[min(index + 1, len(COMPLEXITY_TIERS) - 1)]


class Segment(BaseModel):
    """One atomic, independently executable sub-query."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, description="Identifier, unique within a segmentation")
    text: str = Field(description="Sub-query sent to the model")
    type: SegmentType = Field(description="Segment type tag")
    priority: int = Field(default=1, description="Lower values are scheduled earlier within a stage")
    dependencies: Tuple[str, ...] = Field(default=(), description="Segments that must complete first")
    estimated_complexity: ComplexityTier = Field(default="small", description="Complexity hint, never authoritative")
    estimated_tokens: int = Field(default=0, ge=0, description="Token estimate for planning")
    search_strategy: SearchStrategy = Field(default="factual", description="Suggested search strategy")
    recommended_model: str = Field(default="", description="Suggested model, callers may override")
    assigned_tool: AssignedTool = Field(default="fetch", description="Suggested execution tool")
    tool_reasoning: str = Field(default="", description="Why the tool was suggested")
    escalated_from: Optional[str] = Field(default=None, description="Segment whose weak result spawned this one")

    @property
    def is_follow_up(self) -> bool:
        return self.escalated_from is not None


class ExecutionPlan(BaseModel):
    """Ordered stages of segment ids; members of one stage may run concurrently."""

    model_config = ConfigDict(frozen=True)

    stages: Tuple[Tuple[str, ...], ...] = Field(description="Stages in execution order")
    stage_durations_ms: Tuple[float, ...] = Field(default=(), description="Estimated duration per stage")
    estimated_time_ms: float = Field(default=0.0, ge=0.0, description="Sum of stage durations")

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def parallel_groups(self) -> List[Tuple[str, ...]]:
        """Stages with more than one member."""
        return [stage for stage in self.stages if len(stage) > 1]

    @property
    def sequential_order(self) -> List[str]:
        """Every segment id in the order the plan would start them."""
        return [segment_id for stage in self.stages for segment_id in stage]

    def stage_of(self, segment_id: str) -> int:
        """Index of the stage holding ``segment_id``."""
        for index, stage in enumerate(self.stages):
            if segment_id in stage:
                return index
        raise KeyError(f"Segment not in plan: {segment_id}")


class SegmentationResult(BaseModel):
    """Output of ``segment()``: the segments, their plan and planning estimates."""

    query_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Identifier for this segmentation")
    query_hash: str = Field(description="SHA-256 of the normalized query text")
    original_query: str = Field(description="Query as submitted")
    strategy: SegmentationStrategy = Field(description="Segmentation strategy that produced the segments")
    segments: List[Segment] = Field(description="Segments in emission order")
    execution_graph: ExecutionPlan = Field(description="Staged execution plan")
    estimated_tokens: int = Field(ge=0, description="Sum of segment token estimates")
    estimated_time_ms: float = Field(ge=0.0, description="Estimated wall time of the plan")
    cached: bool = Field(default=False, description="Whether this came from the segmentation cache")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def segments_by_id(self) -> Dict[str, Segment]:
        return {segment.id: segment for segment in self.segments}


class SegmentationCacheEntry(BaseModel):
    """Cached segmentation for one normalized query text."""

    query_hash: str
    segmentation: SegmentationResult
    created_at: float = Field(description="Unix timestamp of the first store")
    expires_at: float = Field(description="Unix timestamp after which the entry is a miss")
    usage_count: int = Field(default=1, ge=0)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
