"""Pydantic models for segments, plans and execution results."""

from segmentation.schemas.execution import (
    CoordinatedSearchResult,
    CoordinationEvent,
    CoordinationState,
    Findings,
    GlobalContext,
    QualityAssessment,
    SearchResult,
    SegmentBreakdown,
    SegmentResult,
)
from segmentation.schemas.segment import (
    ExecutionPlan,
    Segment,
    SegmentationCacheEntry,
    SegmentationResult,
)

__all__ = [
    "CoordinatedSearchResult",
    "CoordinationEvent",
    "CoordinationState",
    "ExecutionPlan",
    "Findings",
    "GlobalContext",
    "QualityAssessment",
    "SearchResult",
    "Segment",
    "SegmentBreakdown",
    "SegmentResult",
    "SegmentationCacheEntry",
    "SegmentationResult",
]
