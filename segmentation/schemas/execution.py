"""Execution-time schemas: segment results, coordination state and final output.

``SegmentResult`` records are frozen once written. A retried or escalated
segment produces a new record; ``CoordinationState.history`` keeps every record
for auditing while ``CoordinationState.segments`` points at the latest one.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from segmentation.errors import InvalidSegmentTransitionError
from segmentation.schemas.segment import Segment, SegmentationResult, SegmentType

SegmentStatus = Literal["pending", "running", "completed", "failed"]
CoordinationAction = Literal[
    "started",
    "completed",
    "failed",
    "updated_context",
    "escalated",
    "spawned_child",
    "cancelled",
]
OutputFormat = Literal["structured", "raw_text", "none"]

_ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


class Findings(BaseModel):
    """Normalized structured output of one segment."""

    model_config = ConfigDict(frozen=True)

    entities: Dict[str, Any] = Field(default_factory=dict, description="Entity name to value")
    facts: List[str] = Field(default_factory=list, description="Ordered key facts")
    sources: List[str] = Field(default_factory=list, description="Unique source identifiers")
    contradictions: List[str] = Field(default_factory=list, description="Conflicting statements found")

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.facts or self.sources or self.contradictions)


class SearchResult(BaseModel):
    """A search-style result surfaced by a segment."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Stable key used for deduplication")
    title: str = Field(default="")
    snippet: str = Field(default="")
    score: float = Field(default=0.5, ge=0.0, le=1.0, description="Relevance/quality score")
    segment_id: Optional[str] = Field(default=None, description="Segment that produced the result")


class SegmentResult(BaseModel):
    """Outcome of one segment execution attempt."""

    model_config = ConfigDict(frozen=True)

    segment_id: str
    success: bool
    confidence: float = Field(ge=0.0, le=1.0)
    findings: Findings = Field(default_factory=Findings)
    search_results: List[SearchResult] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0)
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    raw_output: str = ""
    error: Optional[str] = None
    model_used: str = "unknown"
    output_format: OutputFormat = "none"
    should_escalate: bool = False
    escalation_reasons: List[str] = Field(default_factory=list)
    next_recommendations: List[str] = Field(default_factory=list)

    @classmethod
    def failure(
        cls,
        segment_id: str,
        error: str,
        execution_time_ms: float = 0.0,
        model_used: str = "unknown",
    ) -> "SegmentResult":
        """Failed result with zero confidence and empty findings."""
        return cls(
            segment_id=segment_id,
            success=False,
            confidence=0.0,
            execution_time_ms=execution_time_ms,
            error=error,
            model_used=model_used,
        )


class CoordinationEvent(BaseModel):
    """One entry of the append-only coordination log."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    segment_id: str
    action: CoordinationAction
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GlobalContext(BaseModel):
    """Findings merged across all segments of one run."""

    entities: Dict[str, Any] = Field(default_factory=dict, description="Last write wins per key")
    key_findings: List[str] = Field(default_factory=list, description="Append-only facts")


class CoordinationState(BaseModel):
    """Mutable record of one coordinator run. Never shared between runs."""

    query_id: str
    original_query: str = ""
    segments: Dict[str, SegmentResult] = Field(default_factory=dict)
    global_context: GlobalContext = Field(default_factory=GlobalContext)
    completed: Set[str] = Field(default_factory=set)
    failed: Dict[str, str] = Field(default_factory=dict)
    status: Dict[str, SegmentStatus] = Field(default_factory=dict)
    log: List[CoordinationEvent] = Field(default_factory=list)
    history: List[SegmentResult] = Field(default_factory=list)
    stage_order: List[List[str]] = Field(default_factory=list, description="Stages as actually executed")
    escalation_stage: List[str] = Field(default_factory=list, description="Follow-up segments run after the plan")
    follow_ups: Dict[str, Segment] = Field(default_factory=dict, description="Follow-up segments by id")
    started_at: float = Field(default_factory=time.time)

    def register(self, segment_id: str) -> None:
        """Put a segment into the ``pending`` state."""
        if segment_id in self.status:
            raise InvalidSegmentTransitionError(segment_id, self.status[segment_id], "pending")
        self.status[segment_id] = "pending"

    def log_event(self, segment_id: str, action: CoordinationAction, **metadata: Any) -> None:
        self.log.append(CoordinationEvent(segment_id=segment_id, action=action, metadata=metadata))

    def mark_running(self, segment: Segment) -> None:
        self._transition(segment.id, "running")
        self.log_event(segment.id, "started", text=segment.text)

    def record_result(self, segment: Segment, result: SegmentResult) -> None:
        """Store a terminal result and merge its findings into the global context.

        Contains no await points, so concurrent sibling segments never
        interleave their merges.
        """
        self._transition(segment.id, "completed" if result.success else "failed")
        self.segments[segment.id] = result
        self.history.append(result)

        if result.success:
            self.completed.add(segment.id)
            self.log_event(
                segment.id,
                "completed",
                success=True,
                tokens_used=result.tokens_used,
                confidence=result.confidence,
            )
            self._merge_findings(segment, result)
        else:
            self.failed[segment.id] = result.error or "unknown error"
            self.log_event(segment.id, "failed", success=False, error=result.error)

    def mark_cancelled(self, segment_id: str, reason: str) -> None:
        """Terminate a pending or running segment without a usable result."""
        self._transition(segment_id, "failed")
        self.failed[segment_id] = reason
        self.log_event(segment_id, "cancelled", reason=reason)

    def _merge_findings(self, segment: Segment, result: SegmentResult) -> None:
        self.global_context.entities.update(result.findings.entities)
        self.global_context.key_findings.extend(result.findings.facts)
        self.log_event(
            segment.id,
            "updated_context",
            entities_count=len(result.findings.entities),
            facts_count=len(result.findings.facts),
        )

    def _transition(self, segment_id: str, requested: SegmentStatus) -> None:
        current = self.status.get(segment_id)
        if current is None:
            raise InvalidSegmentTransitionError(segment_id, "unregistered", requested)
        if requested not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidSegmentTransitionError(segment_id, current, requested)
        self.status[segment_id] = requested

    @property
    def terminal_count(self) -> int:
        return len(self.completed) + len(self.failed)

    @property
    def completeness(self) -> float:
        total = self.terminal_count
        return len(self.completed) / total if total else 0.0


class QualityAssessment(BaseModel):
    accuracy: float = Field(ge=0.0, le=1.0)
    completeness: float = Field(ge=0.0, le=1.0)
    coherence: float = Field(ge=0.0, le=1.0)
    overall: float = Field(ge=0.0, le=1.0)


class SegmentBreakdown(BaseModel):
    segment_id: str
    type: SegmentType
    model_used: str
    tokens_used: int
    time_ms: float
    success: bool
    error: Optional[str] = None
    escalated_from: Optional[str] = None


class CoordinatedSearchResult(BaseModel):
    """Output of ``coordinate()``."""

    query_id: str
    original_query: str
    segmentation: SegmentationResult
    coordination_state: CoordinationState
    final_results: List[SearchResult] = Field(default_factory=list)
    synthesized_response: str = ""
    total_tokens: int = 0
    total_time_ms: float = 0.0
    segment_breakdown: List[SegmentBreakdown] = Field(default_factory=list)
    quality: QualityAssessment
    status: Literal["completed", "partial", "failed"] = "completed"

    @property
    def failed_segments(self) -> Dict[str, str]:
        return dict(self.coordination_state.failed)
