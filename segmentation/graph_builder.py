"""Execution plan construction by Kahn-style topological layering."""

from typing import Dict, List, Sequence

import structlog

from segmentation.errors import CircularDependencyError, MalformedSegmentationError
from segmentation.schemas.segment import ExecutionPlan, Segment

logger = structlog.get_logger(__name__)


class ExecutionGraphBuilder:
    """
    Builds an ``ExecutionPlan`` from a segment set.

    Each stage holds every not-yet-scheduled segment whose dependencies are all
    scheduled, ordered by ascending priority with insertion order breaking
    ties. A pass that schedules nothing while segments remain is a cycle.
    """

    def __init__(self, tokens_per_second: float = 50.0):
        self.tokens_per_second = tokens_per_second

    def validate(self, segments: Sequence[Segment]) -> None:
        """Reject empty ids, duplicate ids and dependencies on unknown segments."""
        seen = set()
        for segment in segments:
            if not segment.id:
                raise MalformedSegmentationError("Segment with empty id")
            if segment.id in seen:
                raise MalformedSegmentationError(f"Duplicate segment id: {segment.id}")
            seen.add(segment.id)

        for segment in segments:
            unknown = [dep for dep in segment.dependencies if dep not in seen]
            if unknown:
                raise MalformedSegmentationError(
                    f"Segment {segment.id} depends on unknown segments: {', '.join(unknown)}"
                )

    def build(self, segments: Sequence[Segment], strategy: str = "custom") -> ExecutionPlan:
        if not segments:
            raise MalformedSegmentationError("Cannot build an execution plan without segments")
        self.validate(segments)

        order = {segment.id: index for index, segment in enumerate(segments)}
        scheduled: Dict[str, int] = {}
        stages: List[List[Segment]] = []

        while len(scheduled) < len(segments):
            ready = [
                segment
                for segment in segments
                if segment.id not in scheduled
                and all(dep in scheduled for dep in segment.dependencies)
            ]
            if not ready:
                unresolved = [s.id for s in segments if s.id not in scheduled]
                logger.error(
                    "Circular dependency detected",
                    strategy=strategy,
                    unresolved=unresolved,
                )
                raise CircularDependencyError(strategy, unresolved)

            ready.sort(key=lambda s: (s.priority, order[s.id]))
            for segment in ready:
                scheduled[segment.id] = len(stages)
            stages.append(ready)

        durations = tuple(self.stage_duration_ms(stage) for stage in stages)
        plan = ExecutionPlan(
            stages=tuple(tuple(s.id for s in stage) for stage in stages),
            stage_durations_ms=durations,
            estimated_time_ms=sum(durations),
        )

        logger.info(
            "Execution plan built",
            strategy=strategy,
            total_stages=plan.total_stages,
            parallel_groups=len(plan.parallel_groups),
            estimated_time_ms=plan.estimated_time_ms,
        )
        return plan

    def stage_duration_ms(self, stage: Sequence[Segment]) -> float:
        """Slowest member's token estimate at the assumed throughput."""
        if not stage:
            return 0.0
        return max(s.estimated_tokens / self.tokens_per_second for s in stage) * 1000
