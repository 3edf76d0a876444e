"""
Stage-by-stage execution of a segmentation plan.

Stages run strictly in order. Members of a stage run concurrently, bounded by
``max_parallel_segments``, and each result is merged into the run state as
soon as it lands. Weak results queue a follow-up segment; the queue runs as
one extra escalation stage after the plan.
When every first-stage segment fails the run stops there; later stages are
recorded as failed without running.
"""

import asyncio
import time
from typing import Iterable, List, Optional, Sequence

import structlog
from langsmith import traceable

from libs.common.settings import SegmentationSettings, get_settings
from segmentation.observability.tracing import PerformanceMonitor
from segmentation.runner import SegmentRunner
from segmentation.schemas.execution import (
    CoordinationState,
    QualityAssessment,
    SearchResult,
    SegmentBreakdown,
    SegmentResult,
)
from segmentation.schemas.segment import ExecutionPlan, Segment

logger = structlog.get_logger(__name__)

DEADLINE_EXCEEDED = "query deadline exceeded"
FIRST_STAGE_FAILED = "first stage failed"


class SegmentCoordinator:
    """Executes plans against a ``SegmentRunner``. One ``CoordinationState`` per call."""

    def __init__(
        self,
        runner: SegmentRunner,
        settings: Optional[SegmentationSettings] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.runner = runner
        self.settings = settings or get_settings()
        self.monitor = monitor or PerformanceMonitor()

    @traceable(run_type="chain", name="segment_coordinator", tags=["segmentation", "coordination"])
    async def execute(
        self,
        plan: ExecutionPlan,
        segments: Sequence[Segment],
        query_id: str = "",
        original_query: str = "",
    ) -> CoordinationState:
        """Run every stage of ``plan`` and then the escalation stage, if any."""
        state = CoordinationState(query_id=query_id, original_query=original_query)
        by_id = {segment.id: segment for segment in segments}
        for segment in segments:
            state.register(segment.id)

        loop = asyncio.get_running_loop()
        timeout = self.settings.query_timeout_seconds
        deadline = loop.time() + timeout if timeout else None
        semaphore = asyncio.Semaphore(self.settings.max_parallel_segments)
        follow_ups: List[Segment] = []
        first_stage_failed = False

        logger.info(
            "Coordination started",
            query_id=query_id,
            total_stages=plan.total_stages,
            segments=len(segments),
        )

        for index, stage_ids in enumerate(plan.stages):
            stage = [by_id[segment_id] for segment_id in stage_ids]
            if self._deadline_passed(deadline):
                logger.warning("Skipping stage after query deadline", query_id=query_id, stage=index)
                self._cancel_unfinished(state, stage, DEADLINE_EXCEEDED)
                continue
            if first_stage_failed:
                self._cancel_unfinished(state, stage, FIRST_STAGE_FAILED)
                continue
            await self._run_stage(state, stage, semaphore, deadline, follow_ups)
            state.stage_order.append(list(stage_ids))

            if index == 0 and all(segment_id in state.failed for segment_id in stage_ids):
                logger.error(
                    "Every first-stage segment failed, skipping remaining stages",
                    query_id=query_id,
                    failed=list(stage_ids),
                )
                first_stage_failed = True

        if follow_ups:
            for follow_up in follow_ups:
                state.register(follow_up.id)
                state.follow_ups[follow_up.id] = follow_up
                state.escalation_stage.append(follow_up.id)

            if self._deadline_passed(deadline):
                logger.warning("Skipping escalation stage after query deadline", query_id=query_id)
                self._cancel_unfinished(state, follow_ups, DEADLINE_EXCEEDED)
            else:
                logger.info("Running escalation stage", query_id=query_id, follow_ups=state.escalation_stage)
                await self._run_stage(state, follow_ups, semaphore, deadline, None)
                state.stage_order.append(list(state.escalation_stage))

        logger.info(
            "Coordination completed",
            query_id=query_id,
            completed=len(state.completed),
            failed=len(state.failed),
            escalations=len(state.escalation_stage),
        )
        return state

    async def _run_stage(
        self,
        state: CoordinationState,
        stage: List[Segment],
        semaphore: asyncio.Semaphore,
        deadline: Optional[float],
        follow_ups: Optional[List[Segment]],
    ) -> None:
        start_time = time.time()
        remaining = self._remaining(deadline)

        if len(stage) == 1:
            work = self._execute_segment(state, stage[0], semaphore, follow_ups)
            try:
                if remaining is None:
                    await work
                else:
                    await asyncio.wait_for(work, timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("Query deadline hit mid-stage", query_id=state.query_id, segment_id=stage[0].id)
                self._cancel_unfinished(state, stage, DEADLINE_EXCEEDED)
        else:
            tasks = {
                asyncio.create_task(self._execute_segment(state, segment, semaphore, follow_ups)): segment
                for segment in stage
            }
            try:
                done, pending = await asyncio.wait(tasks, timeout=remaining)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                raise

            if pending:
                logger.warning(
                    "Query deadline hit mid-stage, cancelling in-flight segments",
                    query_id=state.query_id,
                    cancelled=[tasks[task].id for task in pending],
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                self._cancel_unfinished(state, [tasks[task] for task in pending], DEADLINE_EXCEEDED)

            for task in done:
                # Surfaces state machine errors; runner errors are already results
                task.result()

        self.monitor.record_stage((time.time() - start_time) * 1000, len(stage))

    async def _execute_segment(
        self,
        state: CoordinationState,
        segment: Segment,
        semaphore: asyncio.Semaphore,
        follow_ups: Optional[List[Segment]],
    ) -> None:
        async with semaphore:
            state.mark_running(segment)
            try:
                result = await self.runner.run(segment, state.segments)
            except Exception as e:
                logger.error(
                    "Unexpected runner error",
                    segment_id=segment.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result = SegmentResult.failure(segment.id, f"Unexpected runner error: {e}")

        state.record_result(segment, result)
        self.monitor.record_segment(result.execution_time_ms, result.confidence)

        if follow_ups is not None and result.success and result.should_escalate:
            self._queue_follow_up(state, segment, result, follow_ups)

    def _queue_follow_up(
        self,
        state: CoordinationState,
        segment: Segment,
        result: SegmentResult,
        follow_ups: List[Segment],
    ) -> None:
        if not self.settings.enable_escalation or segment.is_follow_up:
            return
        if len(follow_ups) >= self.settings.max_escalations:
            logger.info(
                "Escalation queue full, not spawning follow-up",
                segment_id=segment.id,
                max_escalations=self.settings.max_escalations,
            )
            return

        follow_up = self.runner.build_follow_up(segment, result)
        if follow_up.id in state.status or any(f.id == follow_up.id for f in follow_ups):
            return

        follow_ups.append(follow_up)
        state.log_event(segment.id, "escalated", reasons=result.escalation_reasons, follow_up_id=follow_up.id)
        state.log_event(
            follow_up.id,
            "spawned_child",
            parent_id=segment.id,
            tier=follow_up.estimated_complexity,
        )
        logger.info(
            "Follow-up segment queued",
            segment_id=segment.id,
            follow_up_id=follow_up.id,
            reasons=result.escalation_reasons,
        )

    @staticmethod
    def _cancel_unfinished(state: CoordinationState, segments: Iterable[Segment], reason: str) -> None:
        for segment in segments:
            if state.status.get(segment.id) in ("pending", "running"):
                state.mark_cancelled(segment.id, reason)

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        remaining = self._remaining(deadline)
        return remaining is not None and remaining <= 0


def assess_quality(state: CoordinationState, final_results: Sequence[SearchResult]) -> QualityAssessment:
    """Coarse quality signal for a run."""
    completed = [state.segments[segment_id] for segment_id in state.completed if segment_id in state.segments]
    if not completed:
        return QualityAssessment(accuracy=0.0, completeness=0.0, coherence=0.0, overall=0.0)
    accuracy = sum(r.confidence for r in completed) / len(completed)
    completeness = state.completeness
    coherence = 0.8 if final_results else 0.3
    return QualityAssessment(
        accuracy=accuracy,
        completeness=completeness,
        coherence=coherence,
        overall=(accuracy + completeness + coherence) / 3,
    )


def build_breakdown(state: CoordinationState, segments: Sequence[Segment]) -> List[SegmentBreakdown]:
    """Per-segment accounting, plan segments first, then follow-ups."""
    breakdown = []
    for segment in [*segments, *state.follow_ups.values()]:
        result = state.segments.get(segment.id)
        if result is not None:
            breakdown.append(
                SegmentBreakdown(
                    segment_id=segment.id,
                    type=segment.type,
                    model_used=result.model_used,
                    tokens_used=result.tokens_used,
                    time_ms=result.execution_time_ms,
                    success=result.success,
                    error=result.error,
                    escalated_from=segment.escalated_from,
                )
            )
        elif segment.id in state.failed:
            breakdown.append(
                SegmentBreakdown(
                    segment_id=segment.id,
                    type=segment.type,
                    model_used="none",
                    tokens_used=0,
                    time_ms=0.0,
                    success=False,
                    error=state.failed[segment.id],
                    escalated_from=segment.escalated_from,
                )
            )
    return breakdown


def run_status(state: CoordinationState, plan: Optional[ExecutionPlan] = None) -> str:
    """``completed`` when nothing failed, ``failed`` when the run produced nothing usable."""
    if not state.completed:
        return "failed"
    if plan is not None and plan.stages and all(s in state.failed for s in plan.stages[0]):
        return "failed"
    return "partial" if state.failed else "completed"
