"""
Tests for stage-by-stage coordination.

Tests verify:
- Strict stage ordering and bounded parallelism
- Immediate context merge and context flow to dependents
- Partial failure handling
- Query deadline cancellation
- Escalation stage with a bounded follow-up queue
- Quality assessment and per-segment breakdown
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from libs.common.settings import SegmentationSettings
from segmentation.coordinator import SegmentCoordinator, assess_quality, build_breakdown, run_status
from segmentation.errors import InvalidSegmentTransitionError
from segmentation.graph_builder import ExecutionGraphBuilder
from segmentation.runner import SegmentRunner
from segmentation.schemas.execution import CoordinationState, Findings, SearchResult, SegmentResult
from segmentation.schemas.segment import Segment
from tests.fakes import FakeModelClient, findings_json, query_marker


def make(id, text=None, deps=(), type="entity", tier="tiny", priority=1):
    return Segment(
        id=id,
        text=text or f"question {id}",
        type=type,
        dependencies=deps,
        estimated_complexity=tier,
        priority=priority,
        estimated_tokens=100,
    )


def coordinator_for(client, settings):
    return SegmentCoordinator(SegmentRunner(client, settings), settings)


async def execute(coordinator, segments, query_id="q1"):
    plan = ExecutionGraphBuilder().build(segments)
    return plan, await coordinator.execute(plan, segments, query_id=query_id, original_query="query")


class OrderRecordingClient(FakeModelClient):
    """Records which segment prompts started and finished, in order."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.events = []

    async def complete(self, prompt, options):
        marker = prompt.split("Query: ", 1)[1].split("\n", 1)[0]
        self.events.append(("start", marker))
        try:
            return await super().complete(prompt, options)
        finally:
            self.events.append(("end", marker))


class TestExecution:
    async def test_no_stage_starts_before_previous_stage_is_terminal(self, settings):
        client = OrderRecordingClient(delays={"question a": 0.05, "question b": 0.01})
        segments = [make("a"), make("b"), make("c", deps=("a", "b"))]

        _, state = await execute(coordinator_for(client, settings), segments)

        start_c = client.events.index(("start", "question c"))
        assert client.events.index(("end", "question a")) < start_c
        assert client.events.index(("end", "question b")) < start_c
        assert state.completed == {"a", "b", "c"}
        assert state.stage_order == [["a", "b"], ["c"]]

    async def test_parallel_stage_runs_concurrently_within_limit(self):
        settings = SegmentationSettings(_env_file=None, max_parallel_segments=2, enable_escalation=False)
        client = FakeModelClient(delays={"question": 0.05})
        segments = [make(f"s{i}") for i in range(5)]

        await execute(coordinator_for(client, settings), segments)

        assert client.max_active == 2
        assert len(client.prompts) == 5

    async def test_context_flows_to_dependents(self, settings):
        client = FakeModelClient(
            replies={query_marker("question a"): findings_json(facts=["alpha fact"], entities={"Alpha": "x"})},
        )
        segments = [make("a"), make("b", deps=("a",))]

        _, state = await execute(coordinator_for(client, settings), segments)

        (prompt_b,) = client.prompts_containing(query_marker("question b"))
        assert "Context: alpha fact" in prompt_b
        assert state.global_context.entities["Alpha"] == "x"
        assert "alpha fact" in state.global_context.key_findings

    async def test_failed_segment_does_not_block_dependents(self, settings):
        client = FakeModelClient(replies={query_marker("question a"): RuntimeError("provider down")})
        segments = [make("a"), make("b"), make("c", deps=("a", "b"))]

        plan, state = await execute(coordinator_for(client, settings), segments)

        assert state.failed == {"a": "provider down"}
        assert "c" in state.completed
        (prompt_c,) = client.prompts_containing(query_marker("question c"))
        assert "A general fact" in prompt_c
        assert run_status(state, plan) == "partial"

    async def test_status_transitions_and_log(self, settings):
        segments = [make("a")]

        _, state = await execute(coordinator_for(FakeModelClient(), settings), segments)

        assert state.status == {"a": "completed"}
        actions = [event.action for event in state.log if event.segment_id == "a"]
        assert actions == ["started", "completed", "updated_context"]
        assert len(state.history) == 1

    async def test_unexpected_runner_exception_is_recorded(self, settings):
        runner = SegmentRunner(FakeModelClient(), settings)
        runner.run = AsyncMock(side_effect=KeyError("bad state"))
        coordinator = SegmentCoordinator(runner, settings)

        _, state = await execute(coordinator, [make("a")])

        assert "a" in state.failed
        assert "Unexpected runner error" in state.failed["a"]

    async def test_every_terminal_segment_counted_once(self, settings):
        client = FakeModelClient(replies={query_marker("question b"): TimeoutError("slow")})
        segments = [make("a"), make("b"), make("c", deps=("a",)), make("d", deps=("b", "c"))]

        _, state = await execute(coordinator_for(client, settings), segments)

        assert state.completed.isdisjoint(state.failed)
        assert len(state.completed) + len(state.failed) == 4


class TestDeadline:
    async def test_in_flight_segments_cancelled_and_later_stages_skipped(self):
        settings = SegmentationSettings(_env_file=None, query_timeout_seconds=0.1, enable_escalation=False)
        client = FakeModelClient(delays={"question slow": 5.0})
        segments = [
            make("fast"),
            make("slow", text="question slow"),
            make("after", deps=("fast", "slow")),
        ]

        _, state = await execute(coordinator_for(client, settings), segments)

        assert state.completed == {"fast"}
        assert state.failed["slow"] == "query deadline exceeded"
        assert state.failed["after"] == "query deadline exceeded"
        assert not client.prompts_containing(query_marker("question after"))
        cancelled = [e.segment_id for e in state.log if e.action == "cancelled"]
        assert sorted(cancelled) == ["after", "slow"]

    async def test_single_member_stage_respects_deadline(self):
        settings = SegmentationSettings(_env_file=None, query_timeout_seconds=0.05, enable_escalation=False)
        client = FakeModelClient(delays={"question only": 5.0})

        _, state = await execute(coordinator_for(client, settings), [make("only", text="question only")])

        assert state.failed == {"only": "query deadline exceeded"}
        assert state.status["only"] == "failed"


class TestEscalation:
    async def test_weak_result_spawns_follow_up_in_escalation_stage(self, settings):
        client = FakeModelClient(
            replies={query_marker("question a"): findings_json(facts=[])},
        )
        segments = [make("a", deps=()), make("b")]

        plan, state = await execute(coordinator_for(client, settings), segments)

        assert state.escalation_stage == ["a-broader"]
        assert state.stage_order[-1] == ["a-broader"]
        assert client.prompts_containing(query_marker("question a overview"))
        follow_up = state.follow_ups["a-broader"]
        assert follow_up.escalated_from == "a"
        assert follow_up.estimated_complexity == "small"
        assert "a-broader" in state.completed
        actions = {(e.segment_id, e.action) for e in state.log}
        assert ("a", "escalated") in actions
        assert ("a-broader", "spawned_child") in actions
        # Original result stays in history alongside the follow-up result
        assert sorted(r.segment_id for r in state.history) == ["a", "a-broader", "b"]
        assert state.history[-1].segment_id == "a-broader"

    async def test_follow_ups_do_not_escalate_again(self, settings):
        client = FakeModelClient(default=findings_json(facts=[]))

        _, state = await execute(coordinator_for(client, settings), [make("a")])

        assert state.escalation_stage == ["a-broader"]
        assert state.segments["a-broader"].should_escalate
        assert "a-broader-broader" not in state.status

    async def test_escalation_queue_is_bounded(self):
        settings = SegmentationSettings(_env_file=None, max_escalations=2)
        client = FakeModelClient(default=findings_json(facts=[]))
        segments = [make(f"s{i}") for i in range(4)]

        _, state = await execute(coordinator_for(client, settings), segments)

        assert len(state.escalation_stage) == 2

    async def test_escalation_can_be_disabled(self):
        settings = SegmentationSettings(_env_file=None, enable_escalation=False)
        client = FakeModelClient(default=findings_json(facts=[]))

        _, state = await execute(coordinator_for(client, settings), [make("a")])

        assert state.escalation_stage == []
        assert len(client.prompts) == 1

    async def test_follow_up_uses_higher_tier_options(self, settings):
        client = FakeModelClient(default=findings_json(facts=[]))

        await execute(coordinator_for(client, settings), [make("a", tier="tiny")])

        first, follow_up = client.options
        assert follow_up.max_tokens > first.max_tokens


class TestStateMachine:
    def test_no_backwards_transitions(self):
        state = CoordinationState(query_id="q")
        segment = make("a")
        state.register("a")
        state.mark_running(segment)
        state.record_result(segment, SegmentResult(segment_id="a", success=True, confidence=0.9))

        with pytest.raises(InvalidSegmentTransitionError):
            state.mark_running(segment)
        with pytest.raises(InvalidSegmentTransitionError):
            state.mark_cancelled("a", "late")
        with pytest.raises(InvalidSegmentTransitionError):
            state.register("a")

    def test_unregistered_segment_rejected(self):
        state = CoordinationState(query_id="q")

        with pytest.raises(InvalidSegmentTransitionError):
            state.mark_running(make("ghost"))


class TestQuality:
    def _state(self, confidences, failures):
        state = CoordinationState(query_id="q")
        for segment_id, confidence in confidences.items():
            segment = make(segment_id)
            state.register(segment_id)
            state.mark_running(segment)
            state.record_result(
                segment,
                SegmentResult(segment_id=segment_id, success=True, confidence=confidence, findings=Findings(facts=["f"])),
            )
        for segment_id in failures:
            segment = make(segment_id)
            state.register(segment_id)
            state.mark_running(segment)
            state.record_result(segment, SegmentResult.failure(segment_id, "boom"))
        return state

    def test_quality_scores(self):
        state = self._state({"a": 0.9, "b": 0.7}, ["c", "d"])
        results = [SearchResult(url="https://a", score=0.9)]

        quality = assess_quality(state, results)

        assert quality.completeness == pytest.approx(0.5)
        assert quality.accuracy == pytest.approx(0.8)
        assert quality.coherence == pytest.approx(0.8)
        assert quality.overall == pytest.approx((0.5 + 0.8 + 0.8) / 3)

    def test_completeness_and_failure_ratio_sum_to_one(self):
        state = self._state({"a": 0.9}, ["b", "c"])

        quality = assess_quality(state, [])

        assert quality.completeness + len(state.failed) / state.terminal_count == pytest.approx(1.0)
        assert quality.coherence == pytest.approx(0.3)

    def test_empty_run(self):
        quality = assess_quality(CoordinationState(query_id="q"), [])

        assert quality.completeness == 0.0
        assert quality.accuracy == 0.0

    async def test_breakdown_covers_plan_and_follow_ups(self, settings):
        client = FakeModelClient(
            replies={
                query_marker("question a"): findings_json(facts=[]),
                query_marker("question b"): RuntimeError("nope"),
            }
        )
        segments = [make("a"), make("b")]

        _, state = await execute(coordinator_for(client, settings), segments)
        breakdown = {row.segment_id: row for row in build_breakdown(state, segments)}

        assert set(breakdown) == {"a", "b", "a-broader"}
        assert breakdown["a"].success and breakdown["a"].tokens_used == 42
        assert not breakdown["b"].success and breakdown["b"].error == "nope"
        assert breakdown["a-broader"].escalated_from == "a"


async def test_all_first_stage_failures_mark_run_failed(settings):
    client = FakeModelClient(default=RuntimeError("offline"))
    segments = [make("a"), make("b"), make("c", deps=("a", "b"))]

    plan, state = await execute(coordinator_for(client, settings), segments)

    assert state.completed == set()
    assert run_status(state, plan) == "failed"
    assert assess_quality(state, []).completeness == 0.0


async def test_failed_first_stage_stops_the_run(settings):
    client = FakeModelClient(
        replies={
            query_marker("question a"): RuntimeError("provider down"),
            query_marker("question b"): RuntimeError("provider down"),
        },
        default=findings_json(facts=["would have succeeded"]),
    )
    segments = [make("a"), make("b"), make("c", deps=("a", "b"))]

    plan, state = await execute(coordinator_for(client, settings), segments)
    quality = assess_quality(state, [])

    assert not client.prompts_containing(query_marker("question c"))
    assert state.failed["c"] == "first stage failed"
    assert state.completed == set()
    assert state.stage_order == [["a", "b"]]
    assert run_status(state, plan) == "failed"
    assert quality.completeness == 0.0
    assert quality.overall == 0.0
