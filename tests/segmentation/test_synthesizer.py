"""Tests for result ranking and the mechanical summary."""

import pytest

from libs.common.settings import SegmentationSettings
from segmentation.schemas.execution import CoordinationState, Findings, SearchResult, SegmentResult
from segmentation.schemas.segment import ExecutionPlan, Segment
from segmentation.synthesizer import ResultSynthesizer


def record(state, segment_id, result):
    segment = Segment(id=segment_id, text=segment_id, type="entity")
    state.register(segment_id)
    state.mark_running(segment)
    state.record_result(segment, result)


def success(segment_id, facts=(), sources=(), results=(), confidence=0.85):
    return SegmentResult(
        segment_id=segment_id,
        success=True,
        confidence=confidence,
        findings=Findings(facts=list(facts), sources=list(sources)),
        search_results=list(results),
    )


@pytest.fixture
def synthesizer(settings):
    return ResultSynthesizer(settings)


class TestRanking:
    def test_dedupes_by_url_keeping_higher_score(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", success("a", results=[SearchResult(url="https://x", title="low", score=0.4)]))
        record(state, "b", success("b", results=[SearchResult(url="https://x", title="high", score=0.9)]))

        results = synthesizer.rank_results(state)

        assert len(results) == 1
        assert results[0].title == "high"

    def test_sources_scored_by_segment_confidence(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", success("a", sources=["https://doc"], confidence=0.6))
        record(state, "b", success("b", results=[SearchResult(url="https://web", score=0.7)]))

        results = synthesizer.rank_results(state)

        assert [r.url for r in results] == ["https://web", "https://doc"]
        assert results[1].score == pytest.approx(0.6)
        assert results[1].segment_id == "a"

    def test_capped_and_sorted(self):
        synthesizer = ResultSynthesizer(SegmentationSettings(_env_file=None, final_results_limit=3))
        state = CoordinationState(query_id="q")
        results = [SearchResult(url=f"https://{i}", score=i / 10) for i in range(8)]
        record(state, "a", success("a", results=results))

        ranked = synthesizer.rank_results(state)

        assert [r.score for r in ranked] == [0.7, 0.6, 0.5]

    def test_failed_segments_contribute_nothing(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", SegmentResult.failure("a", "boom"))

        assert synthesizer.rank_results(state) == []


class TestSummary:
    def test_success_summary_lists_top_findings(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", success("a", facts=[f"fact {i}" for i in range(4)]))
        record(state, "b", success("b", facts=["fact 4", "fact 5"]))

        summary = synthesizer.summarize(state)

        assert summary.startswith("Segmented search completed (2/2 segments).")
        assert "Key findings:\n1. fact 0\n2. fact 1" in summary
        assert "5. fact 4" in summary
        assert "fact 5" not in summary

    def test_partial_summary_names_failed_segments(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", success("a", facts=["kept"]))
        record(state, "b", SegmentResult.failure("b", "boom"))

        summary = synthesizer.summarize(state)

        assert summary.startswith("Segmented search completed (1/2 segments).")
        assert "Failed segments: b" in summary

    def test_all_first_stage_failed_never_claims_success(self, synthesizer):
        state = CoordinationState(query_id="q")
        record(state, "a", SegmentResult.failure("a", "provider down"))
        record(state, "b", SegmentResult.failure("b", "timeout"))
        record(state, "c", success("c", facts=["orphan"]))
        plan = ExecutionPlan(stages=(("a", "b"), ("c",)))

        results, summary = synthesizer.synthesize(state, plan)

        assert "completed (" not in summary
        assert summary.startswith("Segmented search failed (1/3 segments completed).")
        assert "- a: provider down" in summary
        assert "- b: timeout" in summary

    def test_nothing_completed(self, synthesizer):
        state = CoordinationState(query_id="q")

        summary = synthesizer.summarize(state)

        assert summary == "Segmented search failed (0/0 segments completed)."
