"""Final result ranking and mechanical summary for a coordinator run."""

from typing import Dict, List, Optional, Tuple

import structlog

from libs.common.settings import SegmentationSettings, get_settings
from segmentation.coordinator import run_status
from segmentation.schemas.execution import CoordinationState, SearchResult
from segmentation.schemas.segment import ExecutionPlan

logger = structlog.get_logger(__name__)


class ResultSynthesizer:
    """
    Merges per-segment results into one ranked list and a text summary.

    Results are deduplicated by URL (higher score wins). Plain source strings
    count as results scored by their segment's confidence.
    """

    def __init__(self, settings: Optional[SegmentationSettings] = None):
        self.settings = settings or get_settings()

    def rank_results(self, state: CoordinationState) -> List[SearchResult]:
        best: Dict[str, SearchResult] = {}

        for segment_id, result in state.segments.items():
            if not result.success:
                continue
            candidates = list(result.search_results)
            candidates.extend(
                SearchResult(url=source, title=source, score=result.confidence, segment_id=segment_id)
                for source in result.findings.sources
            )
            for candidate in candidates:
                previous = best.get(candidate.url)
                if previous is None or candidate.score > previous.score:
                    best[candidate.url] = candidate

        ranked = sorted(best.values(), key=lambda r: r.score, reverse=True)
        return ranked[: self.settings.final_results_limit]

    def summarize(self, state: CoordinationState, plan: Optional[ExecutionPlan] = None) -> str:
        completed = len(state.completed)
        total = state.terminal_count

        if run_status(state, plan) == "failed":
            lines = [f"Segmented search failed ({completed}/{total} segments completed)."]
            if state.failed:
                lines.append("")
                lines.append("Errors:")
                lines.extend(f"- {segment_id}: {error}" for segment_id, error in state.failed.items())
            return "\n".join(lines)

        summary = f"Segmented search completed ({completed}/{total} segments)."
        findings = state.global_context.key_findings[: self.settings.summary_findings_limit]
        if findings:
            numbered = "\n".join(f"{i}. {fact}" for i, fact in enumerate(findings, 1))
            summary += f"\n\nKey findings:\n{numbered}"
        else:
            summary += "\n\nNo key findings were extracted."

        if state.failed:
            summary += "\n\nFailed segments: " + ", ".join(sorted(state.failed))
        return summary

    def synthesize(
        self,
        state: CoordinationState,
        plan: Optional[ExecutionPlan] = None,
    ) -> Tuple[List[SearchResult], str]:
        results = self.rank_results(state)
        summary = self.summarize(state, plan)
        logger.info(
            "Results synthesized",
            query_id=state.query_id,
            final_results=len(results),
            completed=len(state.completed),
            failed=len(state.failed),
        )
        return results, summary

