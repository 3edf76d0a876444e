"""
Segmented search as a LangGraph state machine.

    01_segment -> 02_coordinate -> 03_compose_answer -> END
         \\-> fail -> END            (segment set could not be planned)

The compose step asks a model to turn the mechanical summary into prose and
falls back to the summary itself when the run failed or the model errors.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Literal, Optional

import structlog
from langgraph.graph import END, StateGraph
from langsmith import traceable
from pydantic import BaseModel, Field

from segmentation.errors import SegmentationConstructionError
from segmentation.llm.client import ModelClient, ModelOptions
from segmentation.llm.prompts import render_answer_prompt
from segmentation.schemas.execution import CoordinatedSearchResult, QualityAssessment, SearchResult
from segmentation.schemas.segment import SegmentationResult
from segmentation.service import SegmentationService

logger = structlog.get_logger(__name__)


class SearchAnswer(BaseModel):
    """Final answer returned by the pipeline."""

    query: str
    answer: str
    summary: str = ""
    status: Literal["completed", "partial", "failed"] = "completed"
    sources: List[SearchResult] = Field(default_factory=list)
    quality: Optional[QualityAssessment] = None
    composed_by: Literal["model", "summary"] = "summary"
    trace_id: str = ""


class SearchPipelineState(BaseModel):
    """State threaded through the pipeline graph."""

    raw_query: str
    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    segmentation: Optional[SegmentationResult] = None
    coordinated: Optional[CoordinatedSearchResult] = None
    answer: Optional[SearchAnswer] = None
    errors: List[str] = Field(default_factory=list)
    node_timings: Dict[str, float] = Field(default_factory=dict)


class SegmentedSearchPipeline:
    """Runs segment, coordinate and compose as a compiled LangGraph graph."""

    def __init__(
        self,
        service: SegmentationService,
        composer: Optional[ModelClient] = None,
        compose_timeout_seconds: Optional[float] = None,
    ):
        self.service = service
        self.composer = composer
        self.compose_timeout_seconds = compose_timeout_seconds or service.settings.segment_timeout_seconds
        self.graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(SearchPipelineState)

        graph.add_node("01_segment", self._segment_node)
        graph.add_node("02_coordinate", self._coordinate_node)
        graph.add_node("03_compose_answer", self._compose_answer_node)
        graph.add_node("fail", self._fail_node)

        graph.set_entry_point("01_segment")
        graph.add_conditional_edges(
            "01_segment",
            self._route_after_segment,
            {"coordinate": "02_coordinate", "fail": "fail"},
        )
        graph.add_edge("02_coordinate", "03_compose_answer")
        graph.add_edge("03_compose_answer", END)
        graph.add_edge("fail", END)

        compiled_graph = graph.compile()
        logger.info("Segmented search pipeline compiled successfully")
        return compiled_graph

    async def run(self, query: str) -> SearchAnswer:
        state = SearchPipelineState(raw_query=query)
        logger.info("Starting segmented search", trace_id=state.trace_id, query_preview=query[:50])

        result = await self.graph.ainvoke(state)
        if isinstance(result, dict):
            state = state.model_copy(update=result)
        else:
            state = result

        logger.info(
            "Segmented search finished",
            trace_id=state.trace_id,
            status=state.answer.status if state.answer else None,
            node_timings=state.node_timings,
        )
        return state.answer

    @staticmethod
    def _route_after_segment(state: SearchPipelineState) -> str:
        return "fail" if state.segmentation is None else "coordinate"

    async def _segment_node(self, state: SearchPipelineState) -> Dict[str, Any]:
        """01_segment: split the query and build its plan."""
        start_time = time.time()
        try:
            segmentation = await self.service.segment(state.raw_query)
        except SegmentationConstructionError as e:
            logger.error("01_segment failed", trace_id=state.trace_id, error=str(e))
            return {
                "errors": [*state.errors, str(e)],
                "node_timings": _timed(state, "01_segment", start_time),
            }

        logger.info(
            "01_segment completed",
            trace_id=state.trace_id,
            strategy=segmentation.strategy,
            segments=len(segmentation.segments),
            cached=segmentation.cached,
        )
        return {"segmentation": segmentation, "node_timings": _timed(state, "01_segment", start_time)}

    async def _coordinate_node(self, state: SearchPipelineState) -> Dict[str, Any]:
        """02_coordinate: execute the plan stage by stage."""
        start_time = time.time()
        coordinated = await self.service.coordinate(state.segmentation)
        logger.info(
            "02_coordinate completed",
            trace_id=state.trace_id,
            status=coordinated.status,
            total_tokens=coordinated.total_tokens,
        )
        return {"coordinated": coordinated, "node_timings": _timed(state, "02_coordinate", start_time)}

    @traceable(run_type="llm", name="03_compose_answer", tags=["segmentation", "composition"])
    async def _compose_answer_node(self, state: SearchPipelineState) -> Dict[str, Any]:
        """03_compose_answer: polish the summary, or fall back to it verbatim."""
        start_time = time.time()
        coordinated = state.coordinated
        summary = coordinated.synthesized_response
        answer_text = summary
        composed_by = "summary"

        if coordinated.status != "failed":
            try:
                answer_text = await self._compose(state.raw_query, coordinated)
                composed_by = "model"
            except Exception as e:
                logger.warning(
                    "Answer composition failed, using mechanical summary",
                    trace_id=state.trace_id,
                    error=str(e),
                )
                answer_text = summary

        answer = SearchAnswer(
            query=state.raw_query,
            answer=answer_text,
            summary=summary,
            status=coordinated.status,
            sources=coordinated.final_results,
            quality=coordinated.quality,
            composed_by=composed_by,
            trace_id=state.trace_id,
        )
        return {"answer": answer, "node_timings": _timed(state, "03_compose_answer", start_time)}

    async def _compose(self, query: str, coordinated: CoordinatedSearchResult) -> str:
        composer = self.composer or self.service.coordinator.runner.router.for_tier("medium")
        sources = [{"title": r.title, "url": r.url} for r in coordinated.final_results[:5]]
        prompt = render_answer_prompt(query, coordinated.synthesized_response, sources)
        settings = self.service.settings

        response = await asyncio.wait_for(
            composer.complete(
                prompt,
                ModelOptions(temperature=settings.model_temperature, max_tokens=settings.model_max_tokens),
            ),
            timeout=self.compose_timeout_seconds,
        )
        text = response.text.strip()
        if not text:
            raise ValueError("Model returned an empty answer")
        return text

    async def _fail_node(self, state: SearchPipelineState) -> Dict[str, Any]:
        """fail: the query could not be turned into an executable plan."""
        reason = "; ".join(state.errors) or "unknown error"
        answer = SearchAnswer(
            query=state.raw_query,
            answer=f"Unable to plan this query: {reason}",
            status="failed",
            trace_id=state.trace_id,
        )
        return {"answer": answer}


def _timed(state: SearchPipelineState, node: str, start_time: float) -> Dict[str, float]:
    return {**state.node_timings, node: (time.time() - start_time) * 1000}
