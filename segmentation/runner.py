"""
Segment runner: executes one segment against a model client.

Steps: filter dependency context, enrich the prompt, call the model with a
per-segment timeout, parse findings, score confidence and flag escalation.
Every problem short of cancellation ends up as a failed ``SegmentResult``.
"""

import asyncio
import json
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from langsmith import traceable
from pydantic import BaseModel, ConfigDict, Field

from libs.common.settings import SegmentationSettings, get_settings
from segmentation.llm.client import ModelClient, ModelRouter, options_for_tier
from segmentation.llm.prompts import render_segment_prompt
from segmentation.schemas.execution import Findings, SearchResult, SegmentResult
from segmentation.schemas.segment import Segment, next_tier

logger = structlog.get_logger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class StructuredFindings(BaseModel):
    """Model reply that parsed as a JSON object."""

    model_config = ConfigDict(frozen=True)

    findings: Findings
    search_results: List[SearchResult] = Field(default_factory=list)


class RawTextFallback(BaseModel):
    """Model reply that was not a JSON object; kept whole as one fact."""

    model_config = ConfigDict(frozen=True)

    text: str

    @property
    def findings(self) -> Findings:
        return Findings(facts=[self.text] if self.text.strip() else [])


ParsedOutput = Union[StructuredFindings, RawTextFallback]


def parse_model_output(text: str, max_facts: int = 10, segment_id: Optional[str] = None) -> ParsedOutput:
    """Parse a reply into structured findings, tolerating markdown code fences."""
    candidate = text.strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        data = json.loads(candidate)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return RawTextFallback(text=text)
    if not isinstance(data, dict):
        return RawTextFallback(text=text)

    findings = Findings(
        entities=_parse_entities(data.get("entities")),
        facts=_unique_strings(data.get("facts"))[:max_facts],
        sources=_parse_sources(data.get("sources")),
        contradictions=_unique_strings(data.get("contradictions")),
    )
    return StructuredFindings(
        findings=findings,
        search_results=_parse_results(data.get("results"), segment_id),
    )


def _parse_entities(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return {str(key): value for key, value in raw.items()}
    if isinstance(raw, list):
        return {str(name): str(name) for name in raw if isinstance(name, (str, int, float))}
    return {}


def _unique_strings(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    seen = set()
    values = []
    for item in raw:
        if item is None or isinstance(item, (dict, list)):
            continue
        value = str(item).strip()
        if value and value not in seen:
            seen.add(value)
            values.append(value)
    return values


def _parse_sources(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    flattened = [item.get("url") or item.get("title") if isinstance(item, dict) else item for item in raw]
    return _unique_strings(flattened)


def _parse_results(raw: Any, segment_id: Optional[str]) -> List[SearchResult]:
    if not isinstance(raw, list):
        return []
    results = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        try:
            score = float(item.get("score", 0.5))
        except (TypeError, ValueError):
            score = 0.5
        results.append(
            SearchResult(
                url=str(item["url"]),
                title=str(item.get("title") or ""),
                snippet=str(item.get("snippet") or ""),
                score=min(1.0, max(0.0, score)),
                segment_id=segment_id,
            )
        )
    return results


class SegmentRunner:
    """Runs single segments. Stateless apart from its client and settings."""

    def __init__(
        self,
        client: Union[ModelClient, ModelRouter],
        settings: Optional[SegmentationSettings] = None,
    ):
        self.router = client if isinstance(client, ModelRouter) else ModelRouter(default=client)
        self.settings = settings or get_settings()

    def select_context(
        self,
        segment: Segment,
        dependency_results: Mapping[str, SegmentResult],
    ) -> Dict[str, SegmentResult]:
        """Successful dependency results above the context confidence threshold."""
        threshold = self.settings.context_confidence_threshold
        selected = {}
        for dep_id in segment.dependencies:
            result = dependency_results.get(dep_id)
            if result is None or not result.success:
                continue
            if result.confidence > threshold:
                selected[dep_id] = result
            else:
                logger.debug(
                    "Withholding low-confidence dependency context",
                    segment_id=segment.id,
                    dependency_id=dep_id,
                    confidence=result.confidence,
                )
        return selected

    def build_prompt(self, segment: Segment, context: Mapping[str, SegmentResult]) -> str:
        per_dependency = self.settings.context_facts_per_dependency
        facts: List[str] = []
        for result in context.values():
            facts.extend(result.findings.facts[:per_dependency])
        return render_segment_prompt(segment.type, segment.text, facts)

    @traceable(run_type="chain", name="segment_runner", tags=["segmentation", "segment"])
    async def run(
        self,
        segment: Segment,
        dependency_results: Optional[Mapping[str, SegmentResult]] = None,
    ) -> SegmentResult:
        """Execute ``segment``; failures come back as ``success=False`` results."""
        start_time = time.time()
        tier = segment.estimated_complexity
        client = self.router.for_tier(tier)
        model_name = self.router.model_name(tier)

        context = self.select_context(segment, dependency_results or {})
        prompt = self.build_prompt(segment, context)
        timeout = self.settings.segment_timeout_seconds

        logger.info(
            "Segment execution started",
            segment_id=segment.id,
            segment_type=segment.type,
            tier=tier,
            context_segments=list(context),
        )

        try:
            response = await asyncio.wait_for(
                client.complete(prompt, options_for_tier(self.settings, tier)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Segment timed out", segment_id=segment.id, timeout_seconds=timeout)
            return SegmentResult.failure(
                segment.id,
                f"Segment timed out after {timeout}s",
                execution_time_ms=_elapsed_ms(start_time),
                model_used=model_name,
            )
        except Exception as e:
            logger.warning(
                "Segment execution failed",
                segment_id=segment.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SegmentResult.failure(
                segment.id,
                str(e) or type(e).__name__,
                execution_time_ms=_elapsed_ms(start_time),
                model_used=model_name,
            )

        parsed = parse_model_output(response.text, self.settings.max_facts_per_segment, segment.id)
        findings = parsed.findings
        search_results = parsed.search_results if isinstance(parsed, StructuredFindings) else []
        confidence = self.score_confidence(parsed)
        reasons = self.escalation_reasons(segment, confidence, findings)

        result = SegmentResult(
            segment_id=segment.id,
            success=True,
            confidence=confidence,
            findings=findings,
            search_results=search_results,
            tokens_used=response.tokens_used,
            execution_time_ms=_elapsed_ms(start_time),
            raw_output=response.text,
            model_used=response.model if response.model != "unknown" else model_name,
            output_format="structured" if isinstance(parsed, StructuredFindings) else "raw_text",
            should_escalate=bool(reasons),
            escalation_reasons=reasons,
            next_recommendations=self.recommendations(findings),
        )

        logger.info(
            "Segment execution completed",
            segment_id=segment.id,
            confidence=confidence,
            facts=len(findings.facts),
            tokens_used=result.tokens_used,
            should_escalate=result.should_escalate,
        )
        return result

    def score_confidence(self, parsed: ParsedOutput) -> float:
        settings = self.settings
        if isinstance(parsed, StructuredFindings) and parsed.search_results:
            average = sum(r.score for r in parsed.search_results) / len(parsed.search_results)
            return min(settings.max_confidence, average * settings.relevance_boost)
        if isinstance(parsed, StructuredFindings):
            return settings.structured_confidence
        return settings.fallback_confidence

    def escalation_reasons(self, segment: Segment, confidence: float, findings: Findings) -> List[str]:
        reasons = []
        if confidence < self.settings.escalation_confidence_threshold:
            reasons.append("low_confidence")
        if not findings.facts:
            reasons.append("no_facts")
        if findings.contradictions:
            reasons.append("contradictions")
        if segment.type == "synthesis" and segment.estimated_complexity != "large":
            reasons.append("synthesis_below_large")
        return reasons

    def recommendations(self, findings: Findings) -> List[str]:
        suggestions = [f"Explore {name} in more detail" for name in list(findings.entities)[:3]]
        if findings.contradictions:
            suggestions.append("Clarify contradictory information")
        return suggestions

    def build_follow_up(self, segment: Segment, result: SegmentResult) -> Segment:
        """Escalation segment for a weak result: one tier up, same dependencies."""
        tier = next_tier(segment.estimated_complexity)
        if not result.findings.facts:
            follow_up_id = f"{segment.id}-broader"
            text = f"{segment.text} overview".strip()
        else:
            follow_up_id = f"{segment.id}-escalated"
            text = segment.text

        return segment.model_copy(
            update={
                "id": follow_up_id,
                "text": text,
                "estimated_complexity": tier,
                "recommended_model": self.settings.model_suggestions.get(tier, segment.recommended_model),
                "escalated_from": segment.id,
            }
        )


def _elapsed_ms(start_time: float) -> float:
    return (time.time() - start_time) * 1000
