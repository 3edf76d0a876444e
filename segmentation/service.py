"""
Public entry points: ``segment()``, ``coordinate()`` and ``search()``.

The service owns the segmenter, plan builder, runner, coordinator, synthesizer,
cache and performance monitor for one configuration. Nothing is global; build
one service per configuration and share it between requests.
"""

import time
from typing import Any, Dict, Optional, Sequence, Union

import structlog

from libs.caching.redis_client import create_redis_client
from libs.caching.segmentation_cache import SegmentationCache, create_segmentation_cache, hash_query
from libs.common.settings import SegmentationSettings, get_settings
from segmentation.coordinator import SegmentCoordinator, assess_quality, build_breakdown, run_status
from segmentation.errors import SegmentationConstructionError
from segmentation.graph_builder import ExecutionGraphBuilder
from segmentation.llm.client import ModelClient, ModelRouter, build_default_router
from segmentation.observability.tracing import PerformanceMonitor, configure_logging
from segmentation.runner import SegmentRunner
from segmentation.schemas.execution import CoordinatedSearchResult
from segmentation.schemas.segment import (
    Segment,
    SegmentationCacheEntry,
    SegmentationResult,
    SegmentationStrategy,
)
from segmentation.segmenter import QuerySegmenter
from segmentation.synthesizer import ResultSynthesizer

logger = structlog.get_logger(__name__)


class SegmentationService:
    """Segments queries, executes the resulting plans and synthesizes answers."""

    def __init__(
        self,
        client: Optional[Union[ModelClient, ModelRouter]] = None,
        settings: Optional[SegmentationSettings] = None,
        cache: Optional[SegmentationCache] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else create_segmentation_cache(self.settings)
        self.monitor = monitor or PerformanceMonitor()
        self.segmenter = QuerySegmenter(self.settings)
        self.graph_builder = ExecutionGraphBuilder(self.settings.assumed_tokens_per_second)
        self.synthesizer = ResultSynthesizer(self.settings)
        self._client = client
        self._coordinator: Optional[SegmentCoordinator] = None

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[SegmentationSettings] = None,
        client: Optional[Union[ModelClient, ModelRouter]] = None,
    ) -> "SegmentationService":
        """Build a service, connecting the Redis cache backend when configured."""
        settings = settings or get_settings()
        configure_logging(settings.log_level, settings.json_logs)
        cache = None
        if settings.cache_backend == "redis":
            redis_client = await create_redis_client(settings.redis_url)
            cache = create_segmentation_cache(settings, redis_client=redis_client)
        return cls(client=client, settings=settings, cache=cache)

    @property
    def coordinator(self) -> SegmentCoordinator:
        # The default router needs provider credentials, so build it on first use
        if self._coordinator is None:
            client = self._client if self._client is not None else build_default_router(self.settings)
            runner = SegmentRunner(client, self.settings)
            self._coordinator = SegmentCoordinator(runner, self.settings, self.monitor)
        return self._coordinator

    async def segment(self, query: str) -> SegmentationResult:
        """
        Segment ``query`` and build its execution plan.

        Repeated calls with the same normalized text inside the cache TTL return
        the cached result with ``cached=True``.

        Raises:
            SegmentationConstructionError: the emitted segments cannot be planned
        """
        start_time = time.time()
        query_hash = hash_query(query or "")

        if self.cache is not None:
            entry = await self.cache.get(query_hash)
            if entry is not None:
                result = entry.segmentation.model_copy(update={"cached": True})
                self.monitor.record_segmentation((time.time() - start_time) * 1000, len(result.segments), True)
                return result

        plan = self.segmenter.segment(query or "")
        result = self.plan_segments(query or "", plan.segments, plan.strategy, query_hash=query_hash)

        if self.cache is not None:
            now = time.time()
            await self.cache.put(
                query_hash,
                SegmentationCacheEntry(
                    query_hash=query_hash,
                    segmentation=result,
                    created_at=now,
                    expires_at=now + self.settings.cache_ttl_seconds,
                ),
            )

        self.monitor.record_segmentation((time.time() - start_time) * 1000, len(result.segments), False)
        return result

    def plan_segments(
        self,
        query: str,
        segments: Sequence[Segment],
        strategy: SegmentationStrategy = "custom",
        query_hash: Optional[str] = None,
    ) -> SegmentationResult:
        """Validate caller-supplied segments and build a ``SegmentationResult`` for them."""
        try:
            graph = self.graph_builder.build(segments, strategy)
        except SegmentationConstructionError as e:
            logger.error("Segmentation could not be planned", strategy=strategy, error=str(e))
            raise

        result = SegmentationResult(
            query_hash=query_hash or hash_query(query),
            original_query=query,
            strategy=strategy,
            segments=list(segments),
            execution_graph=graph,
            estimated_tokens=sum(s.estimated_tokens for s in segments),
            estimated_time_ms=graph.estimated_time_ms,
        )
        logger.info(
            "Query segmented",
            query_id=result.query_id,
            strategy=strategy,
            segments=len(result.segments),
            stages=graph.total_stages,
            estimated_tokens=result.estimated_tokens,
        )
        return result

    async def coordinate(self, segmentation: SegmentationResult) -> CoordinatedSearchResult:
        """Execute a segmentation and synthesize the final result."""
        start_time = time.time()
        plan = segmentation.execution_graph

        state = await self.coordinator.execute(
            plan,
            segmentation.segments,
            query_id=segmentation.query_id,
            original_query=segmentation.original_query,
        )
        final_results, summary = self.synthesizer.synthesize(state, plan)
        quality = assess_quality(state, final_results)
        status = run_status(state, plan)
        total_time_ms = (time.time() - start_time) * 1000
        self.monitor.record_query(total_time_ms)

        logger.info(
            "Coordinated search finished",
            query_id=segmentation.query_id,
            status=status,
            overall_quality=round(quality.overall, 3),
            total_time_ms=int(total_time_ms),
        )

        return CoordinatedSearchResult(
            query_id=segmentation.query_id,
            original_query=segmentation.original_query,
            segmentation=segmentation,
            coordination_state=state,
            final_results=final_results,
            synthesized_response=summary,
            total_tokens=sum(result.tokens_used for result in state.history),
            total_time_ms=total_time_ms,
            segment_breakdown=build_breakdown(state, segmentation.segments),
            quality=quality,
            status=status,
        )

    async def search(self, query: str) -> CoordinatedSearchResult:
        """``segment`` followed by ``coordinate``."""
        return await self.coordinate(await self.segment(query))

    def get_performance_summary(self) -> Dict[str, Any]:
        return self.monitor.get_performance_summary()

    async def health_check(self) -> Dict[str, Any]:
        cache_healthy = await self.cache.health_check() if self.cache is not None else True
        return {
            "status": "healthy" if cache_healthy else "degraded",
            "cache_backend": self.settings.cache_backend if self.cache is None else self.cache.backend,
            "cache_healthy": cache_healthy,
        }

    async def close(self) -> None:
        """Release the cache connection, if any."""
        if self.cache is not None:
            await self.cache.close()
