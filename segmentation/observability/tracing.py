"""
Logging and performance tracking for the segmentation engine.

Provides the structlog configuration, a LangChain callback handler that logs
every model call, and a per-service ``PerformanceMonitor``. Runner and
coordinator entry points are additionally wrapped with LangSmith ``traceable``
so runs show up in LangSmith when ``LANGCHAIN_TRACING_V2`` is enabled.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure stdlib logging and structlog with the service processor chain."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class ModelCallLogHandler(BaseCallbackHandler):
    """
    Callback handler that logs model call start, end and failure.

    Durations are keyed by LangChain run id so concurrent segments sharing one
    handler do not mix up their timings.
    """

    def __init__(self, model_name: str = "unknown"):
        super().__init__()
        self.model_name = model_name
        self.start_times: Dict[str, float] = {}

    def on_chat_model_start(
        self,
        serialized: Dict[str, Any],
        messages: List[List[BaseMessage]],
        **kwargs: Any,
    ) -> None:
        """Called when a chat model starts running."""
        prompt_length = sum(len(str(m.content)) for batch in messages for m in batch)
        self._started(serialized, prompt_length, kwargs.get("run_id"))

    def on_llm_start(
        self,
        serialized: Dict[str, Any],
        prompts: List[str],
        **kwargs: Any,
    ) -> None:
        """Called when a completion model starts running."""
        self._started(serialized, sum(len(p) for p in prompts), kwargs.get("run_id"))

    def on_llm_end(self, response: LLMResult, **kwargs: Any) -> None:
        """Called when the model call completes."""
        duration_ms = self._pop_duration(kwargs.get("run_id"))
        token_usage = _extract_token_usage(response)

        logger.info(
            "Model call completed",
            model=self.model_name,
            duration_ms=duration_ms,
            generations_count=len(response.generations),
            total_tokens=token_usage.get("total_tokens", 0),
            prompt_tokens=token_usage.get("input_tokens", token_usage.get("prompt_tokens", 0)),
            completion_tokens=token_usage.get("output_tokens", token_usage.get("completion_tokens", 0)),
        )

    def on_llm_error(self, error: BaseException, **kwargs: Any) -> None:
        """Called when the model call raises."""
        logger.error(
            "Model call failed",
            model=self.model_name,
            error=str(error),
            error_type=type(error).__name__,
            duration_ms=self._pop_duration(kwargs.get("run_id")),
        )

    def _started(self, serialized: Optional[Dict[str, Any]], prompt_length: int, run_id: Any) -> None:
        if run_id:
            self.start_times[str(run_id)] = time.time()
        logger.debug(
            "Model call started",
            model=self.model_name,
            llm=(serialized or {}).get("name", "unknown"),
            prompt_length=prompt_length,
            run_id=str(run_id) if run_id else None,
        )

    def _pop_duration(self, run_id: Any) -> Optional[int]:
        started = self.start_times.pop(str(run_id), None) if run_id else None
        if started is None:
            return None
        return int((time.time() - started) * 1000)


def _extract_token_usage(response: LLMResult) -> Dict[str, int]:
    if response.llm_output and response.llm_output.get("token_usage"):
        return response.llm_output["token_usage"]
    for generations in response.generations:
        for generation in generations:
            message = getattr(generation, "message", None)
            usage = getattr(message, "usage_metadata", None)
            if usage:
                return dict(usage)
    return {}


class PerformanceMonitor:
    """
    Latency and confidence tracker for segmentation runs.

    Each ``SegmentationService`` owns one monitor; nothing here is global.
    """

    def __init__(self):
        self.metrics: Dict[str, List[float]] = {
            "segmentation_latency": [],
            "segment_latency": [],
            "stage_latency": [],
            "query_latency": [],
            "confidence_scores": [],
        }

    def record_segmentation(self, latency_ms: float, segment_count: int, cached: bool):
        self.metrics["segmentation_latency"].append(latency_ms)
        logger.debug(
            "Segmentation performance recorded",
            latency_ms=latency_ms,
            segment_count=segment_count,
            cached=cached,
        )

    def record_segment(self, latency_ms: float, confidence: float):
        self.metrics["segment_latency"].append(latency_ms)
        self.metrics["confidence_scores"].append(confidence)

    def record_stage(self, latency_ms: float, stage_size: int):
        self.metrics["stage_latency"].append(latency_ms)
        logger.debug("Stage performance recorded", latency_ms=latency_ms, stage_size=stage_size)

    def record_query(self, latency_ms: float):
        self.metrics["query_latency"].append(latency_ms)
        logger.info("Query performance recorded", latency_ms=latency_ms)

    def get_performance_summary(self) -> Dict[str, Any]:
        """Count/avg/min/max/p95 for every tracked metric."""
        summary = {}

        for metric_name, values in self.metrics.items():
            if values:
                ordered = sorted(values)
                summary[metric_name] = {
                    "count": len(values),
                    "avg": sum(values) / len(values),
                    "min": ordered[0],
                    "max": ordered[-1],
                    "p95": ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)],
                }
            else:
                summary[metric_name] = {"count": 0}

        return summary

    def reset_metrics(self):
        for key in self.metrics:
            self.metrics[key] = []

        logger.info("Performance metrics reset")
