"""
Model client abstraction used by the segment runner.

The runner only needs ``complete(prompt, options)``. ``LangChainModelClient``
adapts any LangChain chat model to that call, and ``ModelRouter`` picks a
client per complexity tier so escalated segments can use a stronger model.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage
from pydantic import BaseModel, Field

from libs.common.settings import SegmentationSettings
from segmentation.observability.tracing import ModelCallLogHandler
from segmentation.schemas.segment import ComplexityTier

logger = structlog.get_logger(__name__)

# Output budget multiplier per tier, applied to settings.model_max_tokens
TIER_MAX_TOKEN_FACTORS: Dict[str, float] = {
    "tiny": 0.5,
    "small": 1.0,
    "medium": 1.5,
    "large": 2.0,
}


class ModelOptions(BaseModel):
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)


class ModelResponse(BaseModel):
    text: str
    tokens_used: int = Field(default=0, ge=0)
    model: str = "unknown"


@runtime_checkable
class ModelClient(Protocol):
    """Anything that can turn a prompt into text. Raises on transport failure."""

    async def complete(self, prompt: str, options: ModelOptions) -> ModelResponse:
        ...


def options_for_tier(settings: SegmentationSettings, tier: ComplexityTier) -> ModelOptions:
    factor = TIER_MAX_TOKEN_FACTORS.get(tier, 1.0)
    return ModelOptions(
        temperature=settings.model_temperature,
        max_tokens=max(1, int(settings.model_max_tokens * factor)),
    )


class LangChainModelClient:
    """
    Adapter from a LangChain chat model to ``ModelClient``.

    Token usage is read from ``usage_metadata`` when the provider reports it,
    then from ``response_metadata["token_usage"]``, else estimated from length.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        model_name: Optional[str] = None,
        bind_options: bool = True,
    ):
        self.llm = llm
        self.bind_options = bind_options
        self.model_name = (
            model_name
            or getattr(llm, "model_name", None)
            or getattr(llm, "model", None)
            or llm._llm_type
        )
        self._callback_handler = ModelCallLogHandler(model_name=self.model_name)

    async def complete(self, prompt: str, options: ModelOptions) -> ModelResponse:
        runnable: Any = self.llm
        if self.bind_options:
            runnable = self.llm.bind(temperature=options.temperature, max_tokens=options.max_tokens)

        message = await runnable.ainvoke(
            [HumanMessage(content=prompt)],
            config={"callbacks": [self._callback_handler]},
        )

        text = _message_text(message)
        return ModelResponse(
            text=text,
            tokens_used=_token_usage(message, prompt, text),
            model=self.model_name,
        )


class ModelRouter:
    """Maps complexity tiers to model clients, falling back to a default."""

    def __init__(self, default: ModelClient, tiers: Optional[Dict[str, ModelClient]] = None):
        self.default = default
        self.tiers: Dict[str, ModelClient] = dict(tiers or {})

    def for_tier(self, tier: ComplexityTier) -> ModelClient:
        return self.tiers.get(tier, self.default)

    def model_name(self, tier: ComplexityTier) -> str:
        client = self.for_tier(tier)
        return getattr(client, "model_name", None) or type(client).__name__


def build_default_model_client(settings: SegmentationSettings) -> LangChainModelClient:
    """ChatOpenAI-backed client for ``settings.openai_model``."""
    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=settings.openai_model,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
    )
    logger.info("Default model client created", model=settings.openai_model)
    return LangChainModelClient(llm, model_name=settings.openai_model)


def build_default_router(settings: SegmentationSettings) -> ModelRouter:
    """One ChatOpenAI client per distinct suggested model, shared across tiers."""
    from langchain_openai import ChatOpenAI

    clients_by_model: Dict[str, LangChainModelClient] = {}
    tiers: Dict[str, ModelClient] = {}
    for tier, model in settings.model_suggestions.items():
        if model not in clients_by_model:
            clients_by_model[model] = LangChainModelClient(
                ChatOpenAI(model=model, temperature=settings.model_temperature),
                model_name=model,
            )
        tiers[tier] = clients_by_model[model]

    logger.info("Model router created", models=sorted(clients_by_model))
    return ModelRouter(default=tiers.get("small") or build_default_model_client(settings), tiers=tiers)


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _token_usage(message: BaseMessage, prompt: str, text: str) -> int:
    usage = getattr(message, "usage_metadata", None)
    if usage and usage.get("total_tokens"):
        return int(usage["total_tokens"])

    token_usage = (getattr(message, "response_metadata", None) or {}).get("token_usage") or {}
    if token_usage.get("total_tokens"):
        return int(token_usage["total_tokens"])

    # Rough estimate: ~4 characters per token
    return (len(prompt) + len(text)) // 4
