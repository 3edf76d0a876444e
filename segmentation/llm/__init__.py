"""Model client adapters and prompt templates."""

from segmentation.llm.client import (
    LangChainModelClient,
    ModelClient,
    ModelOptions,
    ModelResponse,
    ModelRouter,
    build_default_model_client,
)

__all__ = [
    "LangChainModelClient",
    "ModelClient",
    "ModelOptions",
    "ModelResponse",
    "ModelRouter",
    "build_default_model_client",
]
