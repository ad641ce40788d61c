"""
LLM Client Package

Provides the model collaborator: a Bedrock Claude transport and a structured
classify() wrapper that validates JSON replies against pydantic schemas.
"""
from .bedrock_client import (
    LLMResponse,
    BaseLLMClient,
    BedrockClaudeClient,
    LLMClientFactory,
    get_llm_client,
)
from .structured import (
    LLMOutput,
    FlexibleEnumValue,
    ClassificationResult,
    StructuredModelClient,
    extract_json,
    scalar_to_text,
)

__all__ = [
    "LLMResponse",
    "BaseLLMClient",
    "BedrockClaudeClient",
    "LLMClientFactory",
    "get_llm_client",
    "LLMOutput",
    "FlexibleEnumValue",
    "ClassificationResult",
    "StructuredModelClient",
    "extract_json",
    "scalar_to_text",
]
