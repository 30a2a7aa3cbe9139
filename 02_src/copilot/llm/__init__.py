"""LLM module."""

from .embeddings import EmbeddingProvider, IEmbeddingProvider
from .llm_provider import ILLMProvider, LLMProvider, extract_json_object
from .tokenizer import count_tokens, estimate_tokens

__all__ = [
    "ILLMProvider",
    "LLMProvider",
    "extract_json_object",
    "IEmbeddingProvider",
    "EmbeddingProvider",
    "count_tokens",
    "estimate_tokens",
]
