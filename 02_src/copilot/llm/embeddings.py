"""Text embeddings via the OpenAI API."""

import os
from typing import Protocol

from openai import AsyncOpenAI

from ..logging_config import get_logger

logger = get_logger(__name__)


class IEmbeddingProvider(Protocol):
    """Best-effort text embedding."""

    async def embed_text(self, text: str) -> list[float] | None:
        """Embed text. Returns None on failure."""
        ...


class EmbeddingProvider:
    """OpenAI embeddings with a fixed output dimension."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimensions: int = 512,
        client: AsyncOpenAI | None = None,
    ):
        self._model = model
        self._dimensions = dimensions
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        if self._client is None:
            logger.warning("OPENAI_API_KEY not set; embeddings are disabled")

    async def embed_text(self, text: str) -> list[float] | None:
        """Embed text. Empty input, missing client or API errors yield None."""
        if not text or not text.strip() or self._client is None:
            return None
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=text,
                dimensions=self._dimensions,
            )
        except Exception as e:
            logger.warning(f"Embedding failed: {e}")
            return None

        if not response.data:
            return None
        return list(response.data[0].embedding)
