"""
Embedding Service - converts text into fixed-length vectors through the provider.

Used both for populating stored crate vectors and for embedding live user queries.
"""

import math
import asyncio
import logging
from typing import Any, Dict, List, Sequence

from ..config import Settings
from ..exceptions import ProviderError
from ..provider_client import ProviderClient

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Stateless wrapper around the provider's embedding endpoint.

    Batch policy: `embed_all` is all-or-nothing. If any request chunk fails
    (after retries) or returns a malformed vector, the whole call raises
    ProviderError and no partial result is returned. Per-item failure
    reporting is done one level up by the indexer.
    """

    def __init__(
        self,
        provider: ProviderClient,
        dimensions: int = 1536,
        batch_size: int = 100,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.provider = provider
        self.dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, provider: ProviderClient, settings: Settings) -> "EmbeddingService":
        return cls(
            provider,
            dimensions=settings.embedding_dimensions,
            batch_size=settings.embedding_batch_size,
            max_retries=settings.embedding_max_retries,
        )

    async def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Returns:
            Vector of exactly `dimensions` floats

        Raises:
            ProviderError: If the provider call fails or returns a malformed vector
        """
        logger.debug(f"🔄 Generating embedding for: '{text[:50]}'")
        vectors = await self._request([text])
        return vectors[0]

    async def embed_all(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed many texts, preserving input order.

        Texts are sent in chunks of `batch_size`.

        Raises:
            ProviderError: If any chunk fails (the whole batch fails)
        """
        if not texts:
            return []

        all_embeddings: List[List[float]] = []
        total = len(texts)
        total_batches = (total + self.batch_size - 1) // self.batch_size

        for i in range(0, total, self.batch_size):
            batch = list(texts[i:i + self.batch_size])
            batch_num = (i // self.batch_size) + 1
            logger.info(
                f"🔄 Generating embeddings: batch {batch_num}/{total_batches} ({len(batch)} texts)"
            )
            all_embeddings.extend(await self._request(batch))

        logger.info(f"✅ Generated {len(all_embeddings)} embeddings total")
        return all_embeddings

    async def _request(self, batch: List[str]) -> List[List[float]]:
        for attempt in range(self.max_retries):
            try:
                response = await self.provider.create_embeddings(texts=batch)
                break
            except ProviderError as e:
                if not e.retryable or attempt == self.max_retries - 1:
                    raise
                wait_time = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"⚠️ Embedding request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                    f"Retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)

        usage = response.get("usage")
        if usage:
            logger.info(
                f"🧮 Embedding tokens: prompt={usage.get('prompt_tokens')}, total={usage.get('total_tokens')}"
            )

        return self._parse(response, expected=len(batch))

    def _parse(self, response: Dict[str, Any], expected: int) -> List[List[float]]:
        data = response.get("data")
        if not isinstance(data, list) or len(data) != expected:
            raise ProviderError(
                f"Embedding response has {len(data) if isinstance(data, list) else 'no'} items, "
                f"expected {expected}"
            )

        try:
            # Providers may return items out of order; `index` is authoritative
            items = sorted(data, key=lambda item: item.get("index", 0))
        except (AttributeError, TypeError) as e:
            raise ProviderError("Embedding response items are malformed") from e

        vectors = []
        for item in items:
            vectors.append(self._validate(item.get("embedding")))
        return vectors

    def _validate(self, embedding: Any) -> List[float]:
        if not isinstance(embedding, list) or not embedding:
            raise ProviderError("Embedding response contains an empty vector")
        if len(embedding) != self.dimensions:
            raise ProviderError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}"
            )
        try:
            vector = [float(x) for x in embedding]
        except (TypeError, ValueError) as e:
            raise ProviderError("Embedding contains non-numeric values") from e
        if not all(math.isfinite(x) for x in vector):
            raise ProviderError("Embedding contains non-finite values")
        return vector
