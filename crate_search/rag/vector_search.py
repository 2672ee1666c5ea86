"""
Vector Search - exact similarity search over stored crate embeddings.

Ranks every indexed crate by cosine similarity to the query vector. The scan
is linear in the number of indexed rows; no ANN index is used.
"""

import math
import heapq
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .embedder import EmbeddingService
from .store import CrateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimilarityHit:
    crate_id: str
    score: float


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty, mismatched or zero-norm vectors."""
    if len(vec_a) != len(vec_b) or not vec_a:
        return 0.0

    dot_product = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    # Rounding can push identical vectors slightly past 1
    return max(-1.0, min(1.0, dot_product / (norm_a * norm_b)))


class VectorSearch:
    """
    Similarity search engine.

    Process:
    1. Load (id, vector) of every crate that has an embedding
    2. Score each one against the query vector
    3. Keep the top-k by descending score, ties broken by ascending crate id
    """

    def __init__(
        self,
        store: CrateStore,
        embedder: Optional[EmbeddingService] = None,
        similarity_threshold: Optional[float] = None,
    ):
        """
        Args:
            store: Crate store to read embeddings from
            embedder: Needed only for `search_text`
            similarity_threshold: Drop hits scoring below this value (None keeps everything)
        """
        self.store = store
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold

    async def search(self, query_vector: Sequence[float], k: int) -> List[SimilarityHit]:
        """
        Rank stored crates by similarity to `query_vector`.

        Crates without an embedding are not searchable and never returned.

        Args:
            query_vector: Query embedding
            k: Number of results, must be >= 1

        Returns:
            At most k hits sorted by score (desc), then crate id (asc).
            Empty list when nothing is indexed.
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")

        rows = await self.store.list_all_embeddings()
        if not rows:
            logger.info("⚠️ No indexed crates, vector search returns nothing")
            return []

        scored = []
        skipped = 0
        for crate_id, vector in rows:
            if len(vector) != len(query_vector):
                skipped += 1
                continue
            score = cosine_similarity(query_vector, vector)
            if self.similarity_threshold is not None and score < self.similarity_threshold:
                continue
            scored.append((score, crate_id))

        if skipped:
            logger.warning(
                f"⚠️ Skipped {skipped} crate(s) whose embedding dimension differs from the query "
                f"({len(query_vector)})"
            )

        top = heapq.nsmallest(k, scored, key=lambda item: (-item[0], item[1]))
        hits = [SimilarityHit(crate_id=crate_id, score=score) for score, crate_id in top]

        logger.info(
            f"📊 Vector search: scanned={len(rows)}, k={k}, returned={len(hits)}"
            + (f", top={hits[0].crate_id} ({hits[0].score:.4f})" if hits else "")
        )
        return hits

    async def search_text(self, query_text: str, k: int) -> List[SimilarityHit]:
        """Embed `query_text` and search with the resulting vector."""
        if self.embedder is None:
            raise RuntimeError("VectorSearch was created without an EmbeddingService")
        query_vector = await self.embedder.embed(query_text)
        return await self.search(query_vector, k)
