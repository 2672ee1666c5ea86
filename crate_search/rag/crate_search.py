"""
Crate search - keyword retrieval reranked with embedding similarity.

Process:
1. Process and rewrite the user query into keyword terms
2. Keyword retrieval from the crate store (up to 200 candidates)
3. Score candidates against the query embedding
4. Combine keyword rank and vector score according to the sort criteria
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..exceptions import CrateSearchError, ProviderError
from .embedder import EmbeddingService
from .models import KeywordMatch, embedding_text
from .query_rewrite import QueryRewriter
from .store import CrateStore
from .vector_search import cosine_similarity

logger = logging.getLogger(__name__)

KEYWORD_CANDIDATES = 200
MAX_RESULTS = 100


class SortCriteria(str, Enum):
    COMPREHENSIVE = "comprehensive"
    RELEVANCE = "relevance"
    DOWNLOADS = "downloads"


class EmbeddingMode(str, Enum):
    # Only vectors already stored by the indexer are used
    PRECOMPUTED = "precomputed"
    # Missing candidate vectors are computed during the search and stored
    ON_DEMAND = "on_demand"


# (keyword weight, vector weight)
SCORE_WEIGHTS = {
    SortCriteria.COMPREHENSIVE: (0.6, 0.4),
    SortCriteria.RELEVANCE: (0.8, 0.2),
    SortCriteria.DOWNLOADS: (0.5, 0.5),
}


@dataclass(frozen=True)
class RecommendCrate:
    id: str
    description: str
    rank: float
    downloads: int = 0
    vector_score: float = 0.0
    final_score: float = 0.0


def calculate_final_score(keyword_score: float, vector_score: float, sort_by: SortCriteria) -> float:
    keyword_weight, vector_weight = SCORE_WEIGHTS[sort_by]
    return keyword_weight * keyword_score + vector_weight * vector_score


def _sort_key(sort_by: SortCriteria):
    if sort_by is SortCriteria.DOWNLOADS:
        return lambda c: (-c.final_score, -c.downloads, c.id)
    return lambda c: (-c.final_score, c.id)


def rank_by_keyword_only(crates: Sequence[RecommendCrate], sort_by: SortCriteria) -> List[RecommendCrate]:
    """Fallback ranking when the query embedding is unavailable."""
    ranked = [replace(c, vector_score=0.0, final_score=c.rank) for c in crates]
    ranked.sort(key=_sort_key(sort_by))
    return ranked[:MAX_RESULTS]


class CrateSearchModule:
    def __init__(
        self,
        store: CrateStore,
        embedder: EmbeddingService,
        rewriter: Optional[QueryRewriter] = None,
        embedding_mode: EmbeddingMode = EmbeddingMode.ON_DEMAND,
    ):
        self.store = store
        self.embedder = embedder
        self.rewriter = rewriter or QueryRewriter()
        self.embedding_mode = embedding_mode

    async def search_crate(
        self,
        query: str,
        sort_by: SortCriteria = SortCriteria.COMPREHENSIVE,
    ) -> List[RecommendCrate]:
        """
        Search crates by keywords and rerank them with embedding similarity.

        Query rewriting and embedding failures degrade the ranking but never
        fail the search; store errors propagate.

        Returns:
            Up to 100 crates, best first
        """
        terms = await self.rewriter.prepare_terms(query)
        matches = await self.store.search_keywords(terms, limit=KEYWORD_CANDIDATES)
        logger.info(f"🔍 Keyword search for {terms}: {len(matches)} candidate(s)")

        candidates = [self._from_match(m) for m in matches]
        if not candidates:
            return []

        return await self.rerank_crates(candidates, query, sort_by)

    @staticmethod
    def _from_match(match: KeywordMatch) -> RecommendCrate:
        return RecommendCrate(
            id=match.crate_id,
            description=match.description,
            rank=match.rank,
            downloads=match.downloads,
        )

    async def rerank_crates(
        self,
        crates: Sequence[RecommendCrate],
        query: str,
        sort_by: SortCriteria,
    ) -> List[RecommendCrate]:
        try:
            query_embedding = await self.embedder.embed(query)
        except ProviderError as e:
            logger.warning(f"⚠️ Query embedding failed, ranking by keywords only: {e}")
            return rank_by_keyword_only(crates, sort_by)

        embeddings = await self.fetch_embeddings(crates)

        reranked = []
        for crate in crates:
            vector = embeddings.get(crate.id)
            vector_score = cosine_similarity(query_embedding, vector) if vector else 0.0
            reranked.append(replace(
                crate,
                vector_score=vector_score,
                final_score=calculate_final_score(crate.rank, vector_score, sort_by),
            ))

        reranked.sort(key=_sort_key(sort_by))
        return reranked[:MAX_RESULTS]

    async def fetch_embeddings(self, crates: Sequence[RecommendCrate]) -> Dict[str, List[float]]:
        """
        Candidate vectors according to the embedding mode.

        In ON_DEMAND mode, candidates without a stored vector are embedded in
        one batch and written back; failures leave them unscored.
        """
        ids = [c.id for c in crates]
        embeddings = await self.store.get_embeddings(ids)

        missing = [c for c in crates if c.id not in embeddings]
        if not missing:
            return embeddings

        if self.embedding_mode is EmbeddingMode.PRECOMPUTED:
            logger.warning(f"⚠️ {len(missing)} candidate crate(s) have no precomputed embedding")
            return embeddings

        logger.info(f"🔄 Computing embeddings on demand for {len(missing)} crate(s)")
        try:
            vectors = await self.embedder.embed_all(
                [embedding_text(c.id, c.description) for c in missing]
            )
        except ProviderError as e:
            logger.warning(f"⚠️ On-demand embedding failed: {e}")
            return embeddings

        for crate, vector in zip(missing, vectors):
            try:
                await self.store.set_embedding(crate.id, vector)
            except CrateSearchError as e:
                logger.warning(f"⚠️ Could not store embedding for crate '{crate.id}': {e}")
            embeddings[crate.id] = vector

        return embeddings
