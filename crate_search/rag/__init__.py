"""
Retrieval layer: crate store, embeddings, similarity and keyword search, indexing.
"""

from .context_builder import ContextBuilder
from .crate_search import CrateSearchModule, EmbeddingMode, RecommendCrate, SortCriteria
from .embedder import EmbeddingService
from .indexer import CrateIndexer, IndexingReport
from .models import CrateRecord, KeywordMatch, build_crates_table, embedding_text
from .store import CrateStore
from .vector_search import SimilarityHit, VectorSearch, cosine_similarity

__all__ = [
    "ContextBuilder",
    "CrateIndexer",
    "CrateRecord",
    "CrateSearchModule",
    "CrateStore",
    "EmbeddingMode",
    "EmbeddingService",
    "IndexingReport",
    "KeywordMatch",
    "RecommendCrate",
    "SimilarityHit",
    "SortCriteria",
    "VectorSearch",
    "build_crates_table",
    "cosine_similarity",
    "embedding_text",
]
