"""
Pydantic schemas for the crate search API.

Request/Response models for all API endpoints.
"""

from pydantic import BaseModel, Field
from typing import List, Optional

from .rag.crate_search import SortCriteria


# ============================================================================
# POST /v1/search/semantic
# ============================================================================

class SemanticSearchRequest(BaseModel):
    """Request for embedding similarity search."""
    query: str = Field(..., description="Free-text query", min_length=1, max_length=2000)
    k: int = Field(5, description="Number of results", ge=1, le=100)


class SemanticSearchHit(BaseModel):
    crate_id: str
    score: float = Field(..., description="Cosine similarity", ge=-1.0, le=1.0)
    description: Optional[str] = None


class SemanticSearchResponse(BaseModel):
    items: List[SemanticSearchHit]


# ============================================================================
# POST /v1/search/crates
# ============================================================================

class CrateSearchRequest(BaseModel):
    """Request for keyword search reranked by embedding similarity."""
    query: str = Field(..., description="Keywords or a natural-language question", min_length=1, max_length=2000)
    sort_by: SortCriteria = Field(SortCriteria.COMPREHENSIVE, description="Ranking criteria")


class CrateSearchItem(BaseModel):
    id: str
    description: str
    downloads: int = Field(..., ge=0)
    rank: float = Field(..., description="Keyword relevance")
    vector_score: float = Field(..., description="Embedding similarity to the query")
    final_score: float


class CrateSearchResponse(BaseModel):
    items: List[CrateSearchItem]
    total: int = Field(..., ge=0)


# ============================================================================
# /v1/chat
# ============================================================================

class ChatSessionResponse(BaseModel):
    session_id: str


class ChatSendRequest(BaseModel):
    """Request to send a message to the assistant."""
    message: str = Field(
        ...,
        description="User message",
        min_length=1,
        max_length=4000
    )
    use_rag: bool = Field(True, description="Add crates retrieved from the index to the prompt")


class ChatRetryRequest(BaseModel):
    """Request to answer the last unanswered message again."""
    use_rag: bool = Field(True, description="Add crates retrieved from the index to the prompt")


class ChatSendResponse(BaseModel):
    """Assistant answer."""
    response: str = Field(..., description="Generated answer")
    context_crate_ids: List[str] = Field(default_factory=list, description="Crates given to the model as context")
    degraded: bool = Field(False, description="Retrieval failed and the answer was produced without context")
    degradation_reason: Optional[str] = None


class ChatHistoryItem(BaseModel):
    role: str
    content: str


class ChatHistoryResponse(BaseModel):
    session_id: str
    items: List[ChatHistoryItem]
    total: int = Field(..., ge=0)


# ============================================================================
# /v1/index
# ============================================================================

class IndexAcceptedResponse(BaseModel):
    status: str = "accepted"
    message: str


class CrateIndexedResponse(BaseModel):
    crate_id: str
    dimensions: int = Field(..., ge=1)
