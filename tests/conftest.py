"""
Pytest configuration and fixtures for crate search tests.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from crate_search.api import Services, SessionRegistry, create_app
from crate_search.chat.orchestrator import ChatOrchestrator
from crate_search.gpt_client import GPTClient
from crate_search.rag.context_builder import ContextBuilder
from crate_search.rag.crate_search import CrateSearchModule
from crate_search.rag.database import create_crate_engine, init_db
from crate_search.rag.embedder import EmbeddingService
from crate_search.rag.indexer import CrateIndexer
from crate_search.rag.query_rewrite import QueryRewriter
from crate_search.rag.store import CrateStore
from crate_search.rag.vector_search import VectorSearch

DIMENSIONS = 3

# Deterministic embeddings for the texts used across the tests
KNOWN_VECTORS = {
    "serde : serialization framework": [1.0, 0.0, 0.0],
    "tokio : async runtime": [0.0, 1.0, 0.0],
    "reqwest : http client": [0.0, 0.0, 1.0],
    "async io": [0.1, 0.9, 0.0],
    "suggest a json crate": [0.9, 0.1, 0.1],
}
DEFAULT_VECTOR = [0.3, 0.3, 0.3]


def fake_vector(text):
    return list(KNOWN_VECTORS.get(text, DEFAULT_VECTOR))


def embedding_response(texts):
    return {
        "data": [{"index": i, "embedding": fake_vector(text)} for i, text in enumerate(texts)],
        "usage": {"prompt_tokens": len(texts), "total_tokens": len(texts)},
    }


def completion_response(content):
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


# ============================================================================
# Provider Fixtures
# ============================================================================

@pytest.fixture
def sample_ai_response():
    """Sample assistant answer."""
    return "For JSON use serde_json together with serde."


@pytest.fixture
def provider(sample_ai_response):
    """Mocked provider client: deterministic embeddings, fixed chat answer."""
    provider = MagicMock()
    provider.chat_model = "test-chat"
    provider.embedding_model = "test-embedding"
    provider.create_embeddings = AsyncMock(
        side_effect=lambda texts, model=None: embedding_response(texts)
    )
    provider.create_completion = AsyncMock(return_value=completion_response(sample_ai_response))
    provider.close = AsyncMock()
    return provider


@pytest.fixture
def embedder(provider):
    return EmbeddingService(provider, dimensions=DIMENSIONS, batch_size=2, max_retries=3, retry_delay=0)


@pytest.fixture
def gpt_client(provider):
    return GPTClient(provider, model="test-chat")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_db_engine(tmp_path):
    """
    File-backed SQLite engine.

    Store calls run in worker threads, each with its own connection; a file
    database is shared by all of them.
    """
    engine = create_crate_engine(f"sqlite:///{tmp_path / 'crates.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def store(test_db_engine):
    crate_store = CrateStore(test_db_engine, table_name="crates", dimensions=DIMENSIONS)
    init_db(test_db_engine, crate_store.table)
    return crate_store


@pytest.fixture
def add_crates(store):
    """Factory fixture to insert crate rows directly."""
    def _add(*rows):
        records = [
            {
                "id": row["id"],
                "description": row.get("description", ""),
                "downloads": row.get("downloads", 0),
                "embedding": row.get("embedding"),
            }
            for row in rows
        ]
        with store.engine.begin() as conn:
            conn.execute(store.table.insert(), records)
    return _add


@pytest.fixture
def sample_crates(add_crates):
    """serde is not indexed yet, tokio and reqwest are."""
    add_crates(
        {"id": "serde", "description": "serialization framework", "downloads": 300},
        {"id": "tokio", "description": "async runtime", "downloads": 200, "embedding": [0.0, 1.0, 0.0]},
        {"id": "reqwest", "description": "http client", "downloads": 100, "embedding": [0.0, 0.0, 1.0]},
    )


@pytest.fixture
def vector_search(store, embedder):
    return VectorSearch(store, embedder)


@pytest.fixture
def orchestrator(gpt_client, embedder, vector_search, store):
    return ChatOrchestrator(
        gpt_client,
        embedder=embedder,
        search_engine=vector_search,
        store=store,
        context_builder=ContextBuilder(max_length=3000),
        top_k=2,
    )


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def api_key():
    """API key for testing."""
    return "test-api-key"


@pytest.fixture
def headers(api_key):
    """Default headers with API key."""
    return {
        "X-API-KEY": api_key,
        "Content-Type": "application/json"
    }


@pytest.fixture
def services(store, embedder, gpt_client, vector_search, orchestrator, api_key):
    return Services(
        store=store,
        vector_search=vector_search,
        crate_search=CrateSearchModule(store, embedder, QueryRewriter()),
        indexer=CrateIndexer(store, embedder, batch_size=2, concurrency=2),
        orchestrator=orchestrator,
        sessions=SessionRegistry(),
        api_secret_key=api_key,
    )


@pytest.fixture
def client(services):
    """Test client around an app wired with test components."""
    app = create_app(services=services)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client
