"""
Crate Search Service - FastAPI application.

Provides REST API for semantic crate search, hybrid keyword search,
RAG chat sessions and embedding indexing.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from .chat.orchestrator import ChatOrchestrator, ChatReply
from .chat.session import ConversationSession
from .chat.prompts import SYSTEM_PROMPT
from .config import Settings
from .exceptions import NotFound, ProviderError, StoreError
from .gpt_client import GPTClient
from .provider_client import ProviderClient
from .rag.crate_search import CrateSearchModule
from .rag.database import create_crate_engine, init_db
from .rag.embedder import EmbeddingService
from .rag.indexer import CrateIndexer
from .rag.query_rewrite import QueryRewriter
from .rag.store import CrateStore
from .rag.vector_search import VectorSearch
from .schemas import (
    ChatHistoryItem,
    ChatHistoryResponse,
    ChatRetryRequest,
    ChatSendRequest,
    ChatSendResponse,
    ChatSessionResponse,
    CrateIndexedResponse,
    CrateSearchItem,
    CrateSearchRequest,
    CrateSearchResponse,
    IndexAcceptedResponse,
    SemanticSearchHit,
    SemanticSearchRequest,
    SemanticSearchResponse,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Sessions
# ============================================================================

class SessionRegistry:
    """
    In-memory chat sessions.

    Every session has its own lock; concurrent requests on one session are
    serialized, requests on different sessions run concurrently. At most
    `max_sessions` sessions are kept: creating one more evicts the least
    recently used idle session.
    """

    def __init__(
        self,
        system_prompt: str = SYSTEM_PROMPT,
        max_history: Optional[int] = None,
        max_sessions: int = 1000,
    ):
        if max_sessions < 1:
            raise ValueError(f"max_sessions must be >= 1, got {max_sessions}")

        self.system_prompt = system_prompt
        self.max_history = max_history
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, ConversationSession]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self) -> ConversationSession:
        session = ConversationSession(self.system_prompt, max_history=self.max_history)
        self._sessions[session.session_id] = session
        self._locks[session.session_id] = asyncio.Lock()
        logger.info(f"💬 Chat session created: {session.session_id}")

        while len(self._sessions) > self.max_sessions:
            self._evict_one(keep=session.session_id)
        return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._locks[session_id]

    def remove(self, session_id: str) -> bool:
        """
        Discard a session and its lock.

        Returns:
            False if the session did not exist
        """
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is None:
            return False
        logger.info(f"🗑️ Chat session removed: {session_id}")
        return True

    def _evict_one(self, keep: str) -> None:
        # Oldest session not serving a request; the oldest one if all are busy
        candidates = [session_id for session_id in self._sessions if session_id != keep]
        victim = candidates[0]
        for session_id in candidates:
            if not self._locks[session_id].locked():
                victim = session_id
                break
        self.remove(victim)
        logger.info(f"♻️ Session limit {self.max_sessions} reached, evicted {victim}")


# ============================================================================
# Wiring
# ============================================================================

@dataclass
class Services:
    """Components shared by all requests of one application."""

    store: CrateStore
    vector_search: VectorSearch
    crate_search: CrateSearchModule
    indexer: CrateIndexer
    orchestrator: ChatOrchestrator
    sessions: SessionRegistry
    api_secret_key: Optional[str] = None
    provider: Optional[ProviderClient] = None


def build_services(settings: Settings) -> Services:
    provider = ProviderClient.from_settings(settings)
    store = CrateStore.from_settings(settings, create_crate_engine(settings.database_url))
    embedder = EmbeddingService.from_settings(provider, settings)
    gpt_client = GPTClient.from_settings(provider, settings)
    vector_search = VectorSearch(store, embedder)

    return Services(
        store=store,
        vector_search=vector_search,
        crate_search=CrateSearchModule(store, embedder, QueryRewriter(gpt_client)),
        indexer=CrateIndexer.from_settings(store, embedder, settings),
        orchestrator=ChatOrchestrator.from_settings(gpt_client, embedder, vector_search, store, settings),
        sessions=SessionRegistry(
            max_history=settings.rag_max_history, max_sessions=settings.chat_max_sessions
        ),
        api_secret_key=settings.api_secret_key,
        provider=provider,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _verify_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-KEY"),
) -> None:
    """
    Verify API key from request headers.

    Args:
        x_api_key: API key from X-API-KEY header

    Raises:
        HTTPException: If API key is invalid or missing
    """
    expected_key = get_services(request).api_secret_key
    if not expected_key:
        logger.error("❌ API_SECRET_KEY not configured on server")
        raise HTTPException(
            status_code=500,
            detail="API authentication not configured on server"
        )

    if not x_api_key or x_api_key != expected_key:
        logger.warning("⛔ Invalid API key attempt")
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key"
        )


def _get_session(services: Services, session_id: str) -> ConversationSession:
    session = services.sessions.get(session_id)
    if session is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "Session not found", "message": f"Chat session {session_id} does not exist"}
        )
    return session


# ============================================================================
# Routes
# ============================================================================

router = APIRouter(prefix="/v1", tags=["crate-search"])


@router.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns service status without authentication.
    """
    return {
        "status": "ok",
        "service": "crate_search",
        "version": "1.0.0"
    }


@router.post("/search/semantic", response_model=SemanticSearchResponse)
async def semantic_search(
    request: SemanticSearchRequest,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Rank indexed crates by embedding similarity to the query.
    """
    logger.info(f"🔍 Semantic search: query='{request.query[:50]}', k={request.k}")

    hits = await services.vector_search.search_text(request.query, request.k)
    descriptions = await services.store.get_descriptions([hit.crate_id for hit in hits])

    return SemanticSearchResponse(
        items=[
            SemanticSearchHit(crate_id=hit.crate_id, score=hit.score, description=descriptions.get(hit.crate_id))
            for hit in hits
        ]
    )


@router.post("/search/crates", response_model=CrateSearchResponse)
async def search_crates(
    request: CrateSearchRequest,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Keyword search reranked by embedding similarity.
    """
    logger.info(f"🔍 Crate search: query='{request.query[:50]}', sort_by={request.sort_by.value}")

    crates = await services.crate_search.search_crate(request.query, request.sort_by)

    return CrateSearchResponse(
        items=[
            CrateSearchItem(
                id=crate.id,
                description=crate.description,
                downloads=crate.downloads,
                rank=crate.rank,
                vector_score=crate.vector_score,
                final_score=crate.final_score,
            )
            for crate in crates
        ],
        total=len(crates),
    )


@router.post("/chat/sessions", response_model=ChatSessionResponse, status_code=201)
async def create_chat_session(
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    session = services.sessions.create()
    return ChatSessionResponse(session_id=session.session_id)


@router.post("/chat/{session_id}/send", response_model=ChatSendResponse)
async def send_message(
    session_id: str,
    request: ChatSendRequest,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Send message to the assistant and get the answer.

    With `use_rag` the answer is grounded in crates retrieved from the index;
    if retrieval fails the answer is still returned with `degraded=true`.
    Sending the text of a message that got no answer (e.g. after a 502)
    answers it without recording it twice.
    """
    session = _get_session(services, session_id)

    logger.info(
        f"📨 Received chat request: session={session_id}, "
        f"message_length={len(request.message)}, use_rag={request.use_rag}"
    )

    async with services.sessions.lock(session_id):
        if request.use_rag:
            reply = await services.orchestrator.chat_with_embedding(session, request.message)
        else:
            reply = await services.orchestrator.chat(session, request.message)

    logger.info(f"✅ Chat request completed: session={session_id}, degraded={reply.degraded}")
    return _send_response(reply)


@router.post("/chat/{session_id}/retry", response_model=ChatSendResponse)
async def retry_message(
    session_id: str,
    request: ChatRetryRequest,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Answer the last user message again after a failed generation.

    Returns 409 when the last message of the session already has an answer.
    """
    session = _get_session(services, session_id)

    async with services.sessions.lock(session_id):
        try:
            reply = await services.orchestrator.retry(session, use_rag=request.use_rag)
        except ValueError as e:
            raise HTTPException(
                status_code=409,
                detail={"error": "Nothing to retry", "message": str(e)}
            )

    logger.info(f"✅ Chat retry completed: session={session_id}, degraded={reply.degraded}")
    return _send_response(reply)


def _send_response(reply: ChatReply) -> ChatSendResponse:
    return ChatSendResponse(
        response=reply.text,
        context_crate_ids=list(reply.context_crate_ids),
        degraded=reply.degraded,
        degradation_reason=reply.degradation_reason,
    )


@router.get("/chat/{session_id}/history", response_model=ChatHistoryResponse)
async def get_history(
    session_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    session = _get_session(services, session_id)
    items = [ChatHistoryItem(role=m.role.value, content=m.content) for m in session.history]
    return ChatHistoryResponse(session_id=session_id, items=items, total=len(items))


@router.delete("/chat/{session_id}", status_code=204)
async def delete_chat_session(
    session_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Discard a chat session and its history.

    Waits for a request running on the session to finish first.
    """
    _get_session(services, session_id)

    async with services.sessions.lock(session_id):
        services.sessions.remove(session_id)

    return Response(status_code=204)


async def _background_indexing(indexer: CrateIndexer) -> None:
    """
    Background indexing task.

    Errors are logged; the per-crate outcome is in the report.
    """
    try:
        report = await indexer.update_all_missing_embeddings()
    except Exception as e:
        logger.error(f"❌ Unexpected error in background indexing: {e}", exc_info=True)
        return

    if report.success:
        logger.info(f"✅ Background indexing completed: {len(report.indexed)} crate(s) indexed")
    else:
        logger.error(f"❌ Background indexing finished with failures: {report.failed_ids}")


@router.post("/index/missing", response_model=IndexAcceptedResponse, status_code=202)
async def trigger_indexing(
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Embed every crate without an embedding.

    Indexing runs in the background, the endpoint returns 202 Accepted at once.
    """
    logger.info("🚀 Triggering background indexing of missing embeddings")
    background_tasks.add_task(_background_indexing, services.indexer)
    return IndexAcceptedResponse(message="Indexing of crates without embeddings started in background")


@router.post("/index/{crate_id}", response_model=CrateIndexedResponse)
async def index_crate(
    crate_id: str,
    services: Services = Depends(get_services),
    _: None = Depends(_verify_api_key)
):
    """
    Re-embed one crate from its current description.
    """
    vector = await services.indexer.update_crate_embedding(crate_id)
    return CrateIndexedResponse(crate_id=crate_id, dimensions=len(vector))


# ============================================================================
# Error mapping
# ============================================================================

async def _not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": {"error": "Crate not found", "message": str(exc)}}
    )


async def _provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    logger.error(f"❌ Provider error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": {"error": "Model provider request failed", "message": str(exc)}}
    )


async def _store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"❌ Store error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": {"error": "Database error", "message": str(exc)}}
    )


# ============================================================================
# Application factory
# ============================================================================

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        settings: Loaded from the environment when omitted
        services: Prebuilt components (tests); built from settings when omitted
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if services is None:
        services = build_services(settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Crate Search Service...")
        try:
            await asyncio.to_thread(init_db, services.store.engine, services.store.table)
        except Exception as exc:
            logger.error("❌ Failed to prepare crates table: %s", exc, exc_info=True)
            logger.warning("⚠️  Service will continue, but database operations may fail")
        yield
        logger.info("👋 Shutting down Crate Search Service...")
        if services.provider is not None:
            await services.provider.close()

    app = FastAPI(
        title="Crate Search Service",
        description="Semantic search and RAG chat over crate metadata",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(router)
    app.add_exception_handler(NotFound, _not_found_handler)
    app.add_exception_handler(ProviderError, _provider_error_handler)
    app.add_exception_handler(StoreError, _store_error_handler)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.api_port)
