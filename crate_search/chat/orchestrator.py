"""
Chat Orchestrator - plain and retrieval-augmented chat turns.

The orchestrator is the only component that couples retrieval with
generation. It keeps no per-conversation state: every call works on the
session passed in.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..config import Settings
from ..exceptions import ProviderError, StoreError
from ..gpt_client import GPTClient
from ..rag.context_builder import ContextBuilder
from ..rag.embedder import EmbeddingService
from ..rag.store import CrateStore
from ..rag.vector_search import VectorSearch
from .session import ConversationSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatReply:
    """
    Assistant answer for one turn.

    `degraded` is True when retrieval was requested but failed and the answer
    was produced without crate context; `degradation_reason` says why.
    """

    text: str
    context_crate_ids: Tuple[str, ...] = ()
    degraded: bool = False
    degradation_reason: Optional[str] = None

    def __str__(self) -> str:
        return self.text


class ChatOrchestrator:
    def __init__(
        self,
        gpt_client: GPTClient,
        embedder: Optional[EmbeddingService] = None,
        search_engine: Optional[VectorSearch] = None,
        store: Optional[CrateStore] = None,
        context_builder: Optional[ContextBuilder] = None,
        top_k: int = 5,
    ):
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")

        self.gpt_client = gpt_client
        self.embedder = embedder
        self.search_engine = search_engine
        self.store = store
        self.context_builder = context_builder or ContextBuilder()
        self.top_k = top_k

    @classmethod
    def from_settings(
        cls,
        gpt_client: GPTClient,
        embedder: EmbeddingService,
        search_engine: VectorSearch,
        store: CrateStore,
        settings: Settings,
    ) -> "ChatOrchestrator":
        return cls(
            gpt_client,
            embedder=embedder,
            search_engine=search_engine,
            store=store,
            context_builder=ContextBuilder(max_length=settings.rag_context_max_length),
            top_k=settings.rag_top_k,
        )

    @property
    def retrieval_enabled(self) -> bool:
        return all(part is not None for part in (self.embedder, self.search_engine, self.store))

    async def chat(self, session: ConversationSession, user_message: str) -> ChatReply:
        """
        Plain chat turn.

        Sending the same text again after a failed turn answers the recorded
        message instead of appending a second copy.

        Raises:
            GenerationError: If the model call fails. The user message stays
                in the session history.
        """
        self._begin_turn(session, user_message)
        text = await self._generate(session)
        return ChatReply(text=text)

    async def retry(self, session: ConversationSession, use_rag: bool = True) -> ChatReply:
        """
        Answer the session's unanswered user message again.

        Raises:
            ValueError: If the last history message is not an unanswered user message
            GenerationError: If the model call fails again
        """
        pending = session.unanswered_user_message
        if pending is None:
            raise ValueError(f"Session {session.session_id} has no unanswered message to retry")

        logger.info(f"🔁 Retrying last message of session {session.session_id}, use_rag={use_rag}")
        if use_rag:
            return await self.chat_with_embedding(session, pending.content)
        return await self.chat(session, pending.content)

    async def chat_with_embedding(self, session: ConversationSession, user_message: str) -> ChatReply:
        """
        Chat turn with crate context retrieved by embedding similarity.

        Embedding, search or description loading failures degrade the turn to
        plain chat; the reply then carries `degraded=True`.

        Raises:
            GenerationError: If the model call fails. The user message stays
                in the session history.
        """
        self._begin_turn(session, user_message)

        if not self.retrieval_enabled:
            reason = "retrieval is not configured"
            logger.warning(f"⚠️ RAG unavailable for session {session.session_id}: {reason}")
            text = await self._generate(session)
            return ChatReply(text=text, degraded=True, degradation_reason=reason)

        try:
            crate_ids = await self._retrieve_context(session, user_message)
        except (ProviderError, StoreError) as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning(
                f"⚠️ RAG failed for session {session.session_id}, answering without context: {reason}",
                exc_info=True,
            )
            session.discard_context()
            text = await self._generate(session)
            return ChatReply(text=text, degraded=True, degradation_reason=reason)

        text = await self._generate(session)
        return ChatReply(text=text, context_crate_ids=tuple(crate_ids))

    def _begin_turn(self, session: ConversationSession, user_message: str) -> None:
        pending = session.unanswered_user_message
        if pending is not None and pending.content == user_message:
            logger.info(f"🔁 Reusing unanswered message in session {session.session_id}")
            return
        session.append_user(user_message)

    async def _retrieve_context(self, session: ConversationSession, user_message: str) -> List[str]:
        query_vector = await self.embedder.embed(user_message)
        hits = await self.search_engine.search(query_vector, self.top_k)
        if not hits:
            logger.info(f"⚠️ No indexed crates matched for session {session.session_id}")
            return []

        descriptions = await self.store.get_descriptions([hit.crate_id for hit in hits])
        selected = self.context_builder.select(hits, descriptions)
        session.inject_context([line for _, line in selected])

        crate_ids = [crate_id for crate_id, _ in selected]
        logger.info(f"✅ Context for session {session.session_id}: {crate_ids}")
        return crate_ids

    async def _generate(self, session: ConversationSession) -> str:
        try:
            text = await self.gpt_client.complete_messages(session.to_payload())
        finally:
            session.discard_context()
        session.append_assistant(text)
        return text
