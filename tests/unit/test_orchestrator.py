"""
Tests for plain and retrieval-augmented chat turns.
"""

import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from crate_search.chat.orchestrator import ChatOrchestrator, ChatReply
from crate_search.chat.session import ConversationSession, Role
from crate_search.exceptions import GenerationError, ProviderError, StoreError


@pytest.fixture
def session():
    return ConversationSession("You recommend Rust crates.")


def _sent_messages(provider, call=-1):
    return provider.create_completion.await_args_list[call].kwargs["messages"]


class TestChatReply:

    def test_str_is_text(self):
        assert str(ChatReply("use serde")) == "use serde"

    def test_defaults(self):
        reply = ChatReply("use serde")

        assert reply.context_crate_ids == ()
        assert not reply.degraded
        assert reply.degradation_reason is None


class TestChat:

    @pytest.mark.asyncio
    async def test_appends_user_and_assistant(self, orchestrator, session, sample_ai_response):
        reply = await orchestrator.chat(session, "hi")

        assert reply.text == sample_ai_response
        assert [(m.role, m.content) for m in session.history] == [
            (Role.USER, "hi"), (Role.ASSISTANT, sample_ai_response),
        ]

    @pytest.mark.asyncio
    async def test_sends_full_snapshot(self, orchestrator, session, provider):
        await orchestrator.chat(session, "first")
        await orchestrator.chat(session, "second")

        messages = _sent_messages(provider)
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[-1]["content"] == "second"

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_user_message(self, orchestrator, session, provider):
        provider.create_completion = AsyncMock(side_effect=ProviderError("upstream down", status_code=503))

        with pytest.raises(GenerationError):
            await orchestrator.chat(session, "hi")

        snapshot = session.snapshot()
        assert snapshot[-1].role is Role.USER
        assert snapshot[-1].content == "hi"
        assert len(session) == 1

    @pytest.mark.asyncio
    async def test_empty_answer_is_generation_error(self, orchestrator, session, provider):
        provider.create_completion = AsyncMock(
            return_value={"choices": [{"message": {"role": "assistant", "content": "  "}}]}
        )

        with pytest.raises(GenerationError):
            await orchestrator.chat(session, "hi")

    @pytest.mark.asyncio
    async def test_resending_failed_message_is_not_duplicated(
        self, orchestrator, session, provider, sample_ai_response
    ):
        provider.create_completion = AsyncMock(side_effect=ProviderError("upstream down", status_code=503))
        with pytest.raises(GenerationError):
            await orchestrator.chat(session, "suggest a json crate")

        provider.create_completion = AsyncMock(return_value={
            "choices": [{"message": {"role": "assistant", "content": sample_ai_response}}]
        })
        await orchestrator.chat(session, "suggest a json crate")

        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT]
        assert [m["role"] for m in _sent_messages(provider)] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_same_text_after_answer_is_a_new_turn(self, orchestrator, session):
        await orchestrator.chat(session, "hi")
        await orchestrator.chat(session, "hi")

        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]

    def test_invalid_top_k(self, gpt_client):
        with pytest.raises(ValueError):
            ChatOrchestrator(gpt_client, top_k=0)


class TestChatWithEmbedding:

    @pytest.mark.asyncio
    async def test_context_is_injected_before_question(self, orchestrator, session, provider, sample_crates):
        reply = await orchestrator.chat_with_embedding(session, "async io")

        assert not reply.degraded
        assert reply.context_crate_ids == ("tokio", "reqwest")

        messages = _sent_messages(provider)
        assert [m["role"] for m in messages] == ["system", "system", "user"]
        assert "tokio" in messages[1]["content"]
        assert "serde" not in messages[1]["content"]
        assert messages[2]["content"] == "async io"

    @pytest.mark.asyncio
    async def test_context_is_not_persisted(self, orchestrator, session, sample_crates):
        await orchestrator.chat_with_embedding(session, "async io")

        assert [m.role for m in session.history] == [Role.USER, Role.ASSISTANT]
        assert not session.has_pending_context
        assert [m.role for m in session.snapshot()] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_empty_index_is_not_degraded(self, orchestrator, session, provider, add_crates):
        add_crates({"id": "serde", "description": "serialization framework"})

        reply = await orchestrator.chat_with_embedding(session, "suggest a json crate")

        assert not reply.degraded
        assert reply.context_crate_ids == ()
        assert [m["role"] for m in _sent_messages(provider)] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_unreachable_embedding_service_degrades_to_plain_chat(
        self, orchestrator, session, provider, sample_crates, sample_ai_response, caplog
    ):
        provider.create_embeddings = AsyncMock(side_effect=ProviderError("connection refused"))

        with caplog.at_level(logging.WARNING, logger="crate_search.chat.orchestrator"):
            reply = await orchestrator.chat_with_embedding(session, "suggest a json crate")

        assert reply.text == sample_ai_response
        assert reply.degraded
        assert "connection refused" in reply.degradation_reason
        assert reply.context_crate_ids == ()
        assert any("RAG failed" in record.getMessage() for record in caplog.records)
        assert [m["role"] for m in _sent_messages(provider)] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_store_failure_degrades_to_plain_chat(self, gpt_client, embedder, session, provider):
        search_engine = MagicMock()
        search_engine.search = AsyncMock(side_effect=StoreError("database is locked"))
        orchestrator = ChatOrchestrator(
            gpt_client, embedder=embedder, search_engine=search_engine, store=MagicMock()
        )

        reply = await orchestrator.chat_with_embedding(session, "async io")

        assert reply.degraded
        assert reply.degradation_reason.startswith("StoreError")

    @pytest.mark.asyncio
    async def test_description_failure_discards_partial_context(self, orchestrator, session, provider, sample_crates):
        orchestrator.store = MagicMock()
        orchestrator.store.get_descriptions = AsyncMock(side_effect=StoreError("connection reset"))

        reply = await orchestrator.chat_with_embedding(session, "async io")

        assert reply.degraded
        assert not session.has_pending_context
        assert [m["role"] for m in _sent_messages(provider)] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_without_retrieval_components_reports_degradation(self, gpt_client, session):
        orchestrator = ChatOrchestrator(gpt_client)

        reply = await orchestrator.chat_with_embedding(session, "suggest a json crate")

        assert reply.degraded
        assert reply.degradation_reason == "retrieval is not configured"

    @pytest.mark.asyncio
    async def test_generation_failure_is_not_swallowed(self, orchestrator, session, provider, sample_crates):
        provider.create_completion = AsyncMock(side_effect=ProviderError("bad gateway", status_code=502))

        with pytest.raises(GenerationError):
            await orchestrator.chat_with_embedding(session, "async io")

        assert session.snapshot()[-1].content == "async io"
        assert not session.has_pending_context

    @pytest.mark.asyncio
    async def test_retry_after_failure_does_not_duplicate_context(
        self, orchestrator, session, provider, sample_crates, sample_ai_response
    ):
        provider.create_completion = AsyncMock(side_effect=ProviderError("bad gateway", status_code=502))
        with pytest.raises(GenerationError):
            await orchestrator.chat_with_embedding(session, "async io")

        provider.create_completion = AsyncMock(return_value={
            "choices": [{"message": {"role": "assistant", "content": sample_ai_response}}]
        })
        await orchestrator.chat(session, "any other options?")

        roles = [m["role"] for m in _sent_messages(provider)]
        assert roles == ["system", "user", "user"]


class TestRetry:

    @pytest.mark.asyncio
    async def test_answers_unanswered_message(self, orchestrator, session, provider, sample_ai_response):
        provider.create_completion = AsyncMock(side_effect=ProviderError("upstream down", status_code=503))
        with pytest.raises(GenerationError):
            await orchestrator.chat(session, "hi")

        provider.create_completion = AsyncMock(return_value={
            "choices": [{"message": {"role": "assistant", "content": sample_ai_response}}]
        })
        reply = await orchestrator.retry(session, use_rag=False)

        assert reply.text == sample_ai_response
        assert [(m.role, m.content) for m in session.history] == [
            (Role.USER, "hi"), (Role.ASSISTANT, sample_ai_response),
        ]

    @pytest.mark.asyncio
    async def test_with_rag_injects_context_once(
        self, orchestrator, session, provider, sample_crates, sample_ai_response
    ):
        provider.create_completion = AsyncMock(side_effect=ProviderError("bad gateway", status_code=502))
        with pytest.raises(GenerationError):
            await orchestrator.chat_with_embedding(session, "async io")

        provider.create_completion = AsyncMock(return_value={
            "choices": [{"message": {"role": "assistant", "content": sample_ai_response}}]
        })
        reply = await orchestrator.retry(session)

        assert reply.context_crate_ids[0] == "tokio"
        assert [m["role"] for m in _sent_messages(provider)] == ["system", "system", "user"]
        assert len(session) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_retry(self, orchestrator, session, provider):
        with pytest.raises(ValueError):
            await orchestrator.retry(session)

        await orchestrator.chat(session, "hi")
        with pytest.raises(ValueError):
            await orchestrator.retry(session)

        assert provider.create_completion.await_count == 1
