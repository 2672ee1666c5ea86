"""
Tests for the HTTP provider client and the chat completion wrapper.
"""

import json

import httpx
import pytest

from crate_search.config import Settings
from crate_search.exceptions import GenerationError, ProviderError
from crate_search.gpt_client import GPTClient
from crate_search.provider_client import ProviderClient

CHAT_URL = "https://llm.example.com/v1/chat/completions"
EMBEDDING_URL = "https://llm.example.com/v1/embeddings"


def make_client(handler, **kwargs):
    return ProviderClient(
        api_key="sk-test",
        chat_url=CHAT_URL,
        embedding_url=EMBEDDING_URL,
        chat_model="gpt-test",
        embedding_model="embed-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestProviderClient:

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            ProviderClient("", CHAT_URL, EMBEDDING_URL, "gpt-test", "embed-test")

    def test_from_settings(self):
        settings = Settings(api_key="sk-test", chat_url=CHAT_URL, embedding_url=EMBEDDING_URL)

        client = ProviderClient.from_settings(settings)

        assert client.chat_url == CHAT_URL
        assert client.embedding_model == "text-embedding-3-small"
        assert client.headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_create_embeddings_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2]}]})

        client = make_client(handler)
        body = await client.create_embeddings(["async io"])
        await client.close()

        assert seen == {
            "url": EMBEDDING_URL,
            "auth": "Bearer sk-test",
            "body": {"model": "embed-test", "input": ["async io"]},
        }
        assert body["data"][0]["embedding"] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_create_completion_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "hi"}}]})

        client = make_client(handler)
        await client.create_completion([{"role": "user", "content": "hello"}], temperature=0.3)
        await client.close()

        assert seen["url"] == CHAT_URL
        assert seen["body"] == {
            "model": "gpt-test",
            "messages": [{"role": "user", "content": "hello"}],
            "temperature": 0.3,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(401, False), (400, False), (429, True), (503, True)])
    async def test_http_error_status(self, status, retryable):
        client = make_client(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(ProviderError) as exc_info:
            await client.create_embeddings(["x"])
        await client.close()

        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            await client.create_embeddings(["x"])
        await client.close()

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
    ])
    async def test_unexpected_body(self, response):
        client = make_client(lambda request: response)

        with pytest.raises(ProviderError):
            await client.create_completion([{"role": "user", "content": "hello"}])
        await client.close()


class TestGPTClient:

    @pytest.mark.asyncio
    async def test_returns_stripped_content(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "  use serde \n"}}]})
        )

        answer = await GPTClient(client).complete_messages([{"role": "user", "content": "json?"}])
        await client.close()

        assert answer == "use serde"

    @pytest.mark.asyncio
    async def test_sends_configured_parameters(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = make_client(handler)
        await GPTClient(client, temperature=0.7, max_tokens=50).complete_messages(
            [{"role": "user", "content": "hi"}], max_tokens=10
        )
        await client.close()

        assert seen["model"] == "gpt-test"
        assert seen["temperature"] == 0.7
        assert seen["max_tokens"] == 10

    @pytest.mark.asyncio
    async def test_provider_failure_is_generation_error(self):
        client = make_client(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(GenerationError) as exc_info:
            await GPTClient(client).complete_messages([{"role": "user", "content": "hi"}])
        await client.close()

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"choices": []},
        {"choices": [{"message": {"content": None}}]},
        {"choices": [{"message": {"content": ""}}]},
        {},
    ])
    async def test_missing_content_is_generation_error(self, payload):
        client = make_client(lambda request: httpx.Response(200, json=payload))

        with pytest.raises(GenerationError):
            await GPTClient(client).complete_messages([{"role": "user", "content": "hi"}])
        await client.close()
