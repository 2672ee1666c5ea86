"""
Asynchronous client for the OpenAI-compatible chat and embedding endpoints.
"""
import logging
from typing import List, Dict, Any, Optional

import httpx

from .config import Settings
from .exceptions import ProviderError

logger = logging.getLogger(__name__)


class ProviderClient:
    """
    An asynchronous client for the language-model provider (text generation and embeddings).

    The chat and embedding endpoints are configured as full URLs, so any
    OpenAI-compatible gateway can be used for either of them.
    """

    def __init__(
        self,
        api_key: str,
        chat_url: str,
        embedding_url: str,
        chat_model: str,
        embedding_model: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable is not set.")

        self.chat_url = chat_url
        self.embedding_url = embedding_url
        self.chat_model = chat_model
        self.embedding_model = embedding_model

        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ProviderClient":
        return cls(
            api_key=settings.api_key,
            chat_url=settings.chat_url,
            embedding_url=settings.embedding_url,
            chat_model=settings.chat_model,
            embedding_model=settings.embedding_model,
            timeout=settings.provider_timeout,
            **kwargs,
        )

    async def _post(self, url: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(url=url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"HTTP error occurred during {what}: "
                f"{e.response.status_code} - {e.response.text[:500]}"
            )
            raise ProviderError(
                f"{what} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Transport error occurred during {what}: {e!r}")
            raise ProviderError(f"{what} failed: {e!r}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"{what} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise ProviderError(f"{what} returned an unexpected payload")
        return body

    async def create_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Create a chat completion. Assumes an OpenAI-compatible API structure.

        Raises:
            ProviderError: On transport failure, non-2xx status or non-JSON body.
        """
        request_payload = {
            "model": model or self.chat_model,
            "messages": messages,
            **kwargs,
        }
        return await self._post(self.chat_url, request_payload, "chat completion")

    async def create_embeddings(
        self,
        texts: List[str],
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create embeddings for a list of texts. Assumes an OpenAI-compatible API structure.

        Raises:
            ProviderError: On transport failure, non-2xx status or non-JSON body.
        """
        request_payload = {
            "model": model or self.embedding_model,
            "input": texts,
        }
        return await self._post(self.embedding_url, request_payload, "embedding creation")

    async def close(self) -> None:
        """
        Close the underlying HTTP client.
        """
        await self._client.aclose()
