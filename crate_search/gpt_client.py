from typing import List, Dict, Optional
import logging

from .config import Settings
from .exceptions import GenerationError, ProviderError
from .provider_client import ProviderClient

logger = logging.getLogger(__name__)


class GPTClient:
    """
    A wrapper that provides a consistent interface for chat completions
    on top of ProviderClient.
    """

    def __init__(
        self,
        provider: ProviderClient,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> None:
        self.provider = provider
        self.model = model or provider.chat_model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, provider: ProviderClient, settings: Settings) -> "GPTClient":
        return cls(
            provider,
            model=settings.chat_model,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )

    async def complete_messages(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Execute a chat completion and return the text content.

        Raises:
            GenerationError: If the call fails or the provider returns no content.
        """
        logger.info(f"🚀 Starting LLM request: model={self.model}, messages={len(messages)}")

        try:
            resp = await self.provider.create_completion(
                model=self.model,
                messages=messages,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            )
        except ProviderError as e:
            logger.error(f"❌ LLM request failed: {e}")
            raise GenerationError(str(e), status_code=e.status_code) from e

        usage = resp.get("usage") or {}
        if usage:
            logger.info(
                f"🧮 Chat tokens: prompt={usage.get('prompt_tokens')}, "
                f"completion={usage.get('completion_tokens')}, total={usage.get('total_tokens')}"
            )

        try:
            content = resp["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("LLM response has no choices[0].message.content") from e

        if not isinstance(content, str) or not content.strip():
            logger.warning("LLM returned an empty response.")
            raise GenerationError("LLM returned empty response.")

        logger.info("✅ LLM request succeeded.")
        return content.strip()
