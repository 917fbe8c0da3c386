"""LLM provider client for JSON completions."""

import logging
from typing import Optional

from openai import AsyncOpenAI

from app.config import settings
from app.exceptions import ConfigurationException, GenerationException

logger = logging.getLogger(__name__)


def _rejects_response_format(error: Exception) -> bool:
    message = str(error).lower()
    return "response_format" in message or "unknown parameter" in message


class LLMClient:
    """Thin wrapper over chat completions that asks for a JSON object."""

    def __init__(self, openai_client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        """
        Initialize LLM client.

        Args:
            openai_client: AsyncOpenAI client instance (created lazily when omitted)
            model: Chat model name, defaults to settings
        """
        self._client = openai_client
        self.model = model or settings.generation_model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ConfigurationException(
                    "OpenAI API key is not configured",
                    details={"setting": "OPENAI_API_KEY"},
                )
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def complete_json(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        """
        Request a JSON completion.

        Asks for ``response_format=json_object`` and retries once without it
        when the provider rejects the parameter.

        Args:
            system_prompt: System message
            user_prompt: User message
            max_tokens: Completion token limit

        Returns:
            Raw completion text (may still need JSON recovery)

        Raises:
            ConfigurationException: If no API key is configured
            GenerationException: If the provider call fails
        """
        client = self.client
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0,
            "max_tokens": max_tokens,
        }

        try:
            response = await client.chat.completions.create(
                response_format={"type": "json_object"}, **kwargs
            )
        except Exception as e:
            if not _rejects_response_format(e):
                raise GenerationException(f"LLM request failed: {str(e)}") from e
            logger.info("Provider rejected response_format, retrying without it")
            try:
                response = await client.chat.completions.create(**kwargs)
            except Exception as retry_error:
                raise GenerationException(
                    f"LLM request failed: {str(retry_error)}"
                ) from retry_error

        if not response.choices:
            raise GenerationException("LLM returned no choices")
        return response.choices[0].message.content or ""
