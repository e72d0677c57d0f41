"""OpenAI provider implementation."""

import logging
from typing import Optional
from openai import AsyncOpenAI, APIError, APIStatusError

from .base import AIProvider, ProviderError, ProviderResponse

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI API provider with automatic retry on overload."""

    name = "openai"

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is retryable (overload, rate limit, etc.)."""
        if isinstance(error, APIStatusError):
            # Retry on 429 (rate limit), 503 (service unavailable), 500 (server error)
            if error.status_code in (429, 500, 503):
                return True
        error_str = str(error).lower()
        if 'rate_limit' in error_str or 'overloaded' in error_str or 'server_error' in error_str:
            return True
        return False

    def _build_kwargs(
        self,
        messages: list[dict],
        model: str,
        max_tokens: int,
        system_prompt: Optional[str],
    ) -> dict:
        chat_messages = []
        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})
        chat_messages.extend({"role": m["role"], "content": m["content"]} for m in messages)

        kwargs = {"model": model, "messages": chat_messages}
        # Reasoning models take max_completion_tokens instead of max_tokens
        if model.startswith(("o1", "o3", "gpt-5")):
            kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    async def generate(
        self,
        messages: list[dict],
        model: str,
        max_tokens: int = 4096,
        system_prompt: Optional[str] = None,
    ) -> ProviderResponse:
        """Generate response from OpenAI models."""

        kwargs = self._build_kwargs(messages, model, max_tokens, system_prompt)

        async def _do_generate():
            response = await self.client.chat.completions.create(**kwargs)

            content = response.choices[0].message.content or ""
            input_tokens = output_tokens = 0
            if response.usage:
                input_tokens = response.usage.prompt_tokens
                output_tokens = response.usage.completion_tokens

            return ProviderResponse(
                content=content,
                model=response.model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        try:
            return await self._retry_with_backoff(_do_generate, f"{self.name} generate ({model})")
        except APIError as e:
            raise ProviderError(self.name, str(e)) from e
