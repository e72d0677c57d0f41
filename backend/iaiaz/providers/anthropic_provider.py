"""Anthropic Claude provider implementation."""

import logging
from typing import Optional
from anthropic import AsyncAnthropic, APIError, APIStatusError

from .base import AIProvider, ProviderError, ProviderResponse

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude API provider with automatic retry on overload."""

    name = "anthropic"

    def __init__(self, api_key: str):
        self.client = AsyncAnthropic(api_key=api_key)

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is retryable (overload, rate limit, etc.)."""
        if isinstance(error, APIStatusError):
            # Retry on 429 (rate limit), 503 (service unavailable), 529 (overloaded)
            if error.status_code in (429, 503, 529):
                return True
            # Also check error message for overload indicators
            error_str = str(error).lower()
            if 'overloaded' in error_str or 'rate_limit' in error_str:
                return True
        return False

    async def generate(
        self,
        messages: list[dict],
        model: str,
        max_tokens: int = 4096,
        system_prompt: Optional[str] = None,
    ) -> ProviderResponse:
        """Generate response from Claude with automatic retry on overload."""

        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        async def _do_generate():
            response = await self.client.messages.create(**kwargs)

            content = ""
            for block in response.content:
                if hasattr(block, "text"):
                    content += block.text

            return ProviderResponse(
                content=content,
                model=response.model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )

        try:
            return await self._retry_with_backoff(_do_generate, f"Claude generate ({model})")
        except APIError as e:
            raise ProviderError(self.name, str(e)) from e
