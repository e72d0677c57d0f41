"""Base provider interface."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 2  # seconds
MAX_DELAY = 10  # seconds


class ProviderResponse(BaseModel):
    """Standardized response from AI providers."""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class ProviderError(Exception):
    """A provider call failed after retries."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


def estimate_token_count(text: str) -> int:
    # Rule of thumb: ~4 chars per token
    return (len(text) + 3) // 4


class AIProvider(ABC):
    """Abstract base class for AI provider integrations."""

    name: str = "unknown"

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        model: str,
        max_tokens: int = 4096,
        system_prompt: Optional[str] = None,
    ) -> ProviderResponse:
        """
        Generate a reply to a conversation.

        Args:
            messages: Conversation as {"role": "user"|"assistant", "content": str} dicts
            model: Model identifier
            max_tokens: Maximum tokens to generate
            system_prompt: Optional system instructions

        Returns:
            ProviderResponse with the generated content and token usage

        Raises:
            ProviderError if the provider call fails
        """
        pass

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is retryable (overload, rate limit, etc.)."""
        error_str = str(error).lower()
        return 'rate_limit' in error_str or 'overloaded' in error_str

    async def _retry_with_backoff(self, operation, operation_name: str):
        """Execute an operation with exponential backoff retry."""
        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                return await operation()
            except Exception as e:
                last_error = e

                if not self._is_retryable_error(e):
                    # Non-retryable error, raise immediately
                    raise

                if attempt < MAX_RETRIES - 1:
                    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
                    logger.warning(
                        f"{operation_name}: Retryable error (attempt {attempt + 1}/{MAX_RETRIES}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        f"{operation_name}: All {MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )

        # All retries exhausted
        raise last_error
