"""Google Gemini provider implementation."""

import logging
from typing import Optional
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .base import AIProvider, ProviderError, ProviderResponse, estimate_token_count

logger = logging.getLogger(__name__)


def to_gemini_history(messages: list[dict]) -> list[dict]:
    """Gemini calls the assistant role "model" and wraps text in parts."""
    return [
        {
            "role": "model" if m["role"] == "assistant" else "user",
            "parts": [m["content"]],
        }
        for m in messages
    ]


class GoogleProvider(AIProvider):
    """Google Gemini API provider with automatic retry on overload."""

    name = "google"

    def __init__(self, api_key: str):
        genai.configure(api_key=api_key)

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is retryable (overload, rate limit, etc.)."""
        # Google-specific exceptions
        if isinstance(error, (
            google_exceptions.ResourceExhausted,
            google_exceptions.ServiceUnavailable,
            google_exceptions.DeadlineExceeded,
        )):
            return True
        error_str = str(error).lower()
        if 'rate_limit' in error_str or 'overloaded' in error_str or 'quota' in error_str:
            return True
        return False

    async def generate(
        self,
        messages: list[dict],
        model: str,
        max_tokens: int = 4096,
        system_prompt: Optional[str] = None,
    ) -> ProviderResponse:
        """Generate response from Gemini, replaying earlier turns as chat history."""
        if not messages:
            raise ProviderError(self.name, "no messages to send")

        gemini_model = genai.GenerativeModel(
            model_name=model,
            generation_config={"max_output_tokens": max_tokens},
            system_instruction=system_prompt,
        )
        history = to_gemini_history(messages[:-1])
        last_message = messages[-1]["content"]

        async def _do_generate():
            chat = gemini_model.start_chat(history=history)
            response = await chat.send_message_async(last_message)

            content = response.text
            usage = getattr(response, "usage_metadata", None)
            if usage and usage.prompt_token_count:
                input_tokens = usage.prompt_token_count
                output_tokens = usage.candidates_token_count or 0
            else:
                input_tokens = estimate_token_count("".join(m["content"] for m in messages))
                output_tokens = estimate_token_count(content)

            return ProviderResponse(
                content=content,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        try:
            return await self._retry_with_backoff(_do_generate, f"Gemini generate ({model})")
        except (google_exceptions.GoogleAPIError, ValueError) as e:
            # response.text raises ValueError when the candidate was blocked
            raise ProviderError(self.name, str(e)) from e
