"""Mistral provider implementation using the OpenAI-compatible API."""

import logging

from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

# Mistral API base URL
MISTRAL_BASE_URL = "https://api.mistral.ai/v1"


class MistralProvider(OpenAIProvider):
    """Mistral API provider (chat completions over the OpenAI wire format)."""

    name = "mistral"

    def __init__(self, api_key: str):
        super().__init__(api_key=api_key, base_url=MISTRAL_BASE_URL)

    def _build_kwargs(self, messages, model, max_tokens, system_prompt) -> dict:
        chat_messages = []
        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})
        chat_messages.extend({"role": m["role"], "content": m["content"]} for m in messages)
        return {"model": model, "messages": chat_messages, "max_tokens": max_tokens}
