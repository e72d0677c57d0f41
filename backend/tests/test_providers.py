"""Tests for the provider clients, without touching any remote API."""

from types import SimpleNamespace

import pytest

from iaiaz import providers
from iaiaz.core.config import get_settings
from iaiaz.providers import base
from iaiaz.providers.anthropic_provider import AnthropicProvider
from iaiaz.providers.base import estimate_token_count
from iaiaz.providers.mistral_provider import MistralProvider
from iaiaz.providers.openai_provider import OpenAIProvider


@pytest.fixture(autouse=True)
def fresh_registry(monkeypatch):
    monkeypatch.setattr(providers, "_providers", {})


def test_get_provider_requires_api_key(monkeypatch):
    monkeypatch.setattr(get_settings(), "anthropic_api_key", "sk-ant-test")
    monkeypatch.setattr(get_settings(), "google_api_key", "")

    anthropic = providers.get_provider("anthropic")

    assert isinstance(anthropic, AnthropicProvider)
    assert providers.get_provider("anthropic") is anthropic
    assert providers.get_provider("google") is None
    assert providers.get_provider("perroquet") is None


def test_estimate_token_count():
    assert estimate_token_count("") == 0
    assert estimate_token_count("abcd") == 1
    assert estimate_token_count("abcde") == 2


def test_openai_reasoning_models_use_completion_tokens():
    provider = OpenAIProvider("sk-test")

    kwargs = provider._build_kwargs([{"role": "user", "content": "Salut"}], "o3-mini", 512, "Sois bref")

    assert kwargs["max_completion_tokens"] == 512
    assert "max_tokens" not in kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "Sois bref"}


def test_mistral_keeps_max_tokens():
    provider = MistralProvider("mistral-test")

    kwargs = provider._build_kwargs([{"role": "user", "content": "Salut"}], "mistral-large-latest", 256, None)

    assert kwargs == {
        "model": "mistral-large-latest",
        "messages": [{"role": "user", "content": "Salut"}],
        "max_tokens": 256,
    }


async def test_anthropic_generate_maps_usage():
    provider = AnthropicProvider("sk-ant-test")
    sent = {}

    async def create(**kwargs):
        sent.update(kwargs)
        return SimpleNamespace(
            model="claude-sonnet-4-20250514",
            content=[SimpleNamespace(text="Bon"), SimpleNamespace(text="jour")],
            usage=SimpleNamespace(input_tokens=12, output_tokens=3),
        )

    provider.client = SimpleNamespace(messages=SimpleNamespace(create=create))

    response = await provider.generate(
        [{"role": "user", "content": "Salut", "id": "m1"}],
        "claude-sonnet-4-20250514",
        system_prompt="Tu es un tuteur.",
    )

    assert response.content == "Bonjour"
    assert (response.input_tokens, response.output_tokens) == (12, 3)
    assert sent["system"] == "Tu es un tuteur."
    assert sent["messages"] == [{"role": "user", "content": "Salut"}]


class FlakyProvider(base.AIProvider):
    name = "flaky"

    async def generate(self, messages, model, max_tokens=4096, system_prompt=None):
        raise NotImplementedError


async def test_retry_recovers_from_overload(monkeypatch):
    monkeypatch.setattr(base, "BASE_DELAY", 0)
    attempts = []

    async def operation():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("overloaded")
        return "ok"

    assert await FlakyProvider()._retry_with_backoff(operation, "flaky") == "ok"
    assert len(attempts) == 3


async def test_retry_gives_up_on_other_errors(monkeypatch):
    monkeypatch.setattr(base, "BASE_DELAY", 0)
    attempts = []

    async def operation():
        attempts.append(1)
        raise RuntimeError("invalid request")

    with pytest.raises(RuntimeError):
        await FlakyProvider()._retry_with_backoff(operation, "flaky")
    assert len(attempts) == 1
