from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, Sequence

import pytest

from noodexx.config import AppConfig, PrivacyPolicy, ProviderSlotConfig
from noodexx.llm import Message, ProviderConfigError, ProviderError


class FakeProvider:
    """In-memory adapter with keyword-driven embeddings."""

    def __init__(
        self,
        name: str,
        is_local: bool,
        *,
        reply: Iterable[str] = ("Hello", " world"),
        fail_embed: bool = False,
        fail_chat: bool = False,
    ) -> None:
        self.name = name
        self.is_local = is_local
        self.reply = list(reply)
        self.fail_embed = fail_embed
        self.fail_chat = fail_chat
        self.embedded: list[str] = []
        self.chats: list[list[Message]] = []

    def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        if self.fail_embed:
            raise ProviderError(f"{self.name}: embed request failed: boom")
        lowered = text.lower()
        if "alpha" in lowered:
            return [1.0, 0.0, 0.0]
        if "beta" in lowered:
            return [0.0, 1.0, 0.0]
        return [0.0, 0.0, 1.0]

    def stream_chat(self, messages: Sequence[Message]) -> Iterator[str]:
        self.chats.append(list(messages))

        def generator() -> Iterator[str]:
            if self.fail_chat:
                raise ProviderError(f"{self.name}: stream request failed: boom")
            yield from self.reply

        return generator()


class FakeFactory:
    """Provider factory that builds ``FakeProvider`` objects and records calls."""

    def __init__(self, *, failing: Iterable[str] = ()) -> None:
        self.failing = set(failing)
        self.calls: list[ProviderSlotConfig] = []
        self.built: list[FakeProvider] = []

    def __call__(self, slot: ProviderSlotConfig) -> FakeProvider:
        self.calls.append(slot)
        if slot.type in self.failing:
            raise ProviderConfigError(f"{slot.type} API key is required")
        if slot.type not in {"ollama", "openai", "anthropic"}:
            raise ProviderConfigError(f"unknown provider type: {slot.type}")
        provider = FakeProvider(slot.type, slot.type == "ollama")
        self.built.append(provider)
        return provider


def ollama_slot(**overrides: str) -> ProviderSlotConfig:
    values = {
        "type": "ollama",
        "ollama_endpoint": "http://localhost:11434",
        "ollama_embed_model": "nomic-embed-text",
        "ollama_chat_model": "llama3.2",
    }
    values.update(overrides)
    return ProviderSlotConfig(**values)


def openai_slot(**overrides: str) -> ProviderSlotConfig:
    values = {
        "type": "openai",
        "openai_key": "sk-test",
        "openai_embed_model": "text-embedding-3-small",
        "openai_chat_model": "gpt-4",
    }
    values.update(overrides)
    return ProviderSlotConfig(**values)


def anthropic_slot(**overrides: str) -> ProviderSlotConfig:
    values = {
        "type": "anthropic",
        "anthropic_key": "sk-ant-test",
        "anthropic_chat_model": "claude-3-opus",
    }
    values.update(overrides)
    return ProviderSlotConfig(**values)


def build_config(
    *,
    local: ProviderSlotConfig | None = None,
    cloud: ProviderSlotConfig | None = None,
    default_to_local: bool = True,
    data_dir: Path | None = None,
) -> AppConfig:
    config = AppConfig(
        local_provider=local,
        cloud_provider=cloud,
        privacy=PrivacyPolicy(default_to_local=default_to_local),
    )
    config.logging.debug_enabled = False
    if data_dir is not None:
        config.data_dir = str(data_dir)
    return config


@pytest.fixture()
def fake_factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "NOODEXX_OLLAMA_ENDPOINT",
        "NOODEXX_OLLAMA_EMBED_MODEL",
        "NOODEXX_OLLAMA_CHAT_MODEL",
        "NOODEXX_CLOUD_PROVIDER",
        "NOODEXX_OPENAI_KEY",
        "NOODEXX_OPENAI_EMBED_MODEL",
        "NOODEXX_OPENAI_CHAT_MODEL",
        "NOODEXX_ANTHROPIC_KEY",
        "NOODEXX_ANTHROPIC_CHAT_MODEL",
        "NOODEXX_LOG_LEVEL",
        "NOODEXX_DEBUG_ENABLED",
        "NOODEXX_LOG_FILE",
        "NOODEXX_SERVER_PORT",
        "NOODEXX_SERVER_BIND_ADDRESS",
        "NOODEXX_DATA_DIR",
        "NOODEXX_CONFIG_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
