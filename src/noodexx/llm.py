"""LLM provider adapters (Ollama, OpenAI, Anthropic) and the provider factory."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Final, Iterator, Protocol, Sequence, runtime_checkable

import httpx
from anthropic import Anthropic
from openai import OpenAI

from .config import PROVIDER_ANTHROPIC, PROVIDER_OLLAMA, PROVIDER_OPENAI, ProviderSlotConfig

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: Final[float] = 60.0
_ANTHROPIC_MAX_TOKENS: Final[int] = 4096


class ProviderError(RuntimeError):
    """Raised when an adapter call to its backend fails."""


class ProviderConfigError(ValueError):
    """Raised by the factory when a slot cannot produce a working adapter."""


@dataclass(slots=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability surface shared by every backend."""

    name: str
    is_local: bool

    def embed(self, text: str) -> list[float]:
        ...

    def stream_chat(self, messages: Sequence[Message]) -> Iterator[str]:
        ...


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class OllamaProvider:
    """Adapter for a locally hosted Ollama server."""

    name = PROVIDER_OLLAMA
    is_local = True

    def __init__(
        self,
        endpoint: str,
        embed_model: str,
        chat_model: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._embed_model = embed_model
        self._chat_model = chat_model
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def chat_model(self) -> str:
        return self._chat_model

    @property
    def embed_model(self) -> str:
        return self._embed_model

    def embed(self, text: str) -> list[float]:
        url = f"{self._endpoint}/api/embeddings"
        payload = {"model": self._embed_model, "prompt": text}
        start = time.perf_counter()
        try:
            response = httpx.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "llm.ollama.embed.error model=%s latency_ms=%s error=%s",
                self._embed_model,
                _elapsed_ms(start),
                exc,
            )
            raise ProviderError(f"ollama: embed request failed: {exc}") from exc

        vector = data.get("embedding") or []
        if not vector:
            logger.error("llm.ollama.embed.empty model=%s", self._embed_model)
            raise ProviderError("ollama: received empty embedding vector")
        logger.debug(
            "llm.ollama.embed.completed model=%s dims=%s latency_ms=%s",
            self._embed_model,
            len(vector),
            _elapsed_ms(start),
        )
        return [float(value) for value in vector]

    def stream_chat(self, messages: Sequence[Message]) -> Iterator[str]:
        url = f"{self._endpoint}/api/chat"
        payload = {
            "model": self._chat_model,
            "messages": [message.to_dict() for message in messages],
            "stream": True,
        }
        model = self._chat_model
        timeout = self._timeout

        def generator() -> Iterator[str]:
            start = time.perf_counter()
            chunks = 0
            try:
                with httpx.stream("POST", url, json=payload, timeout=timeout) as response:
                    response.raise_for_status()
                    for line in response.iter_lines():
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.debug("llm.ollama.stream.decode_error line=%s", line)
                            continue
                        content = (data.get("message") or {}).get("content") or ""
                        if content:
                            chunks += 1
                            yield str(content)
                        if data.get("done"):
                            break
            except httpx.HTTPError as exc:
                logger.error("llm.ollama.stream.error model=%s error=%s", model, exc)
                raise ProviderError(f"ollama: stream request failed: {exc}") from exc
            logger.debug(
                "llm.ollama.stream.completed model=%s chunks=%s latency_ms=%s",
                model,
                chunks,
                _elapsed_ms(start),
            )

        return generator()


class OpenAIProvider:
    """Adapter for the OpenAI embeddings and chat completions APIs."""

    name = PROVIDER_OPENAI
    is_local = False

    def __init__(
        self,
        api_key: str,
        embed_model: str,
        chat_model: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._embed_model = embed_model
        self._chat_model = chat_model
        self._client = OpenAI(api_key=api_key, timeout=timeout)

    @property
    def chat_model(self) -> str:
        return self._chat_model

    @property
    def embed_model(self) -> str:
        return self._embed_model

    def embed(self, text: str) -> list[float]:
        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(model=self._embed_model, input=text)
        except Exception as exc:
            logger.error(
                "llm.openai.embed.error model=%s latency_ms=%s error=%s",
                self._embed_model,
                _elapsed_ms(start),
                exc,
            )
            raise ProviderError(f"openai: embed request failed: {exc}") from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise ProviderError("openai: returned no embeddings")
        vector = list(data[0].embedding)
        logger.debug(
            "llm.openai.embed.completed model=%s dims=%s latency_ms=%s",
            self._embed_model,
            len(vector),
            _elapsed_ms(start),
        )
        return vector

    def stream_chat(self, messages: Sequence[Message]) -> Iterator[str]:
        client = self._client
        model = self._chat_model
        payload = [message.to_dict() for message in messages]

        def generator() -> Iterator[str]:
            start = time.perf_counter()
            try:
                stream = client.chat.completions.create(model=model, messages=payload, stream=True)
                for chunk in stream:
                    choices = getattr(chunk, "choices", None) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0].delta, "content", None)
                    if delta:
                        yield str(delta)
            except ProviderError:
                raise
            except Exception as exc:
                logger.error("llm.openai.stream.error model=%s error=%s", model, exc)
                raise ProviderError(f"openai: stream request failed: {exc}") from exc
            logger.debug("llm.openai.stream.completed model=%s latency_ms=%s", model, _elapsed_ms(start))

        return generator()


class AnthropicProvider:
    """Adapter for the Anthropic Messages API.

    Anthropic offers no first-party embeddings, so ``embed`` always fails; a
    cloud slot backed by Anthropic is chat-only.
    """

    name = PROVIDER_ANTHROPIC
    is_local = False

    def __init__(
        self,
        api_key: str,
        chat_model: str,
        *,
        embed_model: str = "",
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._chat_model = chat_model
        self._embed_model = embed_model
        self._client = Anthropic(api_key=api_key, timeout=timeout)

    @property
    def chat_model(self) -> str:
        return self._chat_model

    def embed(self, text: str) -> list[float]:
        logger.error("llm.anthropic.embed.unsupported model=%s", self._embed_model or "-")
        raise ProviderError("anthropic: embeddings are not supported")

    def stream_chat(self, messages: Sequence[Message]) -> Iterator[str]:
        client = self._client
        model = self._chat_model
        system_parts = [message.content for message in messages if message.role == "system"]
        conversation = [message.to_dict() for message in messages if message.role != "system"]
        kwargs: dict[str, object] = {
            "model": model,
            "max_tokens": _ANTHROPIC_MAX_TOKENS,
            "messages": conversation,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        def generator() -> Iterator[str]:
            start = time.perf_counter()
            try:
                with client.messages.stream(**kwargs) as stream:
                    for text in stream.text_stream:
                        if text:
                            yield text
            except Exception as exc:
                logger.error("llm.anthropic.stream.error model=%s error=%s", model, exc)
                raise ProviderError(f"anthropic: stream request failed: {exc}") from exc
            logger.debug("llm.anthropic.stream.completed model=%s latency_ms=%s", model, _elapsed_ms(start))

        return generator()


def _require(value: str, message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ProviderConfigError(message)
    return value


def create_provider(slot: ProviderSlotConfig, *, timeout: float = _DEFAULT_TIMEOUT) -> ProviderAdapter:
    """Build the adapter described by ``slot`` without touching the network.

    Callers must not pass an unconfigured slot; an empty type is reported as
    an unknown provider type like any other unrecognised tag.
    """

    provider_type = slot.type
    if provider_type == PROVIDER_OLLAMA:
        endpoint = _require(slot.ollama_endpoint, "ollama endpoint is required")
        embed_model = _require(slot.ollama_embed_model, "ollama embed model is required")
        chat_model = _require(slot.ollama_chat_model, "ollama chat model is required")
        return OllamaProvider(endpoint, embed_model, chat_model, timeout=timeout)
    if provider_type == PROVIDER_OPENAI:
        api_key = _require(slot.openai_key, "openai API key is required")
        embed_model = _require(slot.openai_embed_model, "openai embed model is required")
        chat_model = _require(slot.openai_chat_model, "openai chat model is required")
        return OpenAIProvider(api_key, embed_model, chat_model, timeout=timeout)
    if provider_type == PROVIDER_ANTHROPIC:
        api_key = _require(slot.anthropic_key, "anthropic API key is required")
        chat_model = _require(slot.anthropic_chat_model, "anthropic chat model is required")
        return AnthropicProvider(
            api_key,
            chat_model,
            embed_model=slot.anthropic_embed_model.strip(),
            timeout=timeout,
        )
    raise ProviderConfigError(f"unknown provider type: {provider_type}")


__all__ = [
    "AnthropicProvider",
    "Message",
    "OllamaProvider",
    "OpenAIProvider",
    "ProviderAdapter",
    "ProviderConfigError",
    "ProviderError",
    "create_provider",
]
