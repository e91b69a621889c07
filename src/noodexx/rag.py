"""Retrieval helpers: the cloud RAG policy gate, chunking and prompt assembly."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence

from .config import CloudRAGPolicy
from .provider_manager import DualProviderManager

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 50

RAG_STATUS_LOCAL = "RAG Enabled (Local)"
RAG_STATUS_ENABLED = "RAG Enabled"
RAG_STATUS_DISABLED = "RAG Disabled (Cloud Policy)"

_BASE_PROMPT = "You are a helpful assistant."
_CONTEXT_INTRO = (
    "You are a helpful assistant. Use the following context to answer the user's question "
    "if it's relevant, or use your general knowledge if the context doesn't contain the answer."
)
_CONTEXT_OUTRO = "Answer based on the context above if relevant, otherwise answer from your general knowledge."


@dataclass(slots=True)
class RetrievedChunk:
    source: str
    text: str
    score: float = 0.0


@dataclass(frozen=True, slots=True)
class RAGDecision:
    allowed: bool
    status: str


class RAGPolicyEnforcer:
    """Decide whether retrieved documents may accompany a query.

    Local mode always allows retrieval. In cloud mode documents leave the
    machine only when the policy is ``allow_rag``.
    """

    def __init__(self, manager: DualProviderManager, policy: CloudRAGPolicy) -> None:
        self._manager = manager
        self._policy = CloudRAGPolicy(policy)

    @property
    def policy(self) -> CloudRAGPolicy:
        return self._policy

    def should_perform_rag(self) -> bool:
        return self.decide(self._manager.is_local_mode()).allowed

    def get_rag_status(self) -> str:
        return self.decide(self._manager.is_local_mode()).status

    def decide(self, local_mode: bool) -> RAGDecision:
        """Evaluate the gate for a mode already read alongside the serving adapter."""

        policy = self._policy
        if local_mode:
            logger.debug("rag.policy.enabled mode=local")
            return RAGDecision(allowed=True, status=RAG_STATUS_LOCAL)
        if policy is CloudRAGPolicy.ALLOW_RAG:
            logger.debug("rag.policy.enabled mode=cloud policy=%s", policy.value)
            return RAGDecision(allowed=True, status=RAG_STATUS_ENABLED)
        logger.debug("rag.policy.disabled mode=cloud policy=%s", policy.value)
        return RAGDecision(allowed=False, status=RAG_STATUS_DISABLED)

    def reload(self, policy: CloudRAGPolicy) -> None:
        self._policy = CloudRAGPolicy(policy)
        logger.debug("rag.policy.reloaded policy=%s", self._policy.value)


def build_prompt(query: str, chunks: Sequence[RetrievedChunk]) -> str:
    """Combine ``query`` with numbered, source-attributed context chunks."""

    if not chunks:
        return f"{_BASE_PROMPT}\n\nUser Question: {query}"

    parts = [_CONTEXT_INTRO, "\n\n", "Context:\n"]
    for index, chunk in enumerate(chunks, start=1):
        parts.append(f"\n[{index}] Source: {chunk.source}\n{chunk.text}\n")
    parts.append(f"\n\nUser Question: {query}")
    parts.append(f"\n\n{_CONTEXT_OUTRO}")
    return "".join(parts)


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[str]:
    """Split ``text`` into character windows of ``chunk_size`` sharing ``overlap`` characters."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be non-negative and smaller than chunk_size")

    step = chunk_size - overlap
    chunks: List[str] = []
    length = len(text)
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end == length:
            break
        start += step
    return chunks


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


__all__ = [
    "DEFAULT_CHUNK_OVERLAP",
    "DEFAULT_CHUNK_SIZE",
    "RAGDecision",
    "RAGPolicyEnforcer",
    "RAG_STATUS_DISABLED",
    "RAG_STATUS_ENABLED",
    "RAG_STATUS_LOCAL",
    "RetrievedChunk",
    "build_prompt",
    "chunk_text",
    "cosine_similarity",
]
