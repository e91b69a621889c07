from __future__ import annotations

import pytest

from conftest import FakeFactory, build_config, ollama_slot, openai_slot
from noodexx.config import CloudRAGPolicy
from noodexx.provider_manager import DualProviderManager
from noodexx.rag import RAGPolicyEnforcer, RetrievedChunk, build_prompt, chunk_text, cosine_similarity


def _manager(default_to_local: bool) -> DualProviderManager:
    config = build_config(local=ollama_slot(), cloud=openai_slot(), default_to_local=default_to_local)
    return DualProviderManager(config, provider_factory=FakeFactory())


@pytest.mark.parametrize(
    ("local", "policy", "allowed", "status"),
    [
        (True, CloudRAGPolicy.NO_RAG, True, "RAG Enabled (Local)"),
        (True, CloudRAGPolicy.ALLOW_RAG, True, "RAG Enabled (Local)"),
        (False, CloudRAGPolicy.ALLOW_RAG, True, "RAG Enabled"),
        (False, CloudRAGPolicy.NO_RAG, False, "RAG Disabled (Cloud Policy)"),
    ],
)
def test_policy_gate(local: bool, policy: CloudRAGPolicy, allowed: bool, status: str) -> None:
    gate = RAGPolicyEnforcer(_manager(local), policy)

    assert gate.should_perform_rag() is allowed
    assert gate.get_rag_status() == status


def test_policy_gate_follows_manager_reload_and_policy_reload() -> None:
    manager = _manager(True)
    gate = RAGPolicyEnforcer(manager, CloudRAGPolicy.NO_RAG)

    manager.reload(build_config(local=ollama_slot(), cloud=openai_slot(), default_to_local=False))
    assert gate.get_rag_status() == "RAG Disabled (Cloud Policy)"

    gate.reload(CloudRAGPolicy("allow_rag"))
    assert gate.should_perform_rag() is True
    assert gate.get_rag_status() == "RAG Enabled"


def test_build_prompt_without_context() -> None:
    assert build_prompt("What is noodexx?", []) == "You are a helpful assistant.\n\nUser Question: What is noodexx?"


def test_build_prompt_numbers_sources() -> None:
    prompt = build_prompt(
        "Where?",
        [RetrievedChunk(source="a.md", text="Alpha text"), RetrievedChunk(source="b.md", text="Beta text")],
    )

    assert "Context:\n" in prompt
    assert "\n[1] Source: a.md\nAlpha text\n" in prompt
    assert "\n[2] Source: b.md\nBeta text\n" in prompt
    assert "User Question: Where?" in prompt
    assert prompt.endswith("otherwise answer from your general knowledge.")


def test_chunk_text_windows_overlap() -> None:
    text = "".join(chr(ord("a") + i % 26) for i in range(25))

    chunks = chunk_text(text, chunk_size=10, overlap=3)

    assert chunks == [text[0:10], text[7:17], text[14:24], text[21:25]]


def test_chunk_text_counts_characters_not_bytes() -> None:
    text = "한국어텍스트" * 3

    chunks = chunk_text(text, chunk_size=6, overlap=0)

    assert chunks == ["한국어텍스트"] * 3


def test_chunk_text_edge_cases() -> None:
    assert chunk_text("") == []
    assert chunk_text("short") == ["short"]
    with pytest.raises(ValueError):
        chunk_text("abc", chunk_size=5, overlap=5)


def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 2.0], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_decide_uses_the_supplied_mode_not_the_managers_current_one() -> None:
    gate = RAGPolicyEnforcer(_manager(True), CloudRAGPolicy.NO_RAG)

    decision = gate.decide(False)

    assert decision.allowed is False
    assert decision.status == "RAG Disabled (Cloud Policy)"
    assert gate.decide(True).status == "RAG Enabled (Local)"
