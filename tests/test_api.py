from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import FakeFactory, build_config, ollama_slot, openai_slot
from noodexx.app import create_app
from noodexx.config import CloudRAGPolicy


def _client(tmp_path: Path, factory: FakeFactory, **config_kwargs) -> TestClient:
    prometheus = config_kwargs.pop("prometheus", False)
    policy = config_kwargs.pop("policy", CloudRAGPolicy.NO_RAG)
    config = build_config(data_dir=tmp_path / "data", **config_kwargs)
    config.privacy.cloud_rag_policy = policy
    config.metrics.prometheus_enabled = prometheus
    config_path = tmp_path / "config.json"
    config.save(config_path)
    app = create_app(config=config, config_path=config_path, provider_factory=factory)
    return TestClient(app)


def _services(client: TestClient):
    return client.app.state.services


def _read_config(tmp_path: Path) -> dict:
    return json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))


@pytest.fixture()
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture()
def client(tmp_path: Path, factory: FakeFactory) -> TestClient:
    return _client(tmp_path, factory, local=ollama_slot(), cloud=openai_slot(), default_to_local=True)


def test_ask_streams_answer_with_provider_headers(client: TestClient) -> None:
    services = _services(client)
    services.store.add_chunks("alpha.md", ["Alpha document"], [[1.0, 0.0, 0.0]])

    response = client.post("/api/ask", json={"query": "Tell me about alpha", "session_id": "s-1"})

    assert response.status_code == 200
    assert response.text == "Hello world"
    assert response.headers["X-Provider-Name"] == "Local AI (ollama)"
    assert response.headers["X-RAG-Status"] == "RAG Enabled (Local)"
    assert response.headers["X-Session-ID"] == "s-1"

    local = services.manager.get_local_provider()
    system, user = local.chats[0]
    assert system.content == "You are a helpful assistant."
    assert "[1] Source: alpha.md\nAlpha document" in user.content

    history = client.get("/api/session/s-1").json()["messages"]
    assert [(m["role"], m["content"]) for m in history] == [
        ("user", "Tell me about alpha"),
        ("assistant", "Hello world"),
    ]


def test_ask_in_cloud_mode_skips_retrieval_under_no_rag(tmp_path: Path, factory: FakeFactory) -> None:
    client = _client(tmp_path, factory, local=ollama_slot(), cloud=openai_slot(), default_to_local=False)
    services = _services(client)
    services.store.add_chunks("alpha.md", ["Alpha document"], [[1.0, 0.0, 0.0]])

    response = client.post("/api/ask", json={"query": "alpha?"})

    assert response.status_code == 200
    assert response.headers["X-Provider-Name"] == "Cloud AI (gpt-4)"
    assert response.headers["X-RAG-Status"] == "RAG Disabled (Cloud Policy)"
    assert response.headers["X-Session-ID"]
    cloud = services.manager.get_cloud_provider()
    assert cloud.embedded == []
    assert cloud.chats[0][1].content == "You are a helpful assistant.\n\nUser Question: alpha?"
    assert services.manager.get_local_provider().chats == []


def test_ask_gates_retrieval_on_the_mode_the_provider_was_selected_under(
    tmp_path: Path, factory: FakeFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    client = _client(tmp_path, factory, local=ollama_slot(), cloud=openai_slot(), default_to_local=False)
    services = _services(client)
    services.store.add_chunks("alpha.md", ["Alpha secret"], [[1.0, 0.0, 0.0]])
    manager = services.manager
    select = manager.select

    def select_then_toggle_to_local():
        selection = select()
        manager.reload(build_config(local=ollama_slot(), cloud=openai_slot(), default_to_local=True))
        return selection

    monkeypatch.setattr(manager, "select", select_then_toggle_to_local)

    response = client.post("/api/ask", json={"query": "alpha?"})

    assert response.status_code == 200
    assert response.headers["X-Provider-Name"] == "Cloud AI (gpt-4)"
    assert response.headers["X-RAG-Status"] == "RAG Disabled (Cloud Policy)"
    cloud = factory.built[1]
    assert cloud.name == "openai"
    assert cloud.embedded == []
    assert "Alpha secret" not in cloud.chats[0][1].content


def test_ask_in_cloud_mode_with_allow_rag_uses_context(tmp_path: Path, factory: FakeFactory) -> None:
    client = _client(
        tmp_path,
        factory,
        local=ollama_slot(),
        cloud=openai_slot(),
        default_to_local=False,
        policy=CloudRAGPolicy.ALLOW_RAG,
    )
    services = _services(client)
    services.store.add_chunks("beta.md", ["Beta entry"], [[0.0, 1.0, 0.0]])

    response = client.post("/api/ask", json={"query": "beta?"})

    assert response.headers["X-RAG-Status"] == "RAG Enabled"
    assert "Source: beta.md" in services.manager.get_cloud_provider().chats[0][1].content


def test_ask_with_unconfigured_active_provider_returns_400(tmp_path: Path, factory: FakeFactory) -> None:
    client = _client(tmp_path, factory, local=ollama_slot(), cloud=None, default_to_local=False)

    response = client.post("/api/ask", json={"query": "hello"})

    assert response.status_code == 400
    assert "cloud provider not configured" in response.json()["detail"]
    assert "settings" in response.json()["detail"]


def test_ask_provider_failure_returns_502(client: TestClient) -> None:
    _services(client).manager.get_local_provider().fail_chat = True

    response = client.post("/api/ask", json={"query": "hello"})

    assert response.status_code == 502
    assert "stream request failed" in response.json()["detail"]


def test_ask_requires_query(client: TestClient) -> None:
    assert client.post("/api/ask", json={"query": "  "}).status_code == 400
    assert client.post("/api/ask", content=b"nope", headers={"content-type": "application/json"}).status_code == 400


def test_privacy_toggle_switches_provider_and_persists(client: TestClient, tmp_path: Path) -> None:
    response = client.post("/api/privacy-toggle", json={"mode": "cloud"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["mode"] == "cloud"
    assert payload["provider_name"] == "Cloud AI (gpt-4)"
    assert payload["rag_status"] == "RAG Disabled (Cloud Policy)"
    assert "latency_ms" in payload
    assert _read_config(tmp_path)["privacy"]["default_to_local"] is False
    assert _services(client).manager.is_local_mode() is False

    back = client.post("/api/privacy-toggle", json={"mode": "local"}).json()
    assert back["provider_name"] == "Local AI (ollama)"
    assert back["rag_status"] == "RAG Enabled (Local)"


@pytest.mark.parametrize("body", [b'{"mode": "hybrid"}', b"invalid json", b'["cloud"]'])
def test_privacy_toggle_rejects_bad_requests(client: TestClient, body: bytes) -> None:
    response = client.post("/api/privacy-toggle", content=body, headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["success"] is False


def _form(**overrides: str) -> dict[str, str]:
    form = {
        "local_provider_type": "ollama",
        "local_ollama_endpoint": "http://localhost:11434",
        "local_ollama_embed_model": "nomic-embed-text",
        "local_ollama_chat_model": "llama3.2",
        "cloud_provider_type": "openai",
        "cloud_openai_key": "sk-new",
        "cloud_openai_embed_model": "text-embedding-3-small",
        "cloud_openai_chat_model": "gpt-4o",
        "cloud_rag_policy": "no_rag",
    }
    form.update(overrides)
    return form


@pytest.mark.parametrize(
    ("overrides", "detail"),
    [
        (
            {"local_ollama_endpoint": "http://192.168.1.20:11434"},
            "Local provider validation failed: local provider must use localhost endpoint",
        ),
        ({"local_provider_type": "openai"}, "Local provider validation failed: local provider must be Ollama"),
        (
            {"cloud_openai_key": "", "cloud_provider_type": "openai"},
            "Cloud provider validation failed: OpenAI API key is required",
        ),
        (
            {"cloud_provider_type": "anthropic", "cloud_anthropic_key": "sk-ant"},
            "Cloud provider validation failed: Anthropic chat model is required",
        ),
        (
            {"cloud_rag_policy": "maybe"},
            "RAG policy validation failed: invalid RAG policy: maybe (must be 'no_rag' or 'allow_rag')",
        ),
    ],
)
def test_save_config_validation_messages(
    tmp_path: Path, factory: FakeFactory, overrides: dict[str, str], detail: str
) -> None:
    client = _client(tmp_path, factory, local=ollama_slot(), cloud=None)

    response = client.post("/api/config", data=_form(**overrides))

    assert response.status_code == 400
    assert response.json()["detail"] == detail
    assert _read_config(tmp_path)["cloud_provider"]["type"] == ""


def test_save_config_persists_and_reloads(client: TestClient, tmp_path: Path) -> None:
    response = client.post(
        "/api/config",
        data=_form(cloud_openai_chat_model="gpt-4o", cloud_rag_policy="allow_rag"),
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["cloud_provider"]["openai_key"] == "********"
    saved = _read_config(tmp_path)
    assert saved["cloud_provider"]["openai_key"] == "sk-new"
    assert saved["privacy"]["cloud_rag_policy"] == "allow_rag"

    client.post("/api/privacy-toggle", json={"mode": "cloud"})
    status = client.get("/api/config").json()
    assert status["provider_name"] == "Cloud AI (gpt-4o)"
    assert status["rag_status"] == "RAG Enabled"
    assert status["local_mode"] is False


def test_save_config_keeps_masked_key(client: TestClient, tmp_path: Path) -> None:
    response = client.post("/api/config", data=_form(cloud_openai_key="********"))

    assert response.status_code == 200
    assert _read_config(tmp_path)["cloud_provider"]["openai_key"] == "sk-test"


def test_save_config_can_remove_cloud_provider(client: TestClient, tmp_path: Path) -> None:
    response = client.post("/api/config", data=_form(cloud_provider_type=""))

    assert response.status_code == 200
    assert response.json()["cloud_provider"] is None
    assert _services(client).manager.get_cloud_provider() is None
    assert _read_config(tmp_path)["cloud_provider"]["type"] == ""


def test_rejected_reload_restores_previous_config(client: TestClient, factory: FakeFactory, tmp_path: Path) -> None:
    before = _read_config(tmp_path)
    factory.failing = {"ollama", "openai"}

    response = client.post("/api/config", data=_form())

    assert response.status_code == 400
    assert "at least one provider (local or cloud) must be configured after reload" in response.json()["detail"]
    assert _read_config(tmp_path) == before
    assert _services(client).manager.get_provider_name() == "Local AI (ollama)"
    assert _services(client).config.cloud_provider.openai_chat_model == "gpt-4"


def test_ingest_library_and_sessions(client: TestClient) -> None:
    response = client.post("/api/ingest", json={"source": "alpha.md", "text": "Alpha notes", "tags": "a, b"})

    assert response.status_code == 200
    assert response.json()["chunks"] == 1
    documents = client.get("/api/library").json()["documents"]
    assert documents[0]["source"] == "alpha.md"
    assert documents[0]["tags"] == ["a", "b"]

    client.post("/api/ask", json={"query": "alpha", "session_id": "abc"})
    sessions = client.get("/api/sessions").json()["sessions"]
    assert sessions[0]["session_id"] == "abc"

    assert client.delete("/api/library/alpha.md").status_code == 200
    assert client.delete("/api/library/alpha.md").status_code == 404


def test_ingest_rejects_guardrail_violations(client: TestClient) -> None:
    response = client.post("/api/ingest", json={"source": "secrets/.env", "text": "KEY=1"})

    assert response.status_code == 400
    assert "sensitive filename" in response.json()["detail"]


def test_ingest_file_upload(client: TestClient) -> None:
    response = client.post(
        "/api/ingest/file",
        files={"file": ("notes.md", b"# Beta\nbeta body", "text/markdown")},
        data={"tags": "docs"},
    )

    assert response.status_code == 200
    assert response.json()["source"] == "notes.md"


def test_test_connection(client: TestClient) -> None:
    ok = client.post("/api/test-connection")
    assert ok.status_code == 200
    assert ok.json()["success"] is True

    _services(client).manager.get_local_provider().fail_embed = True
    failed = client.post("/api/test-connection")
    assert failed.status_code == 400
    assert failed.json() == {"success": False, "error": "ollama: embed request failed: boom"}


def test_metrics_endpoint_disabled_by_default(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 404


def test_metrics_endpoint_exports_chat_counters(tmp_path: Path, factory: FakeFactory) -> None:
    client = _client(tmp_path, factory, local=ollama_slot(), prometheus=True)
    client.post("/api/ask", json={"query": "hello"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "noodexx_chat_requests_total" in response.text
    assert "noodexx_chat_stream_duration" in response.text
