"""FastAPI application setup for noodexx."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
import threading
import time
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import (
    AppConfig,
    ConfigError,
    ConfigValidationError,
    LoggingConfig,
    ProviderSlotConfig,
    parse_rag_policy,
    validate_cloud,
    validate_local,
)
from .ingestion import DocumentIngestor, IngestionError
from .llm import Message, ProviderError
from .observability import MetricsRecorder
from .provider_manager import (
    DualProviderManager,
    ProviderFactory,
    ProviderNotConfiguredError,
    ProviderReloadError,
)
from .rag import RAGPolicyEnforcer, build_prompt
from .store import ChunkStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"
_SYSTEM_PROMPT = "You are a helpful assistant."
_MASKED_KEY = "********"
_RETRIEVAL_TOP_K = 5
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


_LOGGING_CONFIGURED = False


def _ensure_logging(settings: LoggingConfig | None = None, data_dir: Path | None = None) -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    settings = settings or LoggingConfig()
    noodexx_logger = logging.getLogger("noodexx")
    uvicorn_logger = logging.getLogger("uvicorn.error")
    level = _LEVELS.get(settings.level, logging.INFO)

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        noodexx_logger.handlers = []
        for handler in handlers:
            noodexx_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        noodexx_logger.addHandler(handler)

    if settings.debug_enabled and settings.file:
        log_path = Path(settings.file)
        if not log_path.is_absolute() and data_dir is not None:
            log_path = data_dir / log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=max(settings.max_size_mb, 1) * 1024 * 1024,
                backupCount=max(settings.max_backups, 0),
                encoding="utf-8",
            )
        except OSError as exc:
            noodexx_logger.warning("logging.file.unavailable path=%s error=%s", log_path, exc)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            noodexx_logger.addHandler(file_handler)
            level = logging.DEBUG

    noodexx_logger.setLevel(level)
    noodexx_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        config: AppConfig,
        config_path: Path,
        manager: DualProviderManager,
        rag_policy: RAGPolicyEnforcer,
        store: ChunkStore,
        ingestor: DocumentIngestor,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.config = config
        self.config_path = config_path
        self.manager = manager
        self.rag_policy = rag_policy
        self.store = store
        self.ingestor = ingestor
        self.metrics = metrics
        # Serialises settings writes so the file, the manager and the gate move together.
        self.config_lock = threading.Lock()

    def apply_config(self, updated: AppConfig) -> None:
        """Persist ``updated``, reload providers and roll the file back on rejection."""

        previous = self.config
        updated.save(self.config_path)
        try:
            self.manager.reload(updated)
        except ProviderReloadError:
            try:
                previous.save(self.config_path)
            except ConfigError as exc:
                logger.error("config.rollback.failed path=%s error=%s", self.config_path, exc)
            raise
        self.config = updated
        self.rag_policy.reload(updated.privacy.cloud_rag_policy)


def _build_metrics(config: AppConfig) -> MetricsRecorder:
    return MetricsRecorder(
        enabled=config.metrics.enabled,
        prometheus_enabled=config.metrics.prometheus_enabled,
    )


def create_app(
    *,
    config: AppConfig | None = None,
    config_path: str | Path | None = None,
    manager: DualProviderManager | None = None,
    store: ChunkStore | None = None,
    metrics: MetricsRecorder | None = None,
    provider_factory: ProviderFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    config_path = Path(config_path or os.getenv("NOODEXX_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    config = config or AppConfig.load(config_path)
    data_path = config.data_path

    _ensure_logging(config.logging, data_path)

    metrics = metrics or _build_metrics(config)
    manager = manager or DualProviderManager(
        config,
        logger=logging.getLogger("noodexx.provider"),
        provider_factory=provider_factory,
        metrics=metrics,
    )
    store = store or ChunkStore(data_path / "noodexx.db")
    rag_policy = RAGPolicyEnforcer(manager, config.privacy.cloud_rag_policy)
    ingestor = DocumentIngestor(manager, store, config.guardrails, metrics=metrics)

    app = FastAPI(title="noodexx")
    app.state.services = ApplicationState(
        config=config,
        config_path=config_path,
        manager=manager,
        rag_policy=rag_policy,
        store=store,
        ingestor=ingestor,
        metrics=metrics,
    )
    logger.info(
        "app.started provider=%s rag_status=%s config=%s",
        manager.get_provider_name(),
        rag_policy.get_rag_status(),
        config_path,
    )

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    async def _read_json(request: Request) -> dict:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid request body") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid request body")
        return payload

    # Chat --------------------------------------------------------------

    @app.post("/api/ask", response_class=StreamingResponse)
    async def ask(request: Request, state: ApplicationState = Depends(get_state)) -> StreamingResponse:
        payload = await _read_json(request)
        query = str(payload.get("query") or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query is required.")
        session_id = str(payload.get("session_id") or "").strip() or uuid4().hex

        try:
            selection = state.manager.select()
        except ProviderNotConfiguredError as exc:
            logger.warning("ask.provider.not_configured error=%s", exc)
            raise HTTPException(
                status_code=400,
                detail=f"{exc}. Please configure it in settings.",
            ) from exc
        provider = selection.provider
        provider_name = selection.name
        # Gate on the mode the adapter was selected under, not a fresh read.
        decision = state.rag_policy.decide(selection.is_local)
        rag_status = decision.status

        chunks = []
        if decision.allowed:
            try:
                vector = await asyncio.to_thread(provider.embed, query)
            except ProviderError as exc:
                logger.warning("ask.retrieval.skipped provider=%s error=%s", provider.name, exc)
            else:
                chunks = await asyncio.to_thread(state.store.search, vector, _RETRIEVAL_TOP_K)

        prompt = build_prompt(query, chunks)
        await asyncio.to_thread(state.store.save_message, session_id, "user", query)
        messages = [Message(role="system", content=_SYSTEM_PROMPT), Message(role="user", content=prompt)]

        start_time = time.perf_counter()
        stream = iter(provider.stream_chat(messages))
        try:
            first = await asyncio.to_thread(next, stream, None)
        except ProviderError as exc:
            if state.metrics:
                state.metrics.increment("chat.requests", provider=provider.name, status="error")
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        logger.info(
            "ask.stream.started session=%s provider=%s sources=%s rag_status=%s",
            session_id,
            provider.name,
            len(chunks),
            rag_status,
        )

        def _iterator() -> Iterator[str]:
            parts: list[str] = []
            status = "ok"
            try:
                if first:
                    parts.append(first)
                    yield first
                for delta in stream:
                    parts.append(delta)
                    yield delta
            except ProviderError as exc:
                status = "error"
                logger.error("ask.stream.runtime_error session=%s error=%s", session_id, exc)
                yield f"\n\n[error] {exc}"
            finally:
                if state.metrics:
                    state.metrics.increment("chat.requests", provider=provider.name, status=status)
                    state.metrics.record_timing(
                        "chat.stream_duration",
                        time.perf_counter() - start_time,
                        provider=provider.name,
                    )
            state.store.save_message(session_id, "assistant", "".join(parts))

        headers = {
            "X-Provider-Name": provider_name,
            "X-RAG-Status": rag_status,
            "X-Session-ID": session_id,
            "Cache-Control": "no-cache",
        }
        return StreamingResponse(_iterator(), media_type="text/plain; charset=utf-8", headers=headers)

    # Settings ----------------------------------------------------------

    def _config_payload(state: ApplicationState) -> dict:
        current = state.config
        data = current.to_dict()
        data["local_provider"] = current.local_provider.masked() if current.local_provider else None
        data["cloud_provider"] = current.cloud_provider.masked() if current.cloud_provider else None
        local_mode = state.manager.is_local_mode()
        data["provider_name"] = state.manager.get_provider_name()
        data["rag_status"] = state.rag_policy.decide(local_mode).status
        data["local_mode"] = local_mode
        return data

    @app.get("/api/config")
    async def get_config(state: ApplicationState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(_config_payload(state))

    def _secret(submitted: str | None, existing: ProviderSlotConfig | None, provider_type: str, attr: str) -> str:
        value = (submitted or "").strip()
        if value and value != _MASKED_KEY:
            return value
        if existing is not None and existing.type == provider_type:
            return getattr(existing, attr)
        return ""

    @app.post("/api/config")
    def save_config(
        state: ApplicationState = Depends(get_state),
        local_provider_type: str = Form(""),
        local_ollama_endpoint: str = Form(""),
        local_ollama_embed_model: str = Form(""),
        local_ollama_chat_model: str = Form(""),
        cloud_provider_type: str = Form(""),
        cloud_openai_key: str = Form(""),
        cloud_openai_embed_model: str = Form(""),
        cloud_openai_chat_model: str = Form(""),
        cloud_anthropic_key: str = Form(""),
        cloud_anthropic_chat_model: str = Form(""),
        cloud_rag_policy: str = Form(""),
    ) -> JSONResponse:
        with state.config_lock:
            current = state.config
            local_slot: ProviderSlotConfig | None = None
            if local_provider_type.strip():
                local_slot = ProviderSlotConfig(
                    type=local_provider_type,
                    ollama_endpoint=local_ollama_endpoint.strip(),
                    ollama_embed_model=local_ollama_embed_model.strip(),
                    ollama_chat_model=local_ollama_chat_model.strip(),
                )
            cloud_slot: ProviderSlotConfig | None = None
            if cloud_provider_type.strip():
                cloud_slot = ProviderSlotConfig(type=cloud_provider_type)
                cloud_slot.openai_key = _secret(cloud_openai_key, current.cloud_provider, cloud_slot.type, "openai_key")
                cloud_slot.openai_embed_model = cloud_openai_embed_model.strip()
                cloud_slot.openai_chat_model = cloud_openai_chat_model.strip()
                cloud_slot.anthropic_key = _secret(
                    cloud_anthropic_key, current.cloud_provider, cloud_slot.type, "anthropic_key"
                )
                cloud_slot.anthropic_chat_model = cloud_anthropic_chat_model.strip()

            try:
                validate_local(local_slot)
            except ConfigValidationError as exc:
                raise HTTPException(status_code=400, detail=f"Local provider validation failed: {exc}") from exc
            try:
                validate_cloud(cloud_slot)
            except ConfigValidationError as exc:
                raise HTTPException(status_code=400, detail=f"Cloud provider validation failed: {exc}") from exc
            policy = current.privacy.cloud_rag_policy
            if cloud_rag_policy.strip():
                try:
                    policy = parse_rag_policy(cloud_rag_policy.strip())
                except ConfigValidationError as exc:
                    raise HTTPException(status_code=400, detail=f"RAG policy validation failed: {exc}") from exc

            updated = current.clone()
            updated.local_provider = local_slot
            updated.cloud_provider = cloud_slot
            updated.privacy.cloud_rag_policy = policy
            try:
                state.apply_config(updated)
            except ProviderReloadError as exc:
                logger.error("config.save.rejected error=%s", exc)
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            except ConfigError as exc:
                logger.error("config.save.failed path=%s error=%s", state.config_path, exc)
                raise HTTPException(status_code=500, detail=str(exc)) from exc

        logger.info(
            "config.saved local=%s cloud=%s rag_policy=%s",
            local_slot.type if local_slot else "-",
            cloud_slot.type if cloud_slot else "-",
            policy.value,
        )
        return JSONResponse({"success": True, **_config_payload(state)})

    @app.post("/api/privacy-toggle")
    async def privacy_toggle(request: Request, state: ApplicationState = Depends(get_state)) -> JSONResponse:
        start = time.perf_counter()
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"success": False, "error": "Invalid request body"}, status_code=400)
        mode = payload.get("mode") if isinstance(payload, dict) else None
        if mode not in ("local", "cloud"):
            return JSONResponse(
                {"success": False, "error": "Invalid mode: must be 'local' or 'cloud'"},
                status_code=400,
            )

        def _toggle() -> None:
            with state.config_lock:
                updated = state.config.clone()
                updated.privacy.default_to_local = mode == "local"
                state.apply_config(updated)

        try:
            await asyncio.to_thread(_toggle)
        except ProviderReloadError as exc:
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        except ConfigError as exc:
            logger.error("privacy.toggle.persist_failed error=%s", exc)
            return JSONResponse({"success": False, "error": str(exc)}, status_code=500)

        latency_ms = round((time.perf_counter() - start) * 1000.0, 3)
        logger.info("privacy.toggle mode=%s latency_ms=%s", mode, latency_ms)
        return JSONResponse(
            {
                "success": True,
                "mode": mode,
                "provider_name": state.manager.get_provider_name(),
                "rag_status": state.rag_policy.get_rag_status(),
                "latency_ms": latency_ms,
            }
        )

    @app.post("/api/test-connection")
    def test_connection(state: ApplicationState = Depends(get_state)) -> JSONResponse:
        try:
            provider = state.manager.get_active_provider()
            provider.embed("test")
        except (ProviderNotConfiguredError, ProviderError) as exc:
            logger.warning("provider.test_connection.failed error=%s", exc)
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        return JSONResponse(
            {
                "success": True,
                "message": "Connection successful",
                "provider_name": state.manager.get_provider_name(),
            }
        )

    # Knowledge ---------------------------------------------------------

    def _parse_tags(raw: object) -> list[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            return [tag.strip() for tag in raw.split(",") if tag.strip()]
        if isinstance(raw, Iterable):
            return [str(tag).strip() for tag in raw if str(tag).strip()]
        return []

    def _ingestion_error(exc: Exception) -> HTTPException:
        if isinstance(exc, ProviderNotConfiguredError):
            return HTTPException(status_code=400, detail=f"{exc}. Please configure it in settings.")
        return HTTPException(status_code=400, detail=str(exc))

    @app.post("/api/ingest")
    async def ingest(request: Request, state: ApplicationState = Depends(get_state)) -> JSONResponse:
        payload = await _read_json(request)
        source = str(payload.get("source") or "").strip()
        text = str(payload.get("text") or "")
        if not source:
            raise HTTPException(status_code=400, detail="source is required")
        try:
            result = await asyncio.to_thread(
                state.ingestor.ingest_text, source, text, _parse_tags(payload.get("tags"))
            )
        except (IngestionError, ProviderNotConfiguredError) as exc:
            raise _ingestion_error(exc) from exc
        return JSONResponse(
            {"success": True, "source": result.source, "chunks": result.chunks_ingested, "replaced": result.replaced}
        )

    @app.post("/api/ingest/file")
    async def ingest_file(
        file: UploadFile = File(...),
        tags: str = Form(""),
        state: ApplicationState = Depends(get_state),
    ) -> JSONResponse:
        filename = (file.filename or "").strip()
        if not filename:
            raise HTTPException(status_code=400, detail="File name is required")
        data = await file.read()
        try:
            result = await asyncio.to_thread(state.ingestor.ingest_file, filename, data, _parse_tags(tags))
        except (IngestionError, ProviderNotConfiguredError) as exc:
            raise _ingestion_error(exc) from exc
        return JSONResponse({"success": True, "source": result.source, "chunks": result.chunks_ingested})

    @app.get("/api/library")
    def library(state: ApplicationState = Depends(get_state)) -> JSONResponse:
        return JSONResponse({"documents": state.store.library()})

    @app.delete("/api/library/{source:path}")
    def delete_document(source: str, state: ApplicationState = Depends(get_state)) -> JSONResponse:
        deleted = state.store.delete_source(source)
        if not deleted:
            raise HTTPException(status_code=404, detail="Document not found")
        return JSONResponse({"success": True, "source": source, "deleted": deleted})

    @app.get("/api/sessions")
    def sessions(state: ApplicationState = Depends(get_state)) -> JSONResponse:
        return JSONResponse({"sessions": state.store.list_sessions()})

    @app.get("/api/session/{session_id}")
    def session_history(session_id: str, state: ApplicationState = Depends(get_state)) -> JSONResponse:
        return JSONResponse({"session_id": session_id, "messages": state.store.session_history(session_id)})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics.render_prometheus()
        except RuntimeError as exc:  # pragma: no cover - defensive guard
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics.prometheus_content_type)

    return app


__all__ = ["ApplicationState", "create_app"]
