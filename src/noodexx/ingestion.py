"""Document ingestion: guardrails, text extraction, chunking and embedding."""

from __future__ import annotations

import io
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import ContextManager, Iterable, Sequence

from bs4 import BeautifulSoup
from pypdf import PdfReader

from .config import GuardrailsConfig
from .llm import ProviderError
from .observability import MetricsRecorder
from .provider_manager import DualProviderManager
from .rag import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE, chunk_text
from .store import ChunkStore

logger = logging.getLogger(__name__)

BLOCKED_EXTENSIONS = frozenset(
    {".exe", ".dll", ".so", ".dylib", ".app", ".zip", ".tar", ".gz", ".rar", ".iso", ".dmg", ".img"}
)
SENSITIVE_FILENAMES = (".env", "id_rsa", "id_ed25519", "credentials.json", ".aws/credentials", ".ssh/id_rsa")


class IngestionError(ValueError):
    """Raised when a document is rejected or cannot be embedded."""


@dataclass(slots=True)
class IngestionResult:
    source: str
    chunks_ingested: int
    replaced: int = 0


def check_guardrails(source: str, guardrails: GuardrailsConfig, *, size_bytes: int | None = None) -> None:
    """Reject sensitive names, blocked extensions and oversized payloads."""

    lowered = source.lower()
    for sensitive in SENSITIVE_FILENAMES:
        if sensitive in lowered:
            raise IngestionError(f"sensitive filename detected: {source}")
    suffix = Path(lowered).suffix
    if suffix in BLOCKED_EXTENSIONS:
        raise IngestionError(f"blocked file extension: {suffix}")
    if size_bytes is not None:
        limit = guardrails.max_file_size_mb * 1024 * 1024
        if size_bytes > limit:
            raise IngestionError(f"file size {size_bytes} exceeds limit {limit}")


def is_allowed_extension(filename: str, guardrails: GuardrailsConfig) -> bool:
    suffix = Path(filename).suffix.lower()
    return suffix in {ext.lower() for ext in guardrails.allowed_extensions}


def extract_text(filename: str, data: bytes) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix in {".txt", ".md", ".markdown"}:
        return data.decode("utf-8", errors="ignore")
    if suffix == ".pdf":
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:
            raise IngestionError(f"Failed to extract text from PDF: {exc}") from exc
        return "\n\n".join(filter(None, pages))
    if suffix in {".html", ".htm"}:
        soup = BeautifulSoup(data, "html.parser")
        for tag in soup(["script", "style"]):
            tag.extract()
        return soup.get_text(separator="\n")
    raise IngestionError(f"unsupported file type: {suffix or filename}")


class DocumentIngestor:
    """Embed documents with the active provider and store their chunks."""

    def __init__(
        self,
        manager: DualProviderManager,
        store: ChunkStore,
        guardrails: GuardrailsConfig | None = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_CHUNK_OVERLAP,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._manager = manager
        self._store = store
        self._guardrails = guardrails or GuardrailsConfig()
        self._chunk_size = chunk_size
        self._overlap = overlap
        self._metrics = metrics

    @property
    def guardrails(self) -> GuardrailsConfig:
        return self._guardrails

    def ingest_text(self, source: str, text: str, tags: Iterable[str] = ()) -> IngestionResult:
        source = (source or "").strip()
        if not source:
            raise IngestionError("source is required")
        check_guardrails(source, self._guardrails, size_bytes=len(text.encode("utf-8")))

        chunks = chunk_text(text, self._chunk_size, self._overlap)
        if not chunks:
            raise IngestionError(f"no text to ingest for source: {source}")

        provider = self._manager.get_active_provider()
        with self._timed("ingestion.duration", provider=provider.name):
            embeddings = self._embed_all(provider, source, chunks)
            replaced = self._store.delete_source(source)
            stored = self._store.add_chunks(source, chunks, embeddings, tuple(tags))
        if self._metrics:
            self._metrics.increment("ingestion.documents", provider=provider.name)
        logger.info(
            "ingestion.completed source=%s chunks=%s replaced=%s provider=%s",
            source,
            stored,
            replaced,
            provider.name,
        )
        return IngestionResult(source=source, chunks_ingested=stored, replaced=replaced)

    def ingest_file(self, filename: str, data: bytes, tags: Iterable[str] = ()) -> IngestionResult:
        if not is_allowed_extension(filename, self._guardrails):
            raise IngestionError(f"file extension {Path(filename).suffix.lower()} is not allowed")
        check_guardrails(filename, self._guardrails, size_bytes=len(data))
        text = extract_text(filename, data)
        return self.ingest_text(filename, text, tags)

    def _timed(self, metric: str, **tags: str) -> ContextManager[None]:
        if self._metrics is None:
            return nullcontext()
        return self._metrics.track_timing(metric, **tags)

    def _embed_all(self, provider, source: str, chunks: Sequence[str]) -> list[list[float]]:
        embeddings: list[list[float]] = []
        for index, chunk in enumerate(chunks):
            try:
                embeddings.append(provider.embed(chunk))
            except ProviderError as exc:
                logger.error(
                    "ingestion.embed.error source=%s chunk_index=%s error=%s",
                    source,
                    index,
                    exc,
                )
                raise IngestionError(f"embedding failed: {exc}") from exc
        return embeddings


__all__ = [
    "BLOCKED_EXTENSIONS",
    "DocumentIngestor",
    "IngestionError",
    "IngestionResult",
    "SENSITIVE_FILENAMES",
    "check_guardrails",
    "extract_text",
    "is_allowed_extension",
]
