"""SQLite persistence for embedded chunks and chat history."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Sequence

from .rag import RetrievedChunk, cosine_similarity

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChunkStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    text TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)")

    def add_chunks(
        self,
        source: str,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        tags: Iterable[str] = (),
    ) -> int:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        if not chunks:
            return 0
        created_at = _utcnow()
        tags_json = json.dumps(list(tags))
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO chunks (source, text, embedding, tags, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (source, text, json.dumps([float(v) for v in vector]), tags_json, created_at)
                    for text, vector in zip(chunks, embeddings)
                ],
            )
        logger.debug("store.chunks.added source=%s count=%s", source, len(chunks))
        return len(chunks)

    def delete_source(self, source: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM chunks WHERE source = ?", (source,))
            deleted = cursor.rowcount
        logger.debug("store.chunks.deleted source=%s count=%s", source, deleted)
        return deleted

    def search(self, vector: Sequence[float], top_k: int = 5) -> List[RetrievedChunk]:
        """Return the ``top_k`` chunks most similar to ``vector``, best first."""

        if top_k <= 0 or not vector:
            return []
        with self._connect() as conn:
            rows = conn.execute("SELECT source, text, embedding FROM chunks").fetchall()
        scored: List[RetrievedChunk] = []
        for source, text, embedding_json in rows:
            try:
                embedding = json.loads(embedding_json)
            except json.JSONDecodeError:
                logger.warning("store.search.bad_embedding source=%s", source)
                continue
            scored.append(RetrievedChunk(source=source, text=text, score=cosine_similarity(vector, embedding)))
        scored.sort(key=lambda chunk: chunk.score, reverse=True)
        return scored[:top_k]

    def library(self) -> List[dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source, COUNT(*) AS chunk_count, MIN(created_at) AS created_at, MAX(tags)
                FROM chunks
                GROUP BY source
                ORDER BY created_at DESC, source
                """
            ).fetchall()
        return [
            {
                "source": source,
                "chunk_count": count,
                "created_at": created_at,
                "tags": json.loads(tags or "[]"),
            }
            for source, count, created_at, tags in rows
        ]

    def save_message(self, session_id: str, role: str, content: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO messages (session_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (session_id, role, content, _utcnow()),
            )

    def session_history(self, session_id: str) -> List[dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, created_at FROM messages
                WHERE session_id = ?
                ORDER BY id
                """,
                (session_id,),
            ).fetchall()
        return [{"role": role, "content": content, "created_at": created_at} for role, content, created_at in rows]

    def list_sessions(self) -> List[dict[str, object]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT session_id, COUNT(*) AS message_count, MAX(id) AS last_id, MAX(created_at)
                FROM messages
                GROUP BY session_id
                ORDER BY last_id DESC
                """
            ).fetchall()
        return [
            {"session_id": session_id, "message_count": count, "last_message_at": last_at}
            for session_id, count, _last_id, last_at in rows
        ]


__all__ = ["ChunkStore"]
