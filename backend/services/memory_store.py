"""
Per-user semantic memory.

Two partitions live in one vector collection and are told apart by metadata:
`qa` items hold one question/answer exchange each, `document` items hold the
chunks of the user's most recently uploaded document, in reading order.
Every read and write is scoped to a single owner.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Dict, List

from core.errors import RetrievalError
from core.logging_config import get_logger
from services.embedding_service import EmbeddingService
from services.vector_store import VectorItem, VectorStore

logger = get_logger(__name__)

KIND_QA = "qa"
KIND_DOCUMENT = "document"

QA_SEPARATOR = "\n\n---\n\n"
DOCUMENT_SEPARATOR = "\n\n"


def chunk_text(text: str, chunk_size: int = 3000, overlap: int = 200) -> List[str]:
    """Split `text` with a sliding window of `chunk_size` characters.

    The next window starts at max(end - overlap, end), so the cursor never
    moves backwards and the chunks tile the text exactly.
    """
    if not chunk_size > overlap >= 0:
        raise ValueError("chunk_size must be greater than overlap, and overlap must be >= 0")

    chunks: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(text[start:end])
        start = max(end - overlap, end)
    return chunks


class MemoryStore:
    def __init__(
        self,
        collection: VectorStore,
        embedder: EmbeddingService,
        chunk_size: int = 3000,
        chunk_overlap: int = 200,
        batch_size: int = 50,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.collection = collection
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.batch_size = batch_size
        # owner -> lock serialising document writes
        self._document_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _scope(owner: str, kind: str) -> dict:
        return {"owner": str(owner), "kind": kind}

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def store_qa(self, owner: str, question: str, answer: str) -> str:
        text = f"User: {question}\nAssistant: {answer}"
        vector = self.embedder.embed_many([text])
        vector_id = f"{owner}-qa-{time.time_ns()}"
        self.collection.upsert(
            [VectorItem(
                vector_id=vector_id,
                content=text,
                metadata={**self._scope(owner, KIND_QA), "text": text, "created_at": self._now()},
            )],
            embeddings=vector,
        )
        logger.debug("Stored Q&A memory", extra={"owner": owner, "vector_id": vector_id})
        return vector_id

    def _document_lock(self, owner: str) -> threading.Lock:
        with self._locks_guard:
            return self._document_locks.setdefault(str(owner), threading.Lock())

    def store_document(self, owner: str, text: str, replace: bool = False) -> int:
        chunks = [c for c in chunk_text(text, self.chunk_size, self.chunk_overlap) if c.strip()]
        # one live document generation per owner
        with self._document_lock(owner):
            return self._write_document(owner, chunks, replace)

    def _write_document(self, owner: str, chunks: List[str], replace: bool) -> int:
        if replace:
            removed = self.collection.delete_where(self._scope(owner, KIND_DOCUMENT))
            if removed:
                logger.info("Replaced document memory", extra={"owner": owner, "removed_chunks": removed})

        if not chunks:
            return 0

        generation = time.time_ns()
        created_at = self._now()
        for offset in range(0, len(chunks), self.batch_size):
            batch = chunks[offset:offset + self.batch_size]
            embeddings = self.embedder.embed_many(batch)
            items = [
                VectorItem(
                    vector_id=f"{owner}-document-{generation}-{offset + i}",
                    content=chunk,
                    metadata={
                        **self._scope(owner, KIND_DOCUMENT),
                        "chunk_index": offset + i,
                        "text": chunk,
                        "created_at": created_at,
                    },
                )
                for i, chunk in enumerate(batch)
            ]
            self.collection.upsert(items, embeddings=embeddings)

        logger.info("Stored document memory", extra={"owner": owner, "chunks": len(chunks)})
        return len(chunks)

    def retrieve_qa(self, owner: str, query: str, top_k: int = 5) -> str:
        vector = self.embedder.embed(query)
        matches = self._search(vector, top_k, self._scope(owner, KIND_QA))
        texts = [m.metadata.get("text") or m.content for m in matches]
        return QA_SEPARATOR.join(t for t in texts if t)

    def retrieve_document(self, owner: str, top_k: int = 50) -> str:
        try:
            matches = self.collection.find(self._scope(owner, KIND_DOCUMENT))
        except Exception as exc:
            raise RetrievalError(f"Document memory lookup failed: {exc}") from exc
        matches.sort(key=lambda m: int(m.metadata.get("chunk_index", 0)))
        return DOCUMENT_SEPARATOR.join(m.metadata.get("text") or m.content for m in matches[:top_k])

    def _search(self, vector, top_k: int, scope: dict):
        try:
            return self.collection.query(vector, top_k=top_k, filters=scope)
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Memory search failed: {exc}") from exc
