"""
Organization-wide policy knowledge base.

The corpus is split into paragraphs, one vector per paragraph, keyed by its
position in the source document. Queries retrieve by similarity, put the hits
back into document order and only then clean them, so the caller gets
readable, contiguous excerpts instead of relevance-shuffled fragments.
"""
from __future__ import annotations

import re
from typing import List, Optional, Pattern, Sequence

from core.errors import RetrievalError
from core.logging_config import get_logger
from services.embedding_service import EmbeddingService
from services.vector_store import VectorItem, VectorStore

logger = get_logger(__name__)

PARAGRAPH_SPLIT = re.compile(r"(?:\r?\n){2,}|\r{2,}")

MIN_CHUNK_CHARS = 40

DEFAULT_BOILERPLATE_PATTERNS = (
    # stray numbered section headers, e.g. "5.1. Password Complexity"; at most six title words
    re.compile(r"^\d+(\.\d+)*\.?\s+[^\s.!?]+(?:[ \t]+[^\s.!?]+){0,5}$"),
    # page numbers / footers
    re.compile(r"^Page\s*\d+", re.IGNORECASE),
    # cover and title lines
    re.compile(r"^(ACME\s*Inc\.|Company\s*Policy)", re.IGNORECASE),
)


def split_paragraphs(corpus_text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT.split(corpus_text or "") if p.strip()]


class PolicyKnowledgeBase:
    def __init__(
        self,
        collection: VectorStore,
        embedder: EmbeddingService,
        boilerplate_patterns: Optional[Sequence[Pattern[str]]] = None,
        min_chars: int = MIN_CHUNK_CHARS,
    ) -> None:
        self.collection = collection
        self.embedder = embedder
        self.boilerplate_patterns = tuple(boilerplate_patterns or DEFAULT_BOILERPLATE_PATTERNS)
        self.min_chars = min_chars

    def ingest(self, corpus_text: str) -> int:
        """Replace the indexed corpus with `corpus_text`; returns the chunk count."""
        chunks = split_paragraphs(corpus_text)

        expected_dim = self.embedder.dimension
        current_dim = self.collection.dimension
        if current_dim is not None and current_dim != expected_dim:
            logger.warning("Vector size mismatch, recreating policy collection", extra={
                "collection": self.collection.name,
                "stored_dimension": current_dim,
                "model_dimension": expected_dim,
            })
        # re-ingestion always starts from an empty collection
        self.collection.reset()

        if not chunks:
            logger.warning("Policy corpus is empty, nothing ingested")
            return 0

        embeddings = self.embedder.embed_many(chunks)
        items = [
            VectorItem(vector_id=str(ordinal), content=chunk, metadata={"ordinal": ordinal, "text": chunk})
            for ordinal, chunk in enumerate(chunks)
        ]
        self.collection.upsert(items, embeddings=embeddings)

        logger.info("Policy corpus ingested", extra={
            "collection": self.collection.name,
            "chunks": len(chunks),
        })
        return len(chunks)

    def is_boilerplate(self, text: str) -> bool:
        return any(p.search(text) for p in self.boilerplate_patterns)

    def clean(self, ordered_chunks: Sequence[str]) -> List[str]:
        seen = set()
        cleaned: List[str] = []
        for raw in ordered_chunks:
            text = raw.strip()
            if text in seen:
                continue
            seen.add(text)
            if len(text) <= self.min_chars or self.is_boilerplate(text):
                continue
            cleaned.append(text)
        return cleaned

    def query_context(self, query: str, top_k: int = 5) -> List[str]:
        vector = self.embedder.embed(query)
        try:
            hits = self.collection.query(vector, top_k=top_k)
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Policy search failed: {exc}") from exc

        hits.sort(key=lambda h: int(h.metadata.get("ordinal", 0)))
        return self.clean([str(h.metadata.get("text") or h.content) for h in hits])
