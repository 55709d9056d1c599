from __future__ import annotations

import threading
from typing import Iterable, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from core.errors import EmbeddingError
from core.logging_config import get_logger

logger = get_logger(__name__)


DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"


class EmbeddingService:
    """Text -> L2-normalised float32 vectors with a sentence-transformers model.

    The model is loaded on first use and kept for the life of the handle.
    """

    def __init__(self, model_name: Optional[str] = None) -> None:
        self.model_name = model_name or DEFAULT_MODEL_NAME
        self._model: Optional[SentenceTransformer] = None
        self._dimension: Optional[int] = None
        self._load_lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    try:
                        self._model = SentenceTransformer(self.model_name)
                    except Exception as exc:
                        logger.error("Failed to load embedding model", extra={
                            "model": self.model_name,
                            "error": str(exc),
                        })
                        raise EmbeddingError(f"Embedding model unavailable: {exc}") from exc
                    logger.info("Embedding model loaded", extra={"model": self.model_name})
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = int(self.embed("dimension check").shape[0])
        return self._dimension

    def embed(self, text: str) -> np.ndarray:
        return self.embed_many([text])[0]

    def embed_many(self, texts: Iterable[str]) -> np.ndarray:
        texts: List[str] = list(texts)
        if not texts or any(not (t or "").strip() for t in texts):
            raise EmbeddingError("Cannot embed empty text")

        try:
            embeddings = self.model.encode(
                texts,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except EmbeddingError:
            raise
        except Exception as exc:
            logger.error("Embedding failed", extra={"model": self.model_name, "error": str(exc)})
            raise EmbeddingError(f"Embedding backend failed: {exc}") from exc

        if embeddings.dtype != np.float32:
            embeddings = embeddings.astype(np.float32)
        return embeddings
