from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from core.errors import RetrievalError
from core.logging_config import get_logger
from core.metrics import vector_search_duration_seconds, vector_search_results, vector_search_total

try:
    import faiss
except ImportError:
    faiss = None

logger = get_logger(__name__)


@dataclass
class VectorItem:
    vector_id: str
    content: str
    metadata: Dict[str, object]


@dataclass
class SearchResult:
    vector_id: str
    score: float
    content: str
    metadata: Dict[str, object]


def _matches(metadata: Mapping[str, object], filters: Optional[Mapping[str, object]]) -> bool:
    if not filters:
        return True
    return all(metadata.get(k) == v for k, v in filters.items())


class VectorStore:
    """Vector collection persisted on disk (`vectors.npy` + `metadata.json`).

    One instance is one collection. Both memory partitions and the policy
    corpus go through this interface; scoping is done with exact metadata
    filters, so callers never see items outside the filter they pass.
    Vectors are expected to be L2-normalised, which makes the inner product a
    cosine similarity.
    """

    def __init__(self, storage_dir: str | Path, name: str = "default") -> None:
        self.name = name
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.index_file = self.storage_dir / "vectors.npy"
        self.meta_file = self.storage_dir / "metadata.json"

        self._lock = threading.RLock()
        self._vector_ids: List[str] = []
        self._metadata: Dict[str, Dict[str, object]] = {}
        self._vectors: np.ndarray = np.empty((0, 0), dtype=np.float32)

        self._load()

    # ------------------------------------------------------------------ disk
    def _load(self) -> None:
        if not self.meta_file.exists() or not self.index_file.exists():
            return

        try:
            with self.meta_file.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
            self._vector_ids = data.get("ids", [])
            self._metadata = data.get("metadata", {})
            if self._vector_ids:
                self._vectors = np.load(self.index_file)
                if self._vectors.dtype != np.float32:
                    self._vectors = self._vectors.astype(np.float32)
            else:
                self._vectors = np.empty((0, 0), dtype=np.float32)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load existing index, starting empty", extra={
                "collection": self.name,
                "error": str(exc),
            })
            self._vector_ids = []
            self._metadata = {}
            self._vectors = np.empty((0, 0), dtype=np.float32)

        self._rebuild_index()

    def _save(self) -> None:
        if self._vector_ids and self._vectors.size:
            np.save(self.index_file, self._vectors.astype(np.float32))
        elif self.index_file.exists():
            self.index_file.unlink()
        with self.meta_file.open("w", encoding="utf-8") as fh:
            json.dump({"ids": self._vector_ids, "metadata": self._metadata}, fh, ensure_ascii=False, indent=2)

    def _rebuild_index(self) -> None:
        """Hook for index-backed subclasses."""

    # ------------------------------------------------------------------ info
    @property
    def dimension(self) -> Optional[int]:
        with self._lock:
            if self._vectors.ndim == 2 and self._vectors.shape[1] > 0:
                return int(self._vectors.shape[1])
            return None

    def count(self, filters: Optional[Mapping[str, object]] = None) -> int:
        with self._lock:
            if not filters:
                return len(self._vector_ids)
            return sum(1 for vid in self._vector_ids if _matches(self._metadata.get(vid, {}), filters))

    # ---------------------------------------------------------------- writes
    def upsert(self, items: Sequence[VectorItem], embeddings: np.ndarray) -> None:
        if not items:
            return

        embeddings = np.asarray(embeddings, dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[0] != len(items):
            raise ValueError("embeddings must be a 2-D array with one row per item")

        with self._lock:
            if self._vectors.size == 0:
                self._vectors = np.empty((0, embeddings.shape[1]), dtype=np.float32)
            elif self._vectors.shape[1] != embeddings.shape[1]:
                raise RetrievalError(
                    f"Collection '{self.name}' has dimension {self._vectors.shape[1]}, "
                    f"got {embeddings.shape[1]}"
                )

            for item, vector in zip(items, embeddings, strict=True):
                metadata = dict(item.metadata)
                metadata["content"] = item.content
                if item.vector_id in self._metadata:
                    idx = self._vector_ids.index(item.vector_id)
                    self._vectors[idx] = vector
                else:
                    self._vectors = np.vstack([self._vectors, vector])
                    self._vector_ids.append(item.vector_id)
                self._metadata[item.vector_id] = metadata

            self._save()
            self._rebuild_index()

    def delete(self, vector_ids: Sequence[str]) -> int:
        if not vector_ids:
            return 0

        doomed = set(vector_ids)
        with self._lock:
            keep_indices = [idx for idx, vid in enumerate(self._vector_ids) if vid not in doomed]
            removed = len(self._vector_ids) - len(keep_indices)
            if removed == 0:
                return 0
            if keep_indices:
                self._vectors = self._vectors[keep_indices]
            else:
                dim = self._vectors.shape[1] if self._vectors.ndim == 2 else 0
                self._vectors = np.empty((0, dim), dtype=np.float32)
            self._vector_ids = [self._vector_ids[idx] for idx in keep_indices]
            for vid in doomed:
                self._metadata.pop(vid, None)

            self._save()
            self._rebuild_index()
            return removed

    def delete_where(self, filters: Mapping[str, object]) -> int:
        """Delete every item whose metadata matches `filters` exactly."""
        if not filters:
            raise ValueError("delete_where requires at least one filter")
        with self._lock:
            ids = [r.vector_id for r in self.find(filters)]
            return self.delete(ids)

    def reset(self) -> None:
        with self._lock:
            self._vector_ids = []
            self._metadata = {}
            self._vectors = np.empty((0, 0), dtype=np.float32)
            self._save()
            self._rebuild_index()

    # ----------------------------------------------------------------- reads
    def find(self, filters: Optional[Mapping[str, object]] = None) -> List[SearchResult]:
        """Exact metadata lookup in insertion order (no similarity involved)."""
        with self._lock:
            results: List[SearchResult] = []
            for vid in self._vector_ids:
                metadata = self._metadata.get(vid, {})
                if _matches(metadata, filters):
                    results.append(SearchResult(
                        vector_id=vid,
                        score=1.0,
                        content=str(metadata.get("content", "")),
                        metadata=dict(metadata),
                    ))
            return results

    def query(
        self,
        vector: np.ndarray,
        top_k: int = 5,
        filters: Optional[Mapping[str, object]] = None,
    ) -> List[SearchResult]:
        """Nearest neighbours among items matching `filters`, best first."""
        start = time.time()
        status = "success"
        results: List[SearchResult] = []
        try:
            with self._lock:
                if self._vector_ids and self._vectors.size and top_k > 0:
                    results = self._ranked(np.asarray(vector, dtype=np.float32), top_k, filters)
            return results
        except Exception:
            status = "error"
            raise
        finally:
            vector_search_total.labels(collection=self.name, status=status).inc()
            vector_search_duration_seconds.labels(collection=self.name).observe(time.time() - start)
            vector_search_results.labels(collection=self.name).observe(len(results))

    def _ranked(self, vector: np.ndarray, top_k: int, filters) -> List[SearchResult]:
        if vector.shape[0] != self._vectors.shape[1]:
            raise RetrievalError(
                f"Query dimension {vector.shape[0]} does not match collection '{self.name}'"
            )
        scores = self._vectors @ vector
        ranked = np.argsort(-scores, kind="stable")
        return self._collect(((int(idx), float(scores[idx])) for idx in ranked), top_k, filters)

    def _collect(self, candidates, top_k: int, filters) -> List[SearchResult]:
        results: List[SearchResult] = []
        for idx, score in candidates:
            if idx < 0 or idx >= len(self._vector_ids):
                continue
            vector_id = self._vector_ids[idx]
            metadata = self._metadata.get(vector_id, {})
            if not _matches(metadata, filters):
                continue
            results.append(SearchResult(
                vector_id=vector_id,
                score=score,
                content=str(metadata.get("content", "")),
                metadata=dict(metadata),
            ))
            if len(results) >= top_k:
                break
        return results


class FaissVectorStore(VectorStore):
    """Same collection semantics, with a FAISS IndexFlatIP for similarity search."""

    def __init__(self, storage_dir: str | Path, name: str = "default") -> None:
        if faiss is None:
            raise RuntimeError("faiss is not available; install faiss-cpu or faiss-gpu to use this backend")
        self._faiss_index = None
        super().__init__(storage_dir, name=name)

    def _rebuild_index(self) -> None:
        if self._vectors.size == 0:
            self._faiss_index = None
            return
        idx = faiss.IndexFlatIP(int(self._vectors.shape[1]))
        idx.add(self._vectors)
        self._faiss_index = idx

    def _ranked(self, vector: np.ndarray, top_k: int, filters) -> List[SearchResult]:
        if self._faiss_index is None:
            return []
        if vector.shape[0] != self._vectors.shape[1]:
            raise RetrievalError(
                f"Query dimension {vector.shape[0]} does not match collection '{self.name}'"
            )
        # filtered searches may need to look past the first top_k hits
        k = len(self._vector_ids) if filters else min(top_k, len(self._vector_ids))
        D, I = self._faiss_index.search(np.expand_dims(vector, axis=0), k)
        return self._collect(zip((int(i) for i in I[0]), (float(d) for d in D[0])), top_k, filters)


def open_collection(base_dir: str | Path, name: str, backend: str = "disk") -> VectorStore:
    """Open (or create) the collection `name` under `base_dir`."""
    storage_dir = Path(base_dir) / name
    if backend == "faiss":
        return FaissVectorStore(storage_dir, name=name)
    return VectorStore(storage_dir, name=name)
