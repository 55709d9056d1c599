"""
Runtime configuration for the risk assistant backend.

Values are read from the environment (and a local `.env`) once at process
start and handed to the service container; nothing below reads os.environ
lazily.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",  # Vite dev server
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./assistant.db"
    redis_url: str = "redis://localhost:6379"
    session_expire_hours: int = 24

    vector_store_dir: str = "./vector_store"
    vector_backend: str = "disk"  # disk | faiss
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    llm_api_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_filter_model: Optional[str] = None
    llm_timeout_seconds: float = 30.0
    llm_retries: int = 3
    llm_backoff_seconds: float = 0.8
    llm_concurrency: int = 6

    retrieval_timeout_seconds: float = 10.0
    stream_timeout_seconds: float = 60.0
    record_limit: int = 50

    memory_chunk_size: int = 3000
    memory_chunk_overlap: int = 200
    memory_batch_size: int = 50
    policy_top_k: int = 5
    memory_top_k: int = 5

    policy_narration: bool = False
    upload_base_url: Optional[str] = None

    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            session_expire_hours=int(os.getenv("SESSION_EXPIRE_HOURS", str(cls.session_expire_hours))),
            vector_store_dir=os.getenv("VECTOR_STORE_DIR", cls.vector_store_dir),
            vector_backend=os.getenv("VECTOR_BACKEND", cls.vector_backend).lower(),
            embedding_model=os.getenv("EMBEDDING_MODEL", cls.embedding_model),
            llm_api_url=os.getenv("LLM_API_URL"),
            llm_api_key=os.getenv("LLM_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", cls.llm_model),
            llm_filter_model=os.getenv("LLM_FILTER_MODEL"),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", str(cls.llm_timeout_seconds))),
            llm_retries=int(os.getenv("LLM_RETRIES", str(cls.llm_retries))),
            llm_backoff_seconds=float(os.getenv("LLM_BACKOFF_SECONDS", str(cls.llm_backoff_seconds))),
            llm_concurrency=int(os.getenv("LLM_CONCURRENCY", str(cls.llm_concurrency))),
            retrieval_timeout_seconds=float(
                os.getenv("RETRIEVAL_TIMEOUT_SECONDS", str(cls.retrieval_timeout_seconds))
            ),
            stream_timeout_seconds=float(os.getenv("STREAM_TIMEOUT_SECONDS", str(cls.stream_timeout_seconds))),
            record_limit=int(os.getenv("RECORD_LIMIT", str(cls.record_limit))),
            memory_chunk_size=int(os.getenv("MEMORY_CHUNK_SIZE", str(cls.memory_chunk_size))),
            memory_chunk_overlap=int(os.getenv("MEMORY_CHUNK_OVERLAP", str(cls.memory_chunk_overlap))),
            memory_batch_size=int(os.getenv("MEMORY_BATCH_SIZE", str(cls.memory_batch_size))),
            policy_top_k=int(os.getenv("POLICY_TOP_K", str(cls.policy_top_k))),
            memory_top_k=int(os.getenv("MEMORY_TOP_K", str(cls.memory_top_k))),
            policy_narration=_env_bool("POLICY_NARRATION", cls.policy_narration),
            upload_base_url=os.getenv("UPLOAD_BASE_URL"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
        )
