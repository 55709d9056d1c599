"""Test doubles and seed data shared by the test modules."""

import hashlib
import json
import re
from typing import Any, Dict, List, Optional

import numpy as np

from core.errors import ChannelClosed, EmbeddingError
from db import models

TOKEN_RE = re.compile(r"[a-z0-9]+")


class FakeEmbedder:
    """Deterministic bag-of-words hashing embedder (no model download)."""

    def __init__(self, dim: int = 64):
        self._dim = dim
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    def embed(self, text: str) -> np.ndarray:
        return self.embed_many([text])[0]

    def embed_many(self, texts) -> np.ndarray:
        texts = list(texts)
        if not texts or any(not (t or "").strip() for t in texts):
            raise EmbeddingError("Cannot embed empty text")
        self.calls += 1
        rows = []
        for text in texts:
            vec = np.zeros(self._dim, dtype=np.float32)
            for token in TOKEN_RE.findall(text.lower()):
                # crude stemming so "passwords" and "password" collide
                token = token[:-1] if token.endswith("s") and len(token) > 3 else token
                bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self._dim
                vec[bucket] += 1.0
            norm = np.linalg.norm(vec)
            rows.append(vec / norm if norm else vec)
        return np.vstack(rows).astype(np.float32)


class FakeLLM:
    """Scripted stand-in for LLMProvider.

    `filter_content` is what filter synthesis receives, `summary` what plain
    chat calls return and `chunks` what `stream_chat` yields.
    """

    is_configured = True

    def __init__(
        self,
        filter_content: str = "{}",
        summary: str = "Summary text",
        chunks: Optional[List[str]] = None,
        fail_stream_after: Optional[int] = None,
    ):
        self.filter_content = filter_content
        self.summary = summary
        self.chunks = chunks if chunks is not None else ["Hello", " there"]
        self.fail_stream_after = fail_stream_after
        self.chat_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[List[Dict[str, str]]] = []
        self.streams_closed = 0
        self.chunks_produced = 0

    @property
    def filter_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.chat_calls if c.get("response_format")]

    async def chat(self, messages, temperature=0.2, response_format=None, model=None):
        self.chat_calls.append({"messages": messages, "response_format": response_format, "model": model})
        content = self.filter_content if response_format else self.summary
        return {"choices": [{"message": {"content": content}}]}

    async def stream_chat(self, messages, temperature=0.3, model=None):
        from services.llm_provider import LLMProviderError

        self.stream_calls.append(messages)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_stream_after is not None and i >= self.fail_stream_after:
                    raise LLMProviderError("connection reset")
                self.chunks_produced += 1
                yield chunk
        except GeneratorExit:
            self.streams_closed += 1
            raise


class FakeRedis:
    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.ttl: Dict[str, int] = {}

    def setex(self, key, seconds, value):
        self.store[key] = value
        self.ttl[key] = seconds

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        self.store.pop(key, None)
        self.ttl.pop(key, None)

    def close(self):
        pass


class RecordingSink:
    """Collects frames; raises ChannelClosed once `close_after_chunks` chunks were sent."""

    def __init__(self, close_after_chunks: Optional[int] = None):
        self.frames: List[Dict[str, Any]] = []
        self.close_after_chunks = close_after_chunks

    @property
    def types(self) -> List[str]:
        return [f["type"] for f in self.frames]

    @property
    def text(self) -> str:
        return "".join(f["data"] for f in self.frames if f["type"] == "chunk")

    async def send(self, frame) -> None:
        from services.frames import dump_frame

        chunks_sent = self.types.count("chunk")
        if self.close_after_chunks is not None and frame.type == "chunk" and chunks_sent >= self.close_after_chunks:
            raise ChannelClosed("client went away")
        self.frames.append(json.loads(json.dumps(dump_frame(frame))))


POLICY_CORPUS = "\n\n".join([
    "ACME Inc. Information Security Policy",
    "1. Password Management",
    "Passwords must be at least 12 characters.",
    "Multi-factor authentication is required for all remote access to company systems.",
    "Page 2",
    "Laptops must use full disk encryption and lock automatically after five minutes idle.",
])

PROFILES = [
    ("E001", "Alice Johnson", "Finance Manager", "low", "high", "high", ["phishing", "invoice fraud"]),
    ("E002", "Bob Smith", "Software Engineer", "high", "low", "low", ["supply chain"]),
    ("E003", "Carol White", "HR Specialist", "medium", "high", "medium", ["phishing"]),
    ("E004", "Dan Brown", "Finance Analyst", "medium", "medium", "high", ["credential stuffing"]),
]


def seed_profiles(database, count: Optional[int] = None):
    rows = list(PROFILES)
    if count is not None:
        rows = [
            (f"E{i:04d}", f"Employee {i}", "Analyst", "low", "low", "low", [])
            for i in range(count)
        ]
    with database.transaction() as session:
        for employee_id, name, designation, knowledge, risk, vulnerability, vectors in rows:
            session.add(models.EmployeeProfile(
                employee_id=employee_id,
                name=name,
                designation=designation,
                knowledge=knowledge,
                risk=risk,
                vulnerability=vulnerability,
                attack_vectors=vectors,
            ))

