"""Pytest configuration and fixtures."""

import pytest

from db import models
from db.database import Database
from fakes import POLICY_CORPUS, FakeEmbedder, FakeLLM, FakeRedis, seed_profiles
from services.completion_streamer import CompletionStreamer
from services.conversation_ledger import ConversationLedger
from services.memory_store import MemoryStore
from services.orchestrator import Orchestrator
from services.policy_kb import PolicyKnowledgeBase
from services.query_synthesizer import QuerySynthesizer
from services.record_source import RecordSource
from services.vector_store import VectorStore
from utils.session_utils import Authenticator, SessionManager


@pytest.fixture
def database():
    db = Database("sqlite://").init()
    yield db
    db.dispose()


@pytest.fixture
def user(database):
    with database.transaction() as session:
        account = models.User(email="ciso@example.com", hashed_password="x")
        session.add(account)
        session.flush()
        user_id = account.id
    return user_id


@pytest.fixture
def other_user(database):
    with database.transaction() as session:
        account = models.User(email="other@example.com", hashed_password="x")
        session.add(account)
        session.flush()
        user_id = account.id
    return user_id


@pytest.fixture
def profiles(database):
    seed_profiles(database)
    return database


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def memory(tmp_path, embedder):
    return MemoryStore(VectorStore(tmp_path / "memory", name="memory"), embedder, chunk_size=100, chunk_overlap=20)


@pytest.fixture
def policy(tmp_path, embedder):
    kb = PolicyKnowledgeBase(VectorStore(tmp_path / "policy", name="policy"), embedder)
    kb.ingest(POLICY_CORPUS)
    return kb


@pytest.fixture
def empty_policy(tmp_path, embedder):
    return PolicyKnowledgeBase(VectorStore(tmp_path / "empty_policy", name="policy"), embedder)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def sessions():
    return SessionManager(FakeRedis())


@pytest.fixture
def authenticator(sessions):
    return Authenticator(sessions)


@pytest.fixture
def ledger(database):
    return ConversationLedger(database)


@pytest.fixture
def make_orchestrator(memory, policy, database, ledger, authenticator):
    def _make(llm=None, policy_kb=None, **kwargs):
        llm = llm or FakeLLM()
        return Orchestrator(
            memory=memory,
            policy=policy_kb or policy,
            synthesizer=QuerySynthesizer(llm),
            records=RecordSource(database),
            ledger=ledger,
            llm=llm,
            streamer=CompletionStreamer(llm, idle_timeout=5),
            authenticator=authenticator,
            **kwargs,
        )
    return _make
