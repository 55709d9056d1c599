"""
Explicit service handles, built once by the process entry point.

Route handlers read the container from `request.app.state.container`; nothing
in the service layer reaches for a module-level client.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.config import Settings
from core.logging_config import get_logger
from core.websocket_manager import ConversationEvents
from db.database import Database
from services.completion_streamer import CompletionStreamer
from services.conversation_ledger import ConversationLedger
from services.document_extractor import DocumentExtractor, DocumentFetcher
from services.embedding_service import EmbeddingService
from services.llm_provider import LLMProvider
from services.memory_store import MemoryStore
from services.orchestrator import Orchestrator
from services.policy_kb import PolicyKnowledgeBase
from services.query_synthesizer import QuerySynthesizer
from services.record_source import RecordSource
from services.vector_store import open_collection
from utils.session_utils import Authenticator, SessionManager, create_redis_client

logger = get_logger(__name__)

MEMORY_COLLECTION = "memory"
POLICY_COLLECTION = "policy"


@dataclass
class ServiceContainer:
    settings: Settings
    database: Database
    sessions: SessionManager
    authenticator: Authenticator
    embedder: EmbeddingService
    memory: MemoryStore
    policy: PolicyKnowledgeBase
    llm: LLMProvider
    synthesizer: QuerySynthesizer
    records: RecordSource
    ledger: ConversationLedger
    extractor: DocumentExtractor
    fetcher: DocumentFetcher
    events: ConversationEvents
    orchestrator: Orchestrator

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Optional[Database] = None,
        redis_client=None,
        embedder: Optional[EmbeddingService] = None,
        llm: Optional[LLMProvider] = None,
        events: Optional[ConversationEvents] = None,
    ) -> "ServiceContainer":
        """Wire every handle from settings; pass overrides to substitute backends."""
        database = (database or Database(settings.database_url)).init()
        sessions = SessionManager(
            redis_client if redis_client is not None else create_redis_client(settings.redis_url),
            expire_hours=settings.session_expire_hours,
        )
        authenticator = Authenticator(sessions)
        embedder = embedder or EmbeddingService(settings.embedding_model)

        memory = MemoryStore(
            open_collection(settings.vector_store_dir, MEMORY_COLLECTION, settings.vector_backend),
            embedder,
            chunk_size=settings.memory_chunk_size,
            chunk_overlap=settings.memory_chunk_overlap,
            batch_size=settings.memory_batch_size,
        )
        policy = PolicyKnowledgeBase(
            open_collection(settings.vector_store_dir, POLICY_COLLECTION, settings.vector_backend),
            embedder,
        )

        llm = llm or LLMProvider.from_settings(settings)
        if not llm.is_configured:
            logger.warning("LLM_API_URL is not set; completion calls will fail")
        synthesizer = QuerySynthesizer(llm, model=settings.llm_filter_model)
        records = RecordSource(database)
        ledger = ConversationLedger(database)
        extractor = DocumentExtractor()
        fetcher = DocumentFetcher(settings.upload_base_url)
        events = events or ConversationEvents(settings.cors_origins)
        events.bind_verifier(authenticator.verify, owner_of=ledger.owner_of)

        orchestrator = Orchestrator(
            memory=memory,
            policy=policy,
            synthesizer=synthesizer,
            records=records,
            ledger=ledger,
            llm=llm,
            streamer=CompletionStreamer(llm, idle_timeout=settings.stream_timeout_seconds),
            authenticator=authenticator,
            extractor=extractor,
            fetcher=fetcher,
            listeners=[events.emit_message],
            retrieval_timeout=settings.retrieval_timeout_seconds,
            record_limit=settings.record_limit,
            memory_top_k=settings.memory_top_k,
            policy_top_k=settings.policy_top_k,
            policy_narration=settings.policy_narration,
        )
        logger.info("Services wired", extra={
            "vector_backend": settings.vector_backend,
            "llm_model": settings.llm_model,
            "policy_chunks": policy.collection.count(),
        })
        return cls(
            settings=settings,
            database=database,
            sessions=sessions,
            authenticator=authenticator,
            embedder=embedder,
            memory=memory,
            policy=policy,
            llm=llm,
            synthesizer=synthesizer,
            records=records,
            ledger=ledger,
            extractor=extractor,
            fetcher=fetcher,
            events=events,
            orchestrator=orchestrator,
        )

    def close(self) -> None:
        self.database.dispose()
        close = getattr(self.sessions.client, "close", None)
        if close is not None:
            close()
