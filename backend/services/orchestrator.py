"""
Answering pipeline.

One `PipelineRun` per inbound question walks
RECEIVED -> (EXTRACTING) -> MEMORY_AND_FILTER_RETRIEVAL -> MODE_SELECT ->
STREAMING -> PERSIST -> DONE, with FAILED reachable from anywhere. Every
transition is logged and counted.

Retrieval sources are independent and run concurrently; each one is bounded
by a timeout and degrades to empty context instead of failing the run. The
completion stream is the opposite: a timeout or backend error there fails the
run and the partial answer is dropped, so the ledger only ever holds complete
assistant messages.
"""
from __future__ import annotations

import asyncio
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar, Union

from core.errors import (
    AssistantError,
    AuthError,
    ChannelClosed,
    ExtractionError,
    RetrievalError,
    StreamingError,
)
from core.logging_config import get_logger
from core.metrics import (
    active_streams,
    pipeline_runs_total,
    pipeline_state_transitions_total,
    retrieval_degraded_total,
)
from services.completion_streamer import CompletionStream, CompletionStreamer
from services.context_assembler import (
    UNREADABLE_DOCUMENT_REPLY,
    AnswerMode,
    IntentClassifier,
    KeywordIntentClassifier,
    augment_question,
    build_policy_answer,
    build_policy_prompt,
    build_summary_prompt,
    is_readable_document,
    select_mode,
)
from services.conversation_ledger import ConversationLedger
from services.document_extractor import DocumentExtractor, DocumentFetcher
from services.frames import (
    ChunkFrame,
    EndFrame,
    ErrorFrame,
    Frame,
    QuestionEnvelope,
    StartFrame,
    StreamRequest,
)
from services.llm_provider import LLMProvider, LLMProviderError, extract_message_text
from services.memory_store import MemoryStore
from services.policy_kb import PolicyKnowledgeBase
from services.query_synthesizer import QuerySynthesizer, StructuredFilter
from services.record_source import RecordSource, public_view

logger = get_logger(__name__)

T = TypeVar("T")

NO_SUMMARY = "No Summary!"
APOLOGY_MODE = "apology"


class PipelineState(str, enum.Enum):
    RECEIVED = "received"
    EXTRACTING = "extracting"
    MEMORY_AND_FILTER_RETRIEVAL = "memory_and_filter_retrieval"
    MODE_SELECT = "mode_select"
    STREAMING = "streaming"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


class Authenticator(Protocol):
    def verify(self, token: Optional[str]) -> int: ...


class FrameSink(Protocol):
    """Outbound side of a streaming channel; `send` raises ChannelClosed once the client is gone."""

    async def send(self, frame: Frame) -> None: ...


MessageListener = Callable[[str, Dict[str, Any]], Awaitable[None]]


class PipelineRun:
    def __init__(self, channel: str) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.channel = channel
        self.state = PipelineState.RECEIVED
        self.mode: Optional[str] = None
        pipeline_state_transitions_total.labels(state=self.state.value).inc()

    def to(self, state: PipelineState) -> None:
        logger.info("Pipeline transition", extra={
            "run_id": self.id,
            "channel": self.channel,
            "from_state": self.state.value,
            "to_state": state.value,
        })
        self.state = state
        pipeline_state_transitions_total.labels(state=state.value).inc()

    def finish(self, outcome: str) -> None:
        pipeline_runs_total.labels(channel=self.channel, mode=self.mode or "none", outcome=outcome).inc()


@dataclass
class PreparedAnswer:
    """Everything the answer step needs, gathered before any completion call."""

    question: str
    mode: Union[AnswerMode, str]
    prompt_question: str = ""
    filter: Optional[StructuredFilter] = None
    records: List[Dict[str, Any]] = field(default_factory=list)
    policy_context: List[str] = field(default_factory=list)
    memory: str = ""

    @property
    def is_apology(self) -> bool:
        return self.mode == APOLOGY_MODE

    @property
    def mode_name(self) -> str:
        return self.mode.value if isinstance(self.mode, AnswerMode) else str(self.mode)


class Orchestrator:
    def __init__(
        self,
        memory: MemoryStore,
        policy: PolicyKnowledgeBase,
        synthesizer: QuerySynthesizer,
        records: RecordSource,
        ledger: ConversationLedger,
        llm: LLMProvider,
        streamer: CompletionStreamer,
        authenticator: Optional[Authenticator] = None,
        extractor: Optional[DocumentExtractor] = None,
        fetcher: Optional[DocumentFetcher] = None,
        classifier: Optional[IntentClassifier] = None,
        listeners: Optional[List[MessageListener]] = None,
        retrieval_timeout: float = 10.0,
        record_limit: int = 50,
        memory_top_k: int = 5,
        policy_top_k: int = 5,
        policy_narration: bool = False,
    ) -> None:
        self.memory = memory
        self.policy = policy
        self.synthesizer = synthesizer
        self.records = records
        self.ledger = ledger
        self.llm = llm
        self.streamer = streamer
        self.authenticator = authenticator
        self.extractor = extractor or DocumentExtractor()
        self.fetcher = fetcher
        self.classifier = classifier or KeywordIntentClassifier()
        self.listeners = list(listeners or [])
        self.retrieval_timeout = retrieval_timeout
        self.record_limit = record_limit
        self.memory_top_k = memory_top_k
        self.policy_top_k = policy_top_k
        self.policy_narration = policy_narration

    # ------------------------------------------------------------------
    # retrieval
    # ------------------------------------------------------------------

    async def _bounded(self, source: str, default: T, fn: Callable[..., T], *args) -> T:
        """Run blocking retrieval in a worker thread; timeouts and RetrievalError yield `default`."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.retrieval_timeout)
        except TimeoutError:
            reason = "timeout"
            logger.warning("Retrieval timed out, continuing without it", extra={
                "source": source,
                "timeout_seconds": self.retrieval_timeout,
            })
        except RetrievalError as exc:
            reason = "error"
            logger.warning("Retrieval failed, continuing without it", extra={"source": source, "error": str(exc)})
        retrieval_degraded_total.labels(source=source, reason=reason).inc()
        return default

    async def _synthesize(self, question: str) -> StructuredFilter:
        return await self.synthesizer.synthesize(question)

    async def _no_filter(self) -> Optional[StructuredFilter]:
        return None

    async def prepare(
        self,
        run: PipelineRun,
        owner: int,
        question: str,
        document_text: Optional[str] = None,
    ) -> PreparedAnswer:
        """Document handling, concurrent retrieval and mode selection.

        `document_text` is None when no attachment came with the question; any
        other value is checked for readability first and an unreadable one
        short-circuits to the apology before any model or record call.
        """
        memory_owner = str(owner)
        prompt_question = question

        if document_text is not None:
            if not is_readable_document(document_text):
                logger.info("Unreadable document, answering with apology", extra={"run_id": run.id})
                run.mode = APOLOGY_MODE
                return PreparedAnswer(question=question, mode=APOLOGY_MODE, prompt_question=question)
            await self._bounded("document", 0, self.memory.store_document, memory_owner, document_text, True)
            prompt_question = augment_question(question, document_text)
        elif self.classifier.refers_to_document(question):
            previous = await self._bounded("document", "", self.memory.retrieve_document, memory_owner)
            prompt_question = augment_question(question, previous)

        run.to(PipelineState.MEMORY_AND_FILTER_RETRIEVAL)
        policy_intent = self.classifier.is_policy_question(question)
        memory_text, policy_context, synthesized = await asyncio.gather(
            self._bounded("memory", "", self.memory.retrieve_qa, memory_owner, question, self.memory_top_k),
            self._bounded("policy", [], self.policy.query_context, question, self.policy_top_k),
            self._no_filter() if policy_intent else self._synthesize(question),
        )

        run.to(PipelineState.MODE_SELECT)
        mode = select_mode(question, policy_context, self.classifier)
        run.mode = mode.value
        prepared = PreparedAnswer(
            question=question,
            mode=mode,
            prompt_question=prompt_question,
            policy_context=list(policy_context),
            memory=memory_text,
        )
        if mode is AnswerMode.SUMMARY:
            prepared.filter = synthesized if synthesized is not None else await self._synthesize(question)
            prepared.records = await asyncio.to_thread(self.records.find, prepared.filter, self.record_limit)
        logger.info("Answer mode selected", extra={
            "run_id": run.id,
            "mode": mode.value,
            "policy_chunks": len(prepared.policy_context),
            "records": len(prepared.records),
        })
        return prepared

    # ------------------------------------------------------------------
    # synchronous question/answer
    # ------------------------------------------------------------------

    async def answer(self, owner: int, question: str, uploaded_text: Optional[str] = None) -> Dict[str, Any]:
        run = PipelineRun(channel="http")
        try:
            # an empty upload field means no document; whitespace or garbage is an unreadable one
            prepared = await self.prepare(run, owner, question, uploaded_text or None)
            run.to(PipelineState.STREAMING)
            summary = await self._complete(prepared)

            run.to(PipelineState.PERSIST)
            await self._bounded("memory", None, self.memory.store_qa, str(owner), question, summary)
            run.to(PipelineState.DONE)
        except Exception:
            run.to(PipelineState.FAILED)
            run.finish("failed")
            raise
        run.finish("completed")

        payload: Dict[str, Any] = {"summary": summary}
        if prepared.mode is AnswerMode.SUMMARY:
            payload["filter"] = prepared.filter.as_dict() if prepared.filter else {}
            payload["count"] = len(prepared.records)
            payload["employees"] = [public_view(r) for r in prepared.records]
        return payload

    async def _complete(self, prepared: PreparedAnswer) -> str:
        if prepared.is_apology:
            return UNREADABLE_DOCUMENT_REPLY
        if prepared.mode is AnswerMode.POLICY and not self.policy_narration:
            return "".join(build_policy_answer(prepared.policy_context))
        try:
            response = await self.llm.chat(self._messages(prepared), temperature=0.3)
        except LLMProviderError as exc:
            raise StreamingError(str(exc)) from exc
        return extract_message_text(response) or NO_SUMMARY

    def _messages(self, prepared: PreparedAnswer) -> List[Dict[str, str]]:
        if prepared.mode is AnswerMode.POLICY:
            return build_policy_prompt(prepared.prompt_question, prepared.policy_context)
        return build_summary_prompt(
            prepared.memory, prepared.policy_context, prepared.prompt_question, prepared.records
        )

    def _completion(self, prepared: PreparedAnswer) -> CompletionStream:
        if prepared.is_apology:
            return CompletionStreamer.replay([UNREADABLE_DOCUMENT_REPLY])
        if prepared.mode is AnswerMode.POLICY and not self.policy_narration:
            return CompletionStreamer.replay(build_policy_answer(prepared.policy_context))
        return self.streamer.stream(self._messages(prepared))

    # ------------------------------------------------------------------
    # streaming channel
    # ------------------------------------------------------------------

    async def stream(self, request: Union[StreamRequest, Dict[str, Any]], sink: FrameSink) -> None:
        """Serve one streaming request; always ends in one terminal frame unless the client left."""
        if not isinstance(request, StreamRequest):
            request = StreamRequest.model_validate(request)
        run = PipelineRun(channel="ws")

        try:
            if self.authenticator is None:
                raise AuthError("No authenticator configured")
            owner = self.authenticator.verify(request.token)
        except AuthError as exc:
            logger.info("Stream request rejected", extra={"run_id": run.id, "error": str(exc)})
            run.to(PipelineState.FAILED)
            run.finish("rejected")
            await self._send_error(sink, AuthError.public_message)
            return

        completion: Optional[CompletionStream] = None
        active_streams.inc()
        try:
            envelope = QuestionEnvelope.parse(request.question)
            conversation_id = await self._record(
                request.conversation_id, owner, "user", envelope.text, create_missing=True
            )

            document_text: Optional[str] = None
            if envelope.file_url:
                run.to(PipelineState.EXTRACTING)
                document_text = await self._extract(run, envelope.file_url)

            prepared = await self.prepare(run, owner, envelope.text, document_text)

            run.to(PipelineState.STREAMING)
            completion = self._completion(prepared)
            await sink.send(StartFrame(
                question=envelope.text,
                mode=prepared.mode_name,
                filter=prepared.filter.as_dict() if prepared.filter else {},
                count=len(prepared.records),
                conversation_id=conversation_id,
            ))
            async for delta in completion:
                await sink.send(ChunkFrame(data=delta))
            if not completion.finished:
                raise StreamingError("Completion ended before the backend finished")
            reply = completion.text
            if not reply:
                reply = NO_SUMMARY
                await sink.send(ChunkFrame(data=reply))

            run.to(PipelineState.PERSIST)
            await self._record(conversation_id, owner, "assistant", reply)
            await self._bounded("memory", None, self.memory.store_qa, str(owner), envelope.text, reply)

            await sink.send(EndFrame())
            run.to(PipelineState.DONE)
            run.finish("completed")
        except ChannelClosed:
            logger.info("Client disconnected, aborting answer", extra={
                "run_id": run.id,
                "state": run.state.value,
            })
            if completion is not None:
                await completion.aclose()
            run.to(PipelineState.FAILED)
            run.finish("disconnected")
        except AssistantError as exc:
            logger.warning("Answer pipeline failed", extra={
                "run_id": run.id,
                "state": run.state.value,
                "error_type": type(exc).__name__,
                "error": str(exc),
            })
            if completion is not None:
                await completion.aclose()
            run.to(PipelineState.FAILED)
            run.finish("failed")
            await self._send_error(sink, exc.public_message)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected answer pipeline error", extra={"run_id": run.id, "state": run.state.value})
            if completion is not None:
                await completion.aclose()
            run.to(PipelineState.FAILED)
            run.finish("failed")
            await self._send_error(sink, StreamingError.public_message)
        finally:
            active_streams.dec()

    async def _extract(self, run: PipelineRun, file_url: str) -> str:
        """Fetch and extract an attachment; anything unreadable becomes empty text."""
        if self.fetcher is None:
            logger.warning("Attachment ignored, no fetcher configured", extra={"run_id": run.id})
            return ""
        try:
            content, mime, filename = await self.fetcher.fetch(file_url)
            return await asyncio.to_thread(self.extractor.extract, content, mime, filename)
        except ExtractionError as exc:
            logger.info("Attachment unreadable", extra={"run_id": run.id, "error": str(exc)})
            return ""

    async def _record(
        self,
        conversation_id: Optional[str],
        owner: int,
        role: str,
        content: str,
        create_missing: bool = False,
    ) -> str:
        if conversation_id is None:
            conversation_id = await asyncio.to_thread(self.ledger.create, owner, content)
            message = {"role": role, "content": content}
        else:
            message = await asyncio.to_thread(
                self.ledger.append, conversation_id, owner, role, content, create_missing
            )
        await self._notify(conversation_id, message)
        return conversation_id

    async def _notify(self, conversation_id: str, message: Dict[str, Any]) -> None:
        for listener in self.listeners:
            try:
                await listener(conversation_id, message)
            except Exception as exc:  # noqa: BLE001
                logger.error("Message listener failed", extra={"conversation_id": conversation_id, "error": str(exc)})

    @staticmethod
    async def _send_error(sink: FrameSink, message: str) -> None:
        try:
            await sink.send(ErrorFrame(message=message))
        except ChannelClosed:
            pass

