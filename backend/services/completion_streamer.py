from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, List, Optional

from core.errors import StreamingError
from core.logging_config import get_logger
from services.llm_provider import LLMProvider, LLMProviderError

logger = get_logger(__name__)


class CompletionStream:
    """One in-flight completion.

    Iterating yields the non-empty deltas in the order the model produced
    them; `text` is everything yielded so far. `finished` only becomes True
    after the backend signalled the end of the stream, so a caller can tell a
    complete answer from a truncated one.
    """

    def __init__(self, source: AsyncIterator[str], idle_timeout: Optional[float]) -> None:
        self._source = source
        self._idle_timeout = idle_timeout
        self._parts: List[str] = []
        self.finished = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> str:
        while True:
            try:
                # same task as the producer, so httpx's stream context stays valid
                async with asyncio.timeout(self._idle_timeout):
                    delta = await self._source.__anext__()
            except StopAsyncIteration:
                self.finished = True
                raise
            except TimeoutError as exc:
                await self.aclose()
                raise StreamingError(f"No completion output for {self._idle_timeout}s") from exc
            except LLMProviderError as exc:
                raise StreamingError(str(exc)) from exc
            if delta:
                self._parts.append(delta)
                return delta

    async def aclose(self) -> None:
        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            try:
                await closer()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error while closing completion stream", extra={"error": str(exc)})


class CompletionStreamer:
    def __init__(self, llm: LLMProvider, idle_timeout: Optional[float] = 60.0, temperature: float = 0.3) -> None:
        self.llm = llm
        self.idle_timeout = idle_timeout
        self.temperature = temperature

    def stream(self, messages: List[Dict[str, str]]) -> CompletionStream:
        return CompletionStream(
            self.llm.stream_chat(messages, temperature=self.temperature),
            idle_timeout=self.idle_timeout,
        )

    @staticmethod
    def replay(pieces: List[str]) -> CompletionStream:
        """A finished-on-exhaustion stream over fixed text (no model call)."""

        async def _pieces() -> AsyncIterator[str]:
            for piece in pieces:
                yield piece

        return CompletionStream(_pieces(), idle_timeout=None)
