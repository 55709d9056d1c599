from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from core.config import Settings
from core.logging_config import get_logger
from core.metrics import (
    llm_errors_total,
    llm_request_duration_seconds,
    llm_requests_total,
    llm_retries_total,
    track_tokens,
)

logger = get_logger(__name__)

PROVIDER_NAME = "openai-compatible"


class LLMProviderError(RuntimeError):
    pass


class LLMProvider:
    """Chat-completions client for any OpenAI-compatible endpoint.

    `chat` returns the decoded JSON response, retrying 429/5xx and network
    errors with exponential backoff. `stream_chat` yields content deltas from
    a `stream: true` request; it never retries, since part of the answer may
    already have reached the caller.
    """

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        max_retries: int = 3,
        base_backoff: float = 0.8,
        concurrency: int = 6,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = PROVIDER_NAME
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self._concurrency = concurrency
        self._transport = transport
        # semaphore created lazily inside the running loop
        self._semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMProvider":
        return cls(
            api_url=settings.llm_api_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            timeout=settings.llm_timeout_seconds,
            max_retries=settings.llm_retries,
            base_backoff=settings.llm_backoff_seconds,
            concurrency=settings.llm_concurrency,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _gate(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._concurrency)
        return self._semaphore

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        response_format: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> dict:
        if not self.api_url:
            raise LLMProviderError("LLM API URL not configured")

        model = model or self.model
        payload: Dict[str, Any] = {"model": model, "messages": messages, "temperature": temperature}
        if response_format:
            payload["response_format"] = response_format

        start_time = time.time()
        status = "success"
        error_type = None

        try:
            async with self._client() as client, self._gate():
                attempt = 0
                while True:
                    attempt += 1
                    try:
                        logger.info(f"Sending LLM request (attempt {attempt})", extra={
                            "provider": self.provider,
                            "model": model,
                            "temperature": temperature,
                            "message_count": len(messages),
                        })
                        resp = await client.post(self.api_url, json=payload, headers=self._headers())
                    except (httpx.RequestError, httpx.TimeoutException) as exc:
                        if attempt <= self.max_retries:
                            await self._backoff(attempt, model, reason=str(exc))
                            continue
                        status = "error"
                        error_type = type(exc).__name__
                        logger.error(f"LLM request failed after {attempt} attempts", extra={
                            "provider": self.provider,
                            "model": model,
                            "error": str(exc),
                        })
                        raise LLMProviderError(f"LLM request failed after {attempt} attempts: {exc}") from exc

                    # retry on transient service-unavailable or rate-limit
                    if resp.status_code >= 500 or resp.status_code == 429:
                        if attempt <= self.max_retries:
                            await self._backoff(attempt, model, reason=f"http_{resp.status_code}")
                            continue
                    if resp.status_code >= 400:
                        status = "error"
                        error_type = f"http_{resp.status_code}"
                        logger.error("LLM request error", extra={
                            "provider": self.provider,
                            "model": model,
                            "status_code": resp.status_code,
                            "response": resp.text[:500],
                        })
                        raise LLMProviderError(f"LLM API returned {resp.status_code}: {resp.text[:500]}")

                    try:
                        response_data = resp.json()
                    except ValueError as exc:
                        status = "error"
                        error_type = "invalid_json"
                        logger.error("LLM response is not JSON", extra={
                            "provider": self.provider,
                            "model": model,
                            "response": resp.text[:500],
                        })
                        raise LLMProviderError(f"LLM API returned a non-JSON body: {resp.text[:200]}") from exc
                    if not isinstance(response_data, dict):
                        status = "error"
                        error_type = "invalid_json"
                        raise LLMProviderError("LLM API returned an unexpected JSON body")
                    self._track_token_usage(response_data, model)
                    logger.info("LLM request successful", extra={
                        "provider": self.provider,
                        "model": model,
                        "duration": time.time() - start_time,
                        "attempt": attempt,
                    })
                    return response_data
        finally:
            self._observe(model, status, error_type, start_time)

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        if not self.api_url:
            raise LLMProviderError("LLM API URL not configured")

        model = model or self.model
        payload = {"model": model, "messages": messages, "temperature": temperature, "stream": True}
        start_time = time.time()
        status = "success"
        error_type = None

        try:
            async with self._client() as client, self._gate():
                async with client.stream("POST", self.api_url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode(errors="ignore")
                        status = "error"
                        error_type = f"http_{resp.status_code}"
                        raise LLMProviderError(f"LLM API returned {resp.status_code}: {body[:500]}")

                    async for line in resp.aiter_lines():
                        delta = parse_stream_line(line)
                        if delta is None:
                            continue
                        if delta is STREAM_DONE:
                            break
                        if delta:
                            yield delta
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            status = "error"
            error_type = type(exc).__name__
            raise LLMProviderError(f"LLM stream failed: {exc}") from exc
        except GeneratorExit:
            status = "cancelled"
            raise
        finally:
            self._observe(model, status, error_type, start_time)

    async def _backoff(self, attempt: int, model: str, reason: str) -> None:
        backoff = self.base_backoff * (2 ** (attempt - 1))
        # small jitter
        backoff = backoff * (0.8 + 0.4 * (time.time() % 1))
        logger.warning("LLM request failed, retrying", extra={
            "provider": self.provider,
            "model": model,
            "reason": reason,
            "attempt": attempt,
            "backoff": backoff,
        })
        llm_retries_total.labels(provider=self.provider, model=model).inc()
        await asyncio.sleep(backoff)

    def _observe(self, model: str, status: str, error_type: Optional[str], start_time: float) -> None:
        llm_requests_total.labels(provider=self.provider, model=model, status=status).inc()
        llm_request_duration_seconds.labels(provider=self.provider, model=model).observe(time.time() - start_time)
        if error_type:
            llm_errors_total.labels(provider=self.provider, model=model, error_type=error_type).inc()

    def _track_token_usage(self, response_data: dict, model: str) -> None:
        usage = response_data.get("usage") if isinstance(response_data, dict) else None
        if not usage:
            logger.debug("No token usage data in response, skipping token tracking")
            return
        track_tokens(
            provider=self.provider,
            model=model,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )


STREAM_DONE = object()


def parse_stream_line(line: str):
    """Decode one SSE line of a chat-completions stream.

    Returns the content delta (possibly ""), STREAM_DONE on the terminator, or
    None for lines that carry no data.
    """
    line = (line or "").strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return STREAM_DONE
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping undecodable stream event", extra={"line": data[:200]})
        return None
    choices = event.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    return delta.get("content") or ""


def extract_message_text(response: dict) -> Optional[str]:
    """Pull the assistant text out of a chat-completions response."""
    choices = response.get("choices") if isinstance(response, dict) else None
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            msg = first.get("message")
            if isinstance(msg, dict) and isinstance(msg.get("content"), str):
                return msg.get("content")
            # choices[].text (older completions)
            if isinstance(first.get("text"), str):
                return first.get("text")
    return None
