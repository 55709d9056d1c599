"""Tests for the completion stream wrapper and the SSE client."""

import asyncio
import json

import httpx
import pytest

from core.errors import StreamingError
from services.completion_streamer import CompletionStream, CompletionStreamer
from services.llm_provider import STREAM_DONE, LLMProvider, LLMProviderError, extract_message_text, parse_stream_line
from fakes import FakeLLM


async def _collect(stream):
    return [delta async for delta in stream]


@pytest.mark.asyncio
async def test_stream_yields_deltas_in_order_and_finishes():
    llm = FakeLLM(chunks=["a", "", "b", "c"])
    stream = CompletionStreamer(llm).stream([{"role": "user", "content": "hi"}])

    assert await _collect(stream) == ["a", "b", "c"]
    assert stream.text == "abc"
    assert stream.finished is True


@pytest.mark.asyncio
async def test_idle_timeout_is_a_streaming_error():
    async def stalled():
        yield "first"
        await asyncio.sleep(10)
        yield "never"

    stream = CompletionStream(stalled(), idle_timeout=0.05)
    with pytest.raises(StreamingError):
        await _collect(stream)
    assert stream.text == "first"
    assert stream.finished is False


@pytest.mark.asyncio
async def test_backend_failure_is_a_streaming_error():
    llm = FakeLLM(chunks=["a", "b", "c"], fail_stream_after=1)
    stream = CompletionStreamer(llm).stream([])
    with pytest.raises(StreamingError):
        await _collect(stream)
    assert stream.finished is False


@pytest.mark.asyncio
async def test_replay_streams_fixed_pieces():
    stream = CompletionStreamer.replay(["x", "y"])
    assert await _collect(stream) == ["x", "y"]
    assert stream.finished


def test_parse_stream_line():
    event = {"choices": [{"delta": {"content": "Hel"}}]}
    assert parse_stream_line("data: " + json.dumps(event)) == "Hel"
    assert parse_stream_line("data: [DONE]") is STREAM_DONE
    assert parse_stream_line(": keep-alive") is None
    assert parse_stream_line("") is None
    assert parse_stream_line('data: {"choices": [{"delta": {"role": "assistant"}}]}') == ""


def _sse(*deltas):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}\n\n" for d in deltas]
    return ("".join(lines) + "data: [DONE]\n\n").encode()


@pytest.mark.asyncio
async def test_provider_stream_chat_over_sse():
    def handler(request):
        body = json.loads(request.content)
        assert body["stream"] is True
        return httpx.Response(200, content=_sse("Hello", " world"), headers={"content-type": "text/event-stream"})

    llm = LLMProvider("http://llm.test/v1/chat/completions", transport=httpx.MockTransport(handler))
    deltas = [d async for d in llm.stream_chat([{"role": "user", "content": "hi"}])]
    assert deltas == ["Hello", " world"]


@pytest.mark.asyncio
async def test_provider_chat_retries_transient_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "{}"}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
        })

    llm = LLMProvider(
        "http://llm.test/v1/chat/completions",
        base_backoff=0.001,
        transport=httpx.MockTransport(handler),
    )
    response = await llm.chat([{"role": "user", "content": "hi"}])
    assert extract_message_text(response) == "{}"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_provider_chat_gives_up_on_client_errors():
    llm = LLMProvider(
        "http://llm.test/v1/chat/completions",
        transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad request")),
    )
    with pytest.raises(LLMProviderError):
        await llm.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_provider_requires_url():
    with pytest.raises(LLMProviderError):
        await LLMProvider(None).chat([])


@pytest.mark.asyncio
async def test_provider_chat_rejects_non_json_body():
    llm = LLMProvider(
        "http://llm.test/v1/chat/completions",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})
        ),
    )
    with pytest.raises(LLMProviderError):
        await llm.chat([{"role": "user", "content": "hi"}])
