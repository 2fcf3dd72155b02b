from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from agent_engine.core.errors import ProviderError, ProviderTimeoutError
from agent_engine.llm.anthropic_client import AnthropicLLMClient
from agent_engine.llm.base_client import CompletionRequest, Message, Tool, ToolFunction, split_system_prompt


def _request(**overrides) -> CompletionRequest:
    values = dict(
        model="claude-3-5-sonnet-20241022",
        messages=[
            Message(role="system", content="Be terse."),
            Message(role="user", content="Hello"),
            Message(role="assistant", content="Hi"),
            Message(role="user", content="Summarize"),
        ],
        temperature=0.2,
    )
    values.update(overrides)
    return CompletionRequest(**values)


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_complete_sends_system_field_and_normalizes_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "claude-3-5-sonnet-20241022",
                "content": [
                    {"type": "text", "text": "Short "},
                    {"type": "text", "text": "summary."},
                    {"type": "tool_use", "id": "tu_1", "name": "lookup", "input": {"q": "x"}},
                ],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 12, "output_tokens": 7},
            },
        )

    client = AnthropicLLMClient(api_key="sk-ant-test", transport=httpx.MockTransport(handler))
    response = await client.complete(
        _request(tools=[Tool(function=ToolFunction(name="lookup", parameters={"type": "object"}))])
    )
    await client.aclose()

    body = seen["body"]
    assert body["system"] == "Be terse."
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["max_tokens"] == 4096
    assert body["tools"][0]["input_schema"] == {"type": "object"}
    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"

    assert response.message.content == "Short summary."
    assert response.message.tool_calls[0].name == "lookup"
    assert json.loads(response.message.tool_calls[0].arguments) == {"q": "x"}
    assert response.finish_reason == "end_turn"
    assert (response.usage.prompt_tokens, response.usage.completion_tokens, response.usage.total_tokens) == (12, 7, 19)


@pytest.mark.asyncio
async def test_non_2xx_becomes_provider_error_with_bounded_excerpt():
    body = "x" * 2000

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, text=body)

    client = AnthropicLLMClient(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as exc_info:
        await client.complete(_request())
    await client.aclose()

    err = exc_info.value
    assert err.provider == "anthropic"
    assert err.status == 529
    assert len(err.body_excerpt) == 500


@pytest.mark.asyncio
async def test_malformed_body_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>not json</html>")

    client = AnthropicLLMClient(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError):
        await client.complete(_request())
    await client.aclose()


@pytest.mark.asyncio
async def test_timeout_is_surfaced_distinctly():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = AnthropicLLMClient(api_key="k", timeout=1, transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderTimeoutError) as exc_info:
        await client.complete(_request())
    await client.aclose()
    assert exc_info.value.code == "PROVIDER_TIMEOUT"


def _sse(*events: dict) -> List[bytes]:
    return [f"event: {e['type']}\ndata: {json.dumps(e)}\n\n".encode() for e in events]


STREAM_EVENTS = (
    {"type": "message_start", "message": {"id": "msg_s", "usage": {"input_tokens": 20}}},
    {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
    {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}},
    {"type": "message_stop"},
)


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_final_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, stream=TrackingStream(_sse(*STREAM_EVENTS)))

    client = AnthropicLLMClient(api_key="k", transport=httpx.MockTransport(handler))
    chunks = [chunk async for chunk in client.stream(_request())]
    await client.aclose()

    assert "".join(c.delta for c in chunks) == "Hello"
    final = chunks[-1]
    assert final.is_final
    assert final.finish_reason == "end_turn"
    assert (final.usage.prompt_tokens, final.usage.completion_tokens) == (20, 4)
    assert all(not c.is_final for c in chunks[:-1])


@pytest.mark.asyncio
async def test_stream_abandoned_early_releases_connection():
    stream = TrackingStream(_sse(*STREAM_EVENTS))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    client = AnthropicLLMClient(api_key="k", transport=httpx.MockTransport(handler))
    chunks = client.stream(_request())
    first = await chunks.__anext__()
    assert first.delta == "Hel"
    await chunks.aclose()
    await client.aclose()

    assert stream.closed


@pytest.mark.asyncio
async def test_stream_error_event_raises():
    events = ({"type": "error", "error": {"type": "overloaded_error"}},)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=TrackingStream(_sse(*events)))

    client = AnthropicLLMClient(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError):
        async for _ in client.stream(_request()):
            pass
    await client.aclose()


@pytest.mark.asyncio
async def test_validate_key_uses_the_supplied_credential():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["x-api-key"])
        if request.headers["x-api-key"] != "good":
            return httpx.Response(401, json={"error": {"type": "authentication_error"}})
        return httpx.Response(
            200,
            json={"id": "m", "content": [{"type": "text", "text": "."}], "usage": {"input_tokens": 1, "output_tokens": 1}},
        )

    client = AnthropicLLMClient(api_key="configured", transport=httpx.MockTransport(handler))
    await client.validate_key("good")
    with pytest.raises(ProviderError) as exc_info:
        await client.validate_key("bad")
    assert exc_info.value.status == 401
    assert seen == ["good", "bad"]


def test_later_system_messages_are_joined_after_the_first():
    system, conversation = split_system_prompt(
        [
            Message(role="system", content="Be terse."),
            Message(role="user", content="Hello"),
            Message(role="system", content="Answer in French."),
        ]
    )

    assert system == "Be terse.\n\nAnswer in French."
    assert [m.role for m in conversation] == ["user"]
