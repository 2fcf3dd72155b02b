from __future__ import annotations

import json

import httpx
import pytest

from agent_engine.core.errors import ProviderError, ProviderTimeoutError
from agent_engine.llm.base_client import CompletionRequest, Message
from agent_engine.llm.openai_client import OpenAILLMClient


def _request() -> CompletionRequest:
    return CompletionRequest(
        model="gpt-4o",
        messages=[Message(role="system", content="Sys"), Message(role="user", content="Hi")],
        temperature=0.1,
        max_tokens=50,
    )


def _completion() -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


@pytest.mark.asyncio
async def test_complete_normalizes_sdk_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion())

    client = OpenAILLMClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    response = await client.complete(_request())
    await client.aclose()

    assert seen["path"].endswith("/chat/completions")
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Sys"}
    assert seen["body"]["max_tokens"] == 50
    assert response.message.content == "Hello!"
    assert response.finish_reason == "stop"
    assert (response.usage.prompt_tokens, response.usage.completion_tokens, response.usage.total_tokens) == (10, 5, 15)


@pytest.mark.asyncio
async def test_status_error_is_not_retried_by_the_sdk():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, json={"error": {"message": "boom"}})

    client = OpenAILLMClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as exc_info:
        await client.complete(_request())
    await client.aclose()

    assert exc_info.value.status == 500
    assert exc_info.value.provider == "openai"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeout_maps_to_provider_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = OpenAILLMClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderTimeoutError):
        await client.complete(_request())
    await client.aclose()


@pytest.mark.asyncio
async def test_stream_collects_usage_from_final_chunk():
    chunks = [
        {"id": "c1", "object": "chat.completion.chunk", "created": 1, "model": "gpt-4o",
         "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}, "finish_reason": None}]},
        {"id": "c1", "object": "chat.completion.chunk", "created": 1, "model": "gpt-4o",
         "choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
        {"id": "c1", "object": "chat.completion.chunk", "created": 1, "model": "gpt-4o", "choices": [],
         "usage": {"prompt_tokens": 8, "completion_tokens": 2, "total_tokens": 10}},
    ]
    payload = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        return httpx.Response(200, text=payload, headers={"content-type": "text/event-stream"})

    client = OpenAILLMClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    out = [c async for c in client.stream(_request())]
    await client.aclose()

    assert "".join(c.delta for c in out) == "Hello"
    assert out[-1].finish_reason == "stop"
    assert out[-1].usage.total_tokens == 10


@pytest.mark.asyncio
async def test_validate_key_rejects_bad_credential():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["authorization"] == "Bearer sk-good":
            return httpx.Response(200, json={"object": "list", "data": []})
        return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

    client = OpenAILLMClient(api_key="sk-configured", transport=httpx.MockTransport(handler))
    await client.validate_key("sk-good")
    with pytest.raises(ProviderError) as exc_info:
        await client.validate_key("sk-bad")
    assert exc_info.value.status == 401
    await client.aclose()
