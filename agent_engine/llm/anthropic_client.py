from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List

from agent_engine.core.errors import ProviderError
from agent_engine.llm.base_client import (
    CompletionRequest,
    CompletionResponse,
    Message,
    ModelInfo,
    StreamChunk,
    TokenUsage,
    ToolCall,
    split_system_prompt,
)
from agent_engine.llm.http_client import HTTPLLMClient

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
VALIDATION_MODEL = "claude-3-haiku-20240307"

ANTHROPIC_MODELS = [
    ModelInfo(
        id="claude-3-5-sonnet-20241022", name="Claude 3.5 Sonnet", context_window=200000, max_output=8192,
        input_price=0.003, output_price=0.015, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="claude-3-opus-20240229", name="Claude 3 Opus", context_window=200000, max_output=4096,
        input_price=0.015, output_price=0.075, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="claude-3-haiku-20240307", name="Claude 3 Haiku", context_window=200000, max_output=4096,
        input_price=0.00025, output_price=0.00125, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="claude-3-5-haiku-20241022", name="Claude 3.5 Haiku", context_window=200000, max_output=8192,
        input_price=0.001, output_price=0.005, capabilities=("text", "vision", "function_calling"),
    ),
]


class AnthropicLLMClient(HTTPLLMClient):
    """Anthropic Messages API. The system prompt travels in the top-level `system` field."""

    name = "anthropic"
    default_base_url = "https://api.anthropic.com"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._models = list(ANTHROPIC_MODELS)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _build_payload(self, request: CompletionRequest, *, stream: bool = False) -> Dict[str, Any]:
        system_prompt, conversation = split_system_prompt(request.messages)
        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": msg.role, "content": msg.content} for msg in conversation],
        }
        if system_prompt:
            payload["system"] = system_prompt
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop:
            payload["stop_sequences"] = request.stop
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.function.name,
                    "description": tool.function.description,
                    "input_schema": tool.function.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        data = await self._request_json("POST", "/v1/messages", self._build_payload(request))

        content_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError(self.name, "response has no content blocks", body=json.dumps(data))
        for block in blocks:
            if block.get("type") == "text":
                content_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        arguments=json.dumps(block.get("input") or {}),
                    )
                )

        usage = data.get("usage") or {}
        return CompletionResponse(
            id=data.get("id", ""),
            model=data.get("model") or request.model,
            message=Message(role="assistant", content="".join(content_parts), tool_calls=tool_calls),
            finish_reason=data.get("stop_reason") or "",
            usage=TokenUsage.of(usage.get("input_tokens"), usage.get("output_tokens")),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        message_id = ""
        input_tokens = 0
        output_tokens = 0
        finish_reason = ""

        async with self._open_stream("/v1/messages", self._build_payload(request, stream=True)) as response:
            async for event in self._iter_sse_data(response):
                kind = event.get("type")
                if kind == "message_start":
                    message = event.get("message") or {}
                    message_id = message.get("id", "")
                    input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
                elif kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield StreamChunk(id=message_id, delta=delta["text"])
                elif kind == "message_delta":
                    finish_reason = (event.get("delta") or {}).get("stop_reason") or finish_reason
                    output_tokens = (event.get("usage") or {}).get("output_tokens", output_tokens)
                elif kind == "error":
                    raise ProviderError(self.name, "stream error event", body=json.dumps(event))
                elif kind == "message_stop":
                    break

        yield StreamChunk(
            id=message_id,
            finish_reason=finish_reason,
            usage=TokenUsage.of(input_tokens, output_tokens),
        )

    async def validate_key(self, credential: str) -> None:
        # Anthropic has no free auth-only endpoint; a 1-token completion is the cheapest check.
        scoped = self._with_credential(credential)
        try:
            await scoped.complete(
                CompletionRequest(
                    model=VALIDATION_MODEL,
                    messages=[Message(role="user", content="Hi")],
                    max_tokens=1,
                )
            )
        finally:
            await scoped.aclose()
