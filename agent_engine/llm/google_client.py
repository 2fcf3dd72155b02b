from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

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

GOOGLE_MODELS = [
    ModelInfo(
        id="gemini-1.5-pro", name="Gemini 1.5 Pro", context_window=2000000, max_output=8192,
        input_price=0.00125, output_price=0.005, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="gemini-1.5-flash", name="Gemini 1.5 Flash", context_window=1000000, max_output=8192,
        input_price=0.000075, output_price=0.0003, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="gemini-1.5-flash-8b", name="Gemini 1.5 Flash 8B", context_window=1000000, max_output=8192,
        input_price=0.0000375, output_price=0.00015, capabilities=("text", "vision"),
    ),
]


def _gemini_role(role: str) -> str:
    # Gemini only knows "user" and "model" turns.
    return "model" if role == "assistant" else "user"


class GoogleLLMClient(HTTPLLMClient):
    """Gemini generateContent API. The key goes in a header so it never appears in URLs or logs."""

    name = "google"
    default_base_url = "https://generativelanguage.googleapis.com"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._models = list(GOOGLE_MODELS)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key or "",
        }

    def _build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        system_prompt, conversation = split_system_prompt(request.messages)
        payload: Dict[str, Any] = {
            "contents": [
                {"role": _gemini_role(msg.role), "parts": [{"text": msg.content}]}
                for msg in conversation
            ],
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        generation_config: Dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.top_p is not None:
            generation_config["topP"] = request.top_p
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.stop:
            generation_config["stopSequences"] = request.stop
        if generation_config:
            payload["generationConfig"] = generation_config

        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.function.name,
                            "description": tool.function.description,
                            "parameters": tool.function.parameters,
                        }
                        for tool in request.tools
                    ]
                }
            ]
        return payload

    def _parse_candidate(self, data: Dict[str, Any]) -> Tuple[str, List[ToolCall], Optional[str]]:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise ProviderError(self.name, "no candidates in response", body=json.dumps(data))
        candidate = candidates[0]
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part:
                texts.append(part.get("text") or "")
            elif "functionCall" in part:
                call = part["functionCall"] or {}
                tool_calls.append(
                    ToolCall(
                        id=f"call-{uuid.uuid4().hex[:12]}",
                        name=call.get("name", ""),
                        arguments=json.dumps(call.get("args") or {}),
                    )
                )
        return "".join(texts), tool_calls, candidate.get("finishReason")

    @staticmethod
    def _usage(data: Dict[str, Any]) -> TokenUsage:
        meta = data.get("usageMetadata") or {}
        return TokenUsage.of(
            meta.get("promptTokenCount"),
            meta.get("candidatesTokenCount"),
            meta.get("totalTokenCount"),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        data = await self._request_json(
            "POST",
            f"/v1beta/models/{request.model}:generateContent",
            self._build_payload(request),
        )
        content, tool_calls, finish_reason = self._parse_candidate(data)
        return CompletionResponse(
            id=data.get("responseId") or f"google-{uuid.uuid4().hex}",
            model=data.get("modelVersion") or request.model,
            message=Message(role="assistant", content=content, tool_calls=tool_calls),
            finish_reason=finish_reason or "",
            usage=self._usage(data),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        response_id = f"google-{uuid.uuid4().hex}"
        finish_reason = ""
        usage = TokenUsage()

        path = f"/v1beta/models/{request.model}:streamGenerateContent?alt=sse"
        async with self._open_stream(path, self._build_payload(request)) as response:
            async for event in self._iter_sse_data(response):
                if "usageMetadata" in event:
                    # Gemini reports cumulative usage; the last value wins.
                    usage = self._usage(event)
                if not event.get("candidates"):
                    continue
                text, _, reason = self._parse_candidate(event)
                if reason:
                    finish_reason = reason
                if text:
                    yield StreamChunk(id=response_id, delta=text)

        yield StreamChunk(id=response_id, finish_reason=finish_reason, usage=usage)

    async def validate_key(self, credential: str) -> None:
        scoped = self._with_credential(credential)
        try:
            await scoped._request_json("GET", "/v1beta/models")
        finally:
            await scoped.aclose()
