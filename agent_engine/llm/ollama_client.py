from __future__ import annotations

import uuid
from typing import Any, AsyncIterator, Dict, List

from agent_engine.core.errors import ProviderError
from agent_engine.llm.base_client import (
    CompletionRequest,
    CompletionResponse,
    Message,
    ModelInfo,
    StreamChunk,
    TokenUsage,
)
from agent_engine.llm.http_client import HTTPLLMClient


class OllamaLLMClient(HTTPLLMClient):
    """
    Local Ollama server. No credential is involved; the model catalogue is
    discovered from the server and priced at zero.
    """

    name = "ollama"
    default_base_url = "http://localhost:11434"
    default_timeout = 600.0  # local models can be slow

    def _build_payload(self, request: CompletionRequest, *, stream: bool) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        if request.stop:
            options["stop"] = request.stop

        payload: Dict[str, Any] = {
            "model": request.model,
            # Ollama accepts system messages natively, so they stay in the list.
            "messages": [{"role": msg.role, "content": msg.content} for msg in request.messages],
            "stream": stream,
        }
        if options:
            payload["options"] = options
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        data = await self._request_json("POST", "/api/chat", self._build_payload(request, stream=False))
        message = data.get("message")
        if not isinstance(message, dict):
            raise ProviderError(self.name, "response has no message", body=str(data))

        return CompletionResponse(
            id=f"ollama-{uuid.uuid4().hex}",
            model=data.get("model") or request.model,
            message=Message(role=message.get("role") or "assistant", content=message.get("content") or ""),
            finish_reason=data.get("done_reason") or "stop",
            usage=TokenUsage.of(data.get("prompt_eval_count"), data.get("eval_count")),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        chunk_id = f"ollama-{uuid.uuid4().hex}"
        final = StreamChunk(id=chunk_id, finish_reason="stop", usage=TokenUsage())

        async with self._open_stream("/api/chat", self._build_payload(request, stream=True)) as response:
            async for event in self._iter_ndjson(response):
                if event.get("error"):
                    raise ProviderError(self.name, "stream error event", body=str(event))
                delta = (event.get("message") or {}).get("content") or ""
                if delta:
                    yield StreamChunk(id=chunk_id, delta=delta)
                if event.get("done"):
                    final = StreamChunk(
                        id=chunk_id,
                        finish_reason=event.get("done_reason") or "stop",
                        usage=TokenUsage.of(event.get("prompt_eval_count"), event.get("eval_count")),
                    )
                    break

        yield final

    async def refresh_models(self) -> List[ModelInfo]:
        data = await self._request_json("GET", "/api/tags")
        models: List[ModelInfo] = []
        for entry in data.get("models") or []:
            model_name = entry.get("name")
            if not model_name:
                continue
            models.append(
                ModelInfo(
                    id=model_name,
                    name=model_name,
                    description="Local Ollama model",
                    context_window=4096,  # varies by model; Ollama does not report it here
                    max_output=2048,
                    input_price=0.0,
                    output_price=0.0,
                    capabilities=("text",),
                )
            )
        self._models = models
        return list(models)

    async def validate_key(self, credential: str) -> None:
        # Nothing to authenticate; reachability is the only meaningful check.
        await self._request_json("GET", "/api/tags")
