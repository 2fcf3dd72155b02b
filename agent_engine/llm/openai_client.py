from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from agent_engine.core.errors import ProviderError, ProviderTimeoutError
from agent_engine.llm.base_client import (
    CompletionRequest,
    CompletionResponse,
    Message,
    ModelInfo,
    StreamChunk,
    TokenUsage,
    ToolCall,
    estimate_tokens,
)

OPENAI_MODELS = [
    ModelInfo(
        id="gpt-4o", name="GPT-4o", context_window=128000, max_output=16384,
        input_price=0.005, output_price=0.015, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="gpt-4o-mini", name="GPT-4o Mini", context_window=128000, max_output=16384,
        input_price=0.00015, output_price=0.0006, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="gpt-4-turbo", name="GPT-4 Turbo", context_window=128000, max_output=4096,
        input_price=0.01, output_price=0.03, capabilities=("text", "vision", "function_calling"),
    ),
    ModelInfo(
        id="o1", name="o1", context_window=200000, max_output=100000,
        input_price=0.015, output_price=0.06, capabilities=("text", "reasoning"),
    ),
    ModelInfo(
        id="o1-mini", name="o1 Mini", context_window=128000, max_output=65536,
        input_price=0.003, output_price=0.012, capabilities=("text", "reasoning"),
    ),
]


class OpenAILLMClient:
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout or 300.0
        self._transport = transport
        self._client = self._build_client(api_key)

    def _build_client(self, api_key: Optional[str]) -> AsyncOpenAI:
        http_client = httpx.AsyncClient(transport=self._transport) if self._transport is not None else None
        # Retries are the orchestrator's job; the SDK must not add its own.
        return AsyncOpenAI(
            api_key=api_key or "missing",
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=http_client,
        )

    def _build_params(self, request: CompletionRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        for msg in request.messages:
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.name:
                entry["name"] = msg.name
            messages.append(entry)

        params: Dict[str, Any] = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.max_tokens:
            params["max_tokens"] = request.max_tokens
        if request.top_p is not None:
            params["top_p"] = request.top_p
        if request.stop:
            params["stop"] = request.stop
        if request.tools:
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.function.name,
                        "description": tool.function.description,
                        "parameters": tool.function.parameters,
                    },
                }
                for tool in request.tools
            ]
            if request.tool_choice:
                params["tool_choice"] = request.tool_choice
        return params

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeoutError(self.name, self.timeout)
        if isinstance(exc, openai.APIStatusError):
            return ProviderError(
                self.name,
                f"API error: {exc.status_code}",
                status=exc.status_code,
                body=exc.response.text,
            )
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(self.name, f"request failed: {exc}")
        return ProviderError(self.name, f"malformed response: {exc}")

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        try:
            response = await self._client.chat.completions.create(**self._build_params(request))
        except (openai.OpenAIError, ValueError, TypeError) as exc:
            raise self._translate_error(exc) from exc

        if not getattr(response, "choices", None):
            raise ProviderError(self.name, "no choices in response")

        choice = response.choices[0]
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}", type=tc.type)
            for tc in (choice.message.tool_calls or [])
        ]
        usage = response.usage
        return CompletionResponse(
            id=response.id,
            model=response.model or request.model,
            message=Message(
                role=choice.message.role or "assistant",
                content=choice.message.content or "",
                tool_calls=tool_calls,
            ),
            finish_reason=choice.finish_reason or "",
            usage=TokenUsage.of(
                getattr(usage, "prompt_tokens", 0),
                getattr(usage, "completion_tokens", 0),
                getattr(usage, "total_tokens", 0),
            ),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        params = self._build_params(request)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        try:
            stream = await self._client.chat.completions.create(**params)
        except (openai.OpenAIError, ValueError, TypeError) as exc:
            raise self._translate_error(exc) from exc

        chunk_id = ""
        finish_reason = ""
        usage = TokenUsage()
        try:
            async for chunk in stream:
                chunk_id = chunk.id or chunk_id
                if chunk.usage is not None:
                    usage = TokenUsage.of(
                        chunk.usage.prompt_tokens,
                        chunk.usage.completion_tokens,
                        chunk.usage.total_tokens,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta.content if choice.delta else None
                if delta:
                    yield StreamChunk(id=chunk_id, delta=delta)
        except (openai.OpenAIError, httpx.HTTPError, ValueError) as exc:
            if isinstance(exc, httpx.TimeoutException):
                raise ProviderTimeoutError(self.name, self.timeout) from exc
            raise self._translate_error(exc) from exc
        finally:
            await stream.close()

        yield StreamChunk(id=chunk_id, finish_reason=finish_reason, usage=usage)

    def get_models(self) -> List[ModelInfo]:
        return list(OPENAI_MODELS)

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    async def validate_key(self, credential: str) -> None:
        scoped = self._build_client(credential)
        try:
            await scoped.models.list()
        except (openai.OpenAIError, ValueError, TypeError) as exc:
            raise self._translate_error(exc) from exc
        finally:
            await scoped.close()

    async def aclose(self) -> None:
        await self._client.close()
