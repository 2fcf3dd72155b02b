from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_engine.core.errors import ProviderError, ProviderTimeoutError
from agent_engine.core.logging import get_logger
from agent_engine.llm.base_client import ModelInfo, estimate_tokens


class HTTPLLMClient:
    """
    Shared plumbing for backends spoken to over plain HTTP+JSON.

    Every failure leaving this class is a ProviderError (or its timeout
    specialisation). No retries happen here; retry policy belongs to the
    caller.
    """

    name: str = "http"
    default_base_url: str = ""
    default_timeout: float = 300.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout or self.default_timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._models: List[ModelInfo] = []
        self.logger = get_logger(f"LLM.{self.name}")

    # -- hooks -----------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    # -- shared behaviour ------------------------------------------------

    def get_models(self) -> List[ModelInfo]:
        return list(self._models)

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    def _with_credential(self, credential: str) -> "HTTPLLMClient":
        return type(self)(
            api_key=credential,
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request_json(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client().request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.name, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                self.name,
                f"API error: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                self.name,
                "failed to decode response",
                status=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(self.name, "unexpected response shape", status=response.status_code, body=response.text)
        return data

    @asynccontextmanager
    async def _open_stream(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        Open a streaming POST. Leaving the context (including via generator
        close on early abandonment) releases the connection.
        """
        try:
            async with self._client().stream("POST", path, json=payload) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(
                        self.name,
                        f"API error: {response.status_code}",
                        status=response.status_code,
                        body=body,
                    )
                yield response
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.name, self.timeout) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"stream failed: {exc}") from exc

    async def _iter_sse_data(self, response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data or data == "[DONE]":
                continue
            yield self._decode_event(data)

    async def _iter_ndjson(self, response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        async for line in response.aiter_lines():
            line = line.strip()
            if line:
                yield self._decode_event(line)

    def _decode_event(self, data: str) -> Dict[str, Any]:
        try:
            event = json.loads(data)
        except ValueError as exc:
            raise ProviderError(self.name, "malformed stream event", body=data) from exc
        if not isinstance(event, dict):
            raise ProviderError(self.name, "malformed stream event", body=data)
        return event
