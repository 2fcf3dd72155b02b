from __future__ import annotations

import threading
from typing import Dict, List, Optional, Type

import httpx

from agent_engine.core.config import Settings
from agent_engine.core.errors import ModelUnknownError, ProviderError, ProviderNotFoundError
from agent_engine.core.logging import get_logger
from agent_engine.llm.anthropic_client import AnthropicLLMClient
from agent_engine.llm.base_client import BaseLLMClient, ModelInfo, TokenUsage
from agent_engine.llm.google_client import GoogleLLMClient
from agent_engine.llm.ollama_client import OllamaLLMClient
from agent_engine.llm.openai_client import OpenAILLMClient
from agent_engine.llm.pricing import CostCalculator

# Every supported backend. Adding one means adding a client class here; the
# orchestrator only ever sees BaseLLMClient.
PROVIDER_CLASSES: Dict[str, Type[BaseLLMClient]] = {
    OpenAILLMClient.name: OpenAILLMClient,
    AnthropicLLMClient.name: AnthropicLLMClient,
    GoogleLLMClient.name: GoogleLLMClient,
    OllamaLLMClient.name: OllamaLLMClient,
}


class ProviderRegistry:
    """
    Name-keyed provider clients plus the cost calculator they seed.

    Lookups are plain dict reads; registration takes a lock so that pricing
    and client maps are updated together.
    """

    def __init__(
        self,
        calculator: Optional[CostCalculator] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._providers: Dict[str, BaseLLMClient] = {}
        self._lock = threading.Lock()
        self._transport = transport
        self.calculator = calculator or CostCalculator()
        self.logger = get_logger("ProviderRegistry")

    def register(self, provider: BaseLLMClient) -> None:
        with self._lock:
            self._providers[provider.name] = provider
            # Last registration wins for overlapping model ids.
            self.calculator.set_many(provider.get_models())
        self.logger.info("ProviderRegistry.register", provider=provider.name)

    def get(self, name: str) -> BaseLLMClient:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    def list(self) -> List[str]:
        return list(self._providers.keys())

    def create_provider_with_key(
        self,
        provider_id: str,
        credential: Optional[str],
        endpoint_override: Optional[str] = None,
    ) -> BaseLLMClient:
        """Build a throwaway client bound to a tenant-supplied credential; it is not registered."""
        cls = PROVIDER_CLASSES.get(provider_id)
        if cls is None:
            raise ProviderNotFoundError(provider_id)
        return cls(api_key=credential, base_url=endpoint_override, transport=self._transport)  # type: ignore[call-arg]

    def calculate_cost(self, model: str, usage: TokenUsage) -> float:
        return self.calculator.calculate(model, usage)

    def get_model_info(self, model: str) -> ModelInfo:
        for provider in list(self._providers.values()):
            for info in provider.get_models():
                if info.id == model:
                    return info
        info = self.calculator.get(model)
        if info is None:
            raise ModelUnknownError(model)
        return info

    def list_models(self) -> List[ModelInfo]:
        seen: Dict[str, ModelInfo] = {}
        for provider in list(self._providers.values()):
            for info in provider.get_models():
                seen.setdefault(info.id, info)
        return list(seen.values())

    async def discover_models(self) -> None:
        """Refresh catalogues of providers that discover models at runtime (Ollama)."""
        for provider in list(self._providers.values()):
            refresh = getattr(provider, "refresh_models", None)
            if refresh is None:
                continue
            try:
                models = await refresh()
            except ProviderError as exc:
                self.logger.warning("ProviderRegistry.discover_failed", provider=provider.name, error=exc.message)
                continue
            self.calculator.set_many(models)
            self.logger.info("ProviderRegistry.discovered", provider=provider.name, models=len(models))

    async def aclose(self) -> None:
        for provider in list(self._providers.values()):
            await provider.aclose()


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    if settings.openai_api_key:
        registry.register(OpenAILLMClient(api_key=settings.openai_api_key, base_url=settings.openai_base_url))
    if settings.anthropic_api_key:
        registry.register(AnthropicLLMClient(api_key=settings.anthropic_api_key))
    if settings.google_api_key:
        registry.register(GoogleLLMClient(api_key=settings.google_api_key))
    if settings.ollama_base_url:
        registry.register(OllamaLLMClient(base_url=settings.ollama_base_url))
    return registry
