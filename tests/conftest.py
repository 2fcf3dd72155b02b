from __future__ import annotations

import asyncio
import os
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Keep module-level app construction away from real infrastructure.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("EVENTS_ENABLED", "false")

from agent_engine.core.config import Settings  # noqa: E402
from agent_engine.core.utils import utc_now  # noqa: E402
from agent_engine.llm.base_client import (  # noqa: E402
    CompletionRequest,
    CompletionResponse,
    Message,
    ModelInfo,
    StreamChunk,
    TokenUsage,
    estimate_tokens,
)
from agent_engine.llm.registry import ProviderRegistry  # noqa: E402
from agent_engine.main import create_app  # noqa: E402
from agent_engine.models.domain.agent import Agent, AgentConfig, AgentStatus  # noqa: E402
from agent_engine.services.container import ServiceContainer, build_container  # noqa: E402

STUB_MODEL = ModelInfo(
    id="stub-model",
    name="Stub Model",
    context_window=8000,
    max_output=2000,
    input_price=0.005,
    output_price=0.015,
)


class StubLLMClient:
    """Scriptable provider: fixed usage, optional delay, queued errors."""

    def __init__(self, name: str = "stub") -> None:
        self.name = name
        self.content = "done"
        self.usage = TokenUsage.of(1000, 500)
        self.delay = 0.0
        self.errors: List[Exception] = []
        self.requests: List[CompletionRequest] = []
        self.started = asyncio.Event()
        self.closed = False

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return CompletionResponse(
            id=f"stub-{len(self.requests)}",
            model=request.model,
            message=Message(role="assistant", content=self.content),
            finish_reason="stop",
            usage=self.usage,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        response = await self.complete(request)
        yield StreamChunk(id=response.id, delta=response.message.content)
        yield StreamChunk(id=response.id, finish_reason="stop", usage=response.usage)

    def get_models(self) -> List[ModelInfo]:
        return [STUB_MODEL]

    async def validate_key(self, credential: str) -> None:
        return None

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    async def aclose(self) -> None:
        self.closed = True


class RecordingEventSink:
    """Keeps every published event so tests can assert on the sequence."""

    def __init__(self) -> None:
        self.events: List[dict] = []

    async def publish(self, channel: str, payload: dict) -> None:
        self.events.append({"channel": channel, **payload})

    def of_type(self, event: str) -> List[dict]:
        return [e for e in self.events if e.get("event") == event]


def make_settings(**overrides: Any) -> Settings:
    values: dict = {
        "environment": "test",
        "storage_backend": "memory",
        "execution_backend": "local",
        "events_enabled": False,
        "worker_pool_size": 4,
        "briefing_delays": {"quick": 0.0, "standard": 0.0, "full": 0.0},
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def stub_provider() -> StubLLMClient:
    return StubLLMClient()


@pytest.fixture
def registry(stub_provider: StubLLMClient) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(stub_provider)
    return registry


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def container(settings: Settings, registry: ProviderRegistry, events: RecordingEventSink) -> ServiceContainer:
    return build_container(settings, registry=registry, events=events)


@pytest.fixture
def make_container(registry: ProviderRegistry, events: RecordingEventSink) -> Callable[..., ServiceContainer]:
    def _make(**overrides: Any) -> ServiceContainer:
        return build_container(make_settings(**overrides), registry=registry, events=events)

    return _make


@pytest.fixture
def seed_agent() -> Callable[..., Awaitable[Agent]]:
    """Insert an agent straight into storage, bypassing the lifecycle."""

    async def _seed(
        container: ServiceContainer,
        *,
        tenant_id: str = "tenant-1",
        agent_id: str = "agent-1",
        status: AgentStatus = AgentStatus.READY,
        provider: str = "stub",
        model: str = "stub-model",
        config: Optional[AgentConfig] = None,
    ) -> Agent:
        now = utc_now()
        agent = Agent(
            id=agent_id,
            tenant_id=tenant_id,
            name="Test agent",
            provider=provider,
            model=model,
            system_prompt="You are a test agent.",
            config=config or AgentConfig(),
            status=status,
            created_at=now,
            updated_at=now,
        )
        await container.agents_repo.create(agent)
        return agent

    return _seed


@pytest.fixture
def stub_factory() -> Callable[..., StubLLMClient]:
    return StubLLMClient


@pytest.fixture
def client(container: ServiceContainer) -> Iterator[TestClient]:
    with TestClient(create_app(container)) as test_client:
        yield test_client


def wait_until(fetch: Callable[[], Any], predicate: Callable[[Any], bool], timeout: float = 3.0) -> Any:
    """Poll a synchronous fetch until the predicate holds; background jobs run on the client's loop."""
    deadline = time.monotonic() + timeout
    value = fetch()
    while not predicate(value):
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not met within {timeout}s: {value!r}")
        time.sleep(0.02)
        value = fetch()
    return value


@pytest.fixture
def poll() -> Callable[..., Any]:
    return wait_until
