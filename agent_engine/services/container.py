from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from agent_engine.core.config import Settings
from agent_engine.core.logging import get_logger
from agent_engine.db.memory import (
    InMemoryAgentRepository,
    InMemoryCostRepository,
    InMemoryCredentialStore,
    InMemoryRunRepository,
)
from agent_engine.db.repositories.base import AgentRepository, CostRepository, CredentialStore, RunRepository
from agent_engine.lifecycle.briefing import BriefingEngine, RunHistoryContextLoader
from agent_engine.llm.registry import ProviderRegistry, build_provider_registry
from agent_engine.services.agent_service import AgentService
from agent_engine.services.cost_service import CostService
from agent_engine.services.events import EventSink, LogEventSink, RedisEventSink
from agent_engine.services.execution_service import ExecutionService
from agent_engine.worker.dispatch import CeleryDispatcher, Dispatcher, LocalDispatcher
from agent_engine.worker.pool import AgentLocks, RunWorkerPool

logger = get_logger("ServiceContainer")


@dataclass
class ServiceContainer:
    settings: Settings
    agents_repo: AgentRepository
    runs_repo: RunRepository
    costs_repo: CostRepository
    credentials: CredentialStore
    registry: ProviderRegistry
    events: EventSink
    dispatcher: Dispatcher
    pool: Optional[RunWorkerPool]
    agents: AgentService
    executions: ExecutionService
    costs: CostService

    async def start(self) -> None:
        for repo in (self.agents_repo, self.runs_repo, self.costs_repo):
            ensure = getattr(repo, "ensure_indexes", None)
            if ensure is not None:
                await ensure()
        await self.registry.discover_models()
        logger.info(
            "ServiceContainer.started",
            providers=self.registry.list(),
            storage=self.settings.storage_backend,
            execution=self.settings.execution_backend,
        )

    async def shutdown(self) -> None:
        if self.pool is not None:
            await self.pool.shutdown()
        await self.registry.aclose()
        logger.info("ServiceContainer.stopped")


def _storage(settings: Settings) -> tuple[Any, Any, Any, Any]:
    if settings.storage_backend.lower() == "memory":
        return (
            InMemoryAgentRepository(),
            InMemoryRunRepository(),
            InMemoryCostRepository(),
            InMemoryCredentialStore(),
        )

    from agent_engine.db.repositories.agents_repo import MongoAgentRepository
    from agent_engine.db.repositories.costs_repo import MongoCostRepository
    from agent_engine.db.repositories.credentials_repo import MongoCredentialStore
    from agent_engine.db.repositories.runs_repo import MongoRunRepository

    return MongoAgentRepository(), MongoRunRepository(), MongoCostRepository(), MongoCredentialStore()


def build_container(
    settings: Settings,
    *,
    agents_repo: Optional[AgentRepository] = None,
    runs_repo: Optional[RunRepository] = None,
    costs_repo: Optional[CostRepository] = None,
    credentials: Optional[CredentialStore] = None,
    registry: Optional[ProviderRegistry] = None,
    events: Optional[EventSink] = None,
) -> ServiceContainer:
    """
    Wire repositories, provider registry, dispatcher and services.

    Anything passed explicitly wins over what the settings would select,
    which is how tests inject in-memory storage and stub providers.
    """
    default_agents, default_runs, default_costs, default_credentials = (
        _storage(settings)
        if None in (agents_repo, runs_repo, costs_repo, credentials)
        else (None, None, None, None)
    )
    agents_repo = agents_repo or default_agents
    runs_repo = runs_repo or default_runs
    costs_repo = costs_repo or default_costs
    credentials = credentials or default_credentials
    registry = registry or build_provider_registry(settings)
    if events is None:
        events = RedisEventSink() if settings.events_enabled else LogEventSink()

    locks = AgentLocks()
    pool: Optional[RunWorkerPool] = None
    dispatcher: Dispatcher
    if settings.execution_backend.lower() == "celery":
        dispatcher = CeleryDispatcher()
    else:
        pool = RunWorkerPool(settings.worker_pool_size)
        dispatcher = LocalDispatcher(pool)

    briefing = BriefingEngine(
        RunHistoryContextLoader(runs_repo),
        delays=settings.briefing_delays,
        model_lookup=registry.calculator.get,
    )
    agents = AgentService(
        agents=agents_repo,
        briefing=briefing,
        dispatcher=dispatcher,
        events=events,
        locks=locks,
    )
    executions = ExecutionService(
        agents=agents_repo,
        runs=runs_repo,
        costs=costs_repo,
        credentials=credentials,
        registry=registry,
        dispatcher=dispatcher,
        events=events,
        locks=locks,
        settings=settings,
    )
    costs = CostService(agents=agents_repo, costs=costs_repo, settings=settings)

    if isinstance(dispatcher, LocalDispatcher):
        dispatcher.bind(run_handler=executions.execute_run, briefing_handler=agents.run_briefing)

    return ServiceContainer(
        settings=settings,
        agents_repo=agents_repo,
        runs_repo=runs_repo,
        costs_repo=costs_repo,
        credentials=credentials,
        registry=registry,
        events=events,
        dispatcher=dispatcher,
        pool=pool,
        agents=agents,
        executions=executions,
        costs=costs,
    )
