from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from agent_engine.core.utils import utc_now
from agent_engine.db.repositories.base import ActiveRunExistsError, ModelSpend, ProviderCredential
from agent_engine.models.domain.agent import Agent, AgentBriefing, AgentStatus
from agent_engine.models.domain.cost import CostRecord
from agent_engine.models.domain.run import ACTIVE_RUN_STATUSES, Run, RunStatus, RunUpdate

# In-process repositories for tests and STORAGE_BACKEND=memory. Each instance
# owns its data; nothing is shared at module level. Method bodies never await,
# so every operation is atomic with respect to the event loop.


class InMemoryAgentRepository:
    def __init__(self) -> None:
        self._agents: Dict[str, Agent] = {}

    def _visible(self, tenant_id: str, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        if agent is None or agent.tenant_id != tenant_id or agent.deleted_at is not None:
            return None
        return agent

    async def create(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    async def get(self, tenant_id: str, agent_id: str) -> Optional[Agent]:
        agent = self._visible(tenant_id, agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_by_tenant(self, tenant_id: str) -> List[Agent]:
        agents = [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if a.tenant_id == tenant_id and a.deleted_at is None
        ]
        return sorted(agents, key=lambda a: a.created_at, reverse=True)

    async def update_status(
        self,
        tenant_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        expected: Optional[AgentStatus] = None,
    ) -> bool:
        agent = self._visible(tenant_id, agent_id)
        if agent is None:
            return False
        if expected is not None and agent.status != AgentStatus(expected):
            return False
        self._agents[agent_id] = agent.model_copy(update={"status": AgentStatus(status), "updated_at": utc_now()})
        return True

    async def save_briefing(self, tenant_id: str, agent_id: str, briefing: AgentBriefing) -> None:
        agent = self._visible(tenant_id, agent_id)
        if agent is not None:
            self._agents[agent_id] = agent.model_copy(update={"briefing": briefing, "updated_at": utc_now()})

    async def soft_delete(self, tenant_id: str, agent_id: str) -> bool:
        agent = self._visible(tenant_id, agent_id)
        if agent is None:
            return False
        now = utc_now()
        self._agents[agent_id] = agent.model_copy(update={"deleted_at": now, "updated_at": now})
        return True


class InMemoryRunRepository:
    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}

    async def create(self, run: Run) -> Run:
        if run.status in ACTIVE_RUN_STATUSES and any(
            r.agent_id == run.agent_id and r.status in ACTIVE_RUN_STATUSES for r in self._runs.values()
        ):
            raise ActiveRunExistsError(run.agent_id)
        self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get(self, tenant_id: str, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            return None
        return run.model_copy(deep=True)

    async def list_by_agent(self, tenant_id: str, agent_id: str, limit: int = 50) -> List[Run]:
        runs = [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if r.tenant_id == tenant_id and r.agent_id == agent_id
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    async def has_active_run(self, tenant_id: str, agent_id: str) -> bool:
        return any(
            r.tenant_id == tenant_id and r.agent_id == agent_id and r.status in ACTIVE_RUN_STATUSES
            for r in self._runs.values()
        )

    async def update(
        self,
        tenant_id: str,
        run_id: str,
        update: RunUpdate,
        *,
        expected: Iterable[RunStatus] = ACTIVE_RUN_STATUSES,
    ) -> Optional[Run]:
        run = self._runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            return None
        if run.status not in {RunStatus(s) for s in expected}:
            return None
        changes = update.model_dump(exclude_unset=True)
        if "result" in changes and update.result is not None:
            changes["result"] = update.result
        updated = run.model_copy(update=changes)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)


class InMemoryCostRepository:
    def __init__(self) -> None:
        self._records: List[CostRecord] = []

    async def record(self, cost: CostRecord) -> None:
        self._records.append(cost)

    def _window(self, tenant_id: str, agent_id: str, since: datetime) -> List[CostRecord]:
        return [
            r
            for r in self._records
            if r.tenant_id == tenant_id and r.agent_id == agent_id and r.created_at >= since
        ]

    async def total_by_agent(self, tenant_id: str, agent_id: str, since: datetime) -> float:
        return sum(r.cost for r in self._window(tenant_id, agent_id, since))

    async def spend_by_model(self, tenant_id: str, agent_id: str, since: datetime) -> List[ModelSpend]:
        grouped: Dict[Tuple[str, str], ModelSpend] = {}
        for r in self._window(tenant_id, agent_id, since):
            key = (r.provider, r.model)
            spend = grouped.get(key)
            if spend is None:
                spend = grouped[key] = ModelSpend(r.provider, r.model, 0.0, 0, 0, 0)
            spend.cost += r.cost
            spend.input_tokens += r.input_tokens
            spend.output_tokens += r.output_tokens
            spend.runs += 1
        return sorted(grouped.values(), key=lambda s: s.cost, reverse=True)


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._credentials: Dict[str, Dict[str, ProviderCredential]] = defaultdict(dict)

    def put(self, tenant_id: str, provider: str, credential: ProviderCredential) -> None:
        self._credentials[tenant_id][provider] = credential

    async def get(self, tenant_id: str, provider: str) -> Optional[ProviderCredential]:
        return self._credentials.get(tenant_id, {}).get(provider)
