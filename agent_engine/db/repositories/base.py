from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from agent_engine.models.domain.agent import Agent, AgentBriefing, AgentStatus
from agent_engine.models.domain.cost import CostRecord
from agent_engine.models.domain.run import ACTIVE_RUN_STATUSES, Run, RunStatus, RunUpdate


@dataclass
class ModelSpend:
    provider: str
    model: str
    cost: float
    input_tokens: int
    output_tokens: int
    runs: int


@dataclass
class ProviderCredential:
    api_key: Optional[str]
    base_url: Optional[str] = None


class ActiveRunExistsError(Exception):
    """Raised by `RunRepository.create` when the agent already has a non-terminal run."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} already has an active run.")
        self.agent_id = agent_id


class AgentRepository(Protocol):
    """Every query is scoped by tenant; tombstoned agents are invisible."""

    async def create(self, agent: Agent) -> Agent: ...

    async def get(self, tenant_id: str, agent_id: str) -> Optional[Agent]: ...

    async def list_by_tenant(self, tenant_id: str) -> List[Agent]: ...

    async def update_status(
        self,
        tenant_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        expected: Optional[AgentStatus] = None,
    ) -> bool: ...

    async def save_briefing(self, tenant_id: str, agent_id: str, briefing: AgentBriefing) -> None: ...

    async def soft_delete(self, tenant_id: str, agent_id: str) -> bool: ...


class RunRepository(Protocol):
    async def create(self, run: Run) -> Run:
        """Insert an active run; raises ActiveRunExistsError if the agent already has one."""
        ...

    async def get(self, tenant_id: str, run_id: str) -> Optional[Run]: ...

    async def list_by_agent(self, tenant_id: str, agent_id: str, limit: int = 50) -> List[Run]: ...

    async def has_active_run(self, tenant_id: str, agent_id: str) -> bool: ...

    async def update(
        self,
        tenant_id: str,
        run_id: str,
        update: RunUpdate,
        *,
        expected: Iterable[RunStatus] = ACTIVE_RUN_STATUSES,
    ) -> Optional[Run]:
        """Apply `update` only while the run is in one of `expected`; None when it was not applied."""
        ...


class CostRepository(Protocol):
    async def record(self, cost: CostRecord) -> None: ...

    async def total_by_agent(self, tenant_id: str, agent_id: str, since: datetime) -> float: ...

    async def spend_by_model(self, tenant_id: str, agent_id: str, since: datetime) -> List[ModelSpend]: ...


class CredentialStore(Protocol):
    """Hands out already-decrypted tenant credentials just in time. Nothing is written back."""

    async def get(self, tenant_id: str, provider: str) -> Optional[ProviderCredential]: ...
