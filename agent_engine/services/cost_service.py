from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from agent_engine.core.config import Settings
from agent_engine.core.errors import NotFoundError
from agent_engine.core.logging import get_logger
from agent_engine.core.utils import utc_now
from agent_engine.db.repositories.base import AgentRepository, CostRepository, ModelSpend


@dataclass
class AgentSpendSummary:
    agent_id: str
    window_start: datetime
    total_cost: float
    budget_limit: float
    remaining: Optional[float]
    by_model: List[ModelSpend] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CostService:
    """Read side of the cost ledger over the same trailing window the budget check uses."""

    def __init__(self, *, agents: AgentRepository, costs: CostRepository, settings: Settings) -> None:
        self.agents = agents
        self.costs = costs
        self.settings = settings
        self.logger = get_logger("CostService")

    async def agent_summary(self, tenant_id: str, agent_id: str) -> AgentSpendSummary:
        agent = await self.agents.get(tenant_id, agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)

        since = utc_now() - timedelta(days=self.settings.budget_window_days)
        by_model = await self.costs.spend_by_model(tenant_id, agent_id, since)
        total = sum(s.cost for s in by_model)
        limit = agent.config.budget_limit
        remaining = max(0.0, limit - total) if limit > 0 else None

        self.logger.info("CostService.agent_summary", agent_id=agent_id, total_cost=total)
        return AgentSpendSummary(
            agent_id=agent_id,
            window_start=since,
            total_cost=total,
            budget_limit=limit,
            remaining=remaining,
            by_model=by_model,
        )
