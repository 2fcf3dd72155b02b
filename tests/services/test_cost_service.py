from __future__ import annotations

from datetime import timedelta

import pytest

from agent_engine.core.errors import NotFoundError
from agent_engine.core.utils import utc_now
from agent_engine.models.domain.agent import AgentConfig
from agent_engine.models.domain.cost import CostRecord


def _record(model: str, cost: float, *, days_ago: int = 0, agent_id: str = "agent-1") -> CostRecord:
    return CostRecord(
        id=f"{model}-{cost}-{days_ago}",
        tenant_id="tenant-1",
        agent_id=agent_id,
        run_id="run",
        provider="stub",
        model=model,
        input_tokens=100,
        output_tokens=50,
        total_tokens=150,
        cost=cost,
        duration_ms=10,
        created_at=utc_now() - timedelta(days=days_ago),
    )


@pytest.mark.asyncio
async def test_summary_groups_spend_by_model_within_window(container, seed_agent):
    await seed_agent(container, config=AgentConfig(budget_limit=2.0))
    for record in (
        _record("big-model", 0.75),
        _record("big-model", 0.25, days_ago=3),
        _record("small-model", 0.1),
        _record("big-model", 9.0, days_ago=40),
        _record("big-model", 5.0, agent_id="someone-else"),
    ):
        await container.costs_repo.record(record)

    summary = await container.costs.agent_summary("tenant-1", "agent-1")

    assert summary.total_cost == pytest.approx(1.1)
    assert summary.remaining == pytest.approx(0.9)
    assert [(s.model, s.runs) for s in summary.by_model] == [("big-model", 2), ("small-model", 1)]
    assert summary.by_model[0].input_tokens == 200


@pytest.mark.asyncio
async def test_remaining_never_goes_negative(container, seed_agent):
    await seed_agent(container, config=AgentConfig(budget_limit=0.5))
    await container.costs_repo.record(_record("big-model", 0.8))

    summary = await container.costs.agent_summary("tenant-1", "agent-1")
    assert summary.remaining == 0.0


@pytest.mark.asyncio
async def test_summary_for_unknown_agent(container):
    with pytest.raises(NotFoundError):
        await container.costs.agent_summary("tenant-1", "missing")
