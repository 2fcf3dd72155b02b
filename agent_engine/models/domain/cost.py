from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class CostRecord(BaseModel):
    """Append-only ledger entry; never updated after insertion."""

    id: str
    tenant_id: str
    agent_id: str
    run_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    duration_ms: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)
