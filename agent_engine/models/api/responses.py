from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from agent_engine.models.domain.agent import AgentStatus
from agent_engine.models.domain.run import RunStatus


class ExecutionCreatedResponse(BaseModel):
    id: str
    agent_id: str
    status: RunStatus
    started_at: datetime


class MessageResponse(BaseModel):
    message: str


class AgentStatusResponse(BaseModel):
    status: AgentStatus


class ModelSpendResponse(BaseModel):
    provider: str
    model: str
    cost: float
    input_tokens: int
    output_tokens: int
    runs: int


class AgentCostResponse(BaseModel):
    agent_id: str
    window_start: datetime
    total_cost: float
    budget_limit: float
    remaining: Optional[float]
    by_model: List[ModelSpendResponse]


class ModelInfoResponse(BaseModel):
    id: str
    name: str
    description: str
    context_window: int
    max_output: int
    input_price: float
    output_price: float
    capabilities: List[str]


class ProvidersResponse(BaseModel):
    providers: List[str]


class ValidateKeyResponse(BaseModel):
    provider: str
    valid: bool


class HealthResponse(BaseModel):
    status: str
    storage: str
    dependencies: Dict[str, str]
    providers: List[str]


class ErrorEnvelope(BaseModel):
    error: Dict[str, object]
