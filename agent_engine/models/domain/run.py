from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    PENDING = "pending"
    BRIEFING = "briefing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.BRIEFING, RunStatus.RUNNING})
CANCELLABLE_RUN_STATUSES = ACTIVE_RUN_STATUSES


class RunResult(BaseModel):
    content: str
    finish_reason: Optional[str] = None
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)


class Run(BaseModel):
    id: str
    tenant_id: str
    agent_id: str
    prompt: str
    context: Optional[Dict[str, Any]] = None
    status: RunStatus = RunStatus.PENDING
    provider: str
    model: str
    result: Optional[RunResult] = None
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    attempts: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RunUpdate(BaseModel):
    """Partial update applied to a non-terminal run."""

    status: Optional[RunStatus] = None
    result: Optional[RunResult] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    attempts: Optional[int] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
