from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentStatus(str, Enum):
    CONFIGURED = "configured"
    BRIEFING = "briefing"
    READY = "ready"
    EXECUTING = "executing"
    PAUSED = "paused"
    ERROR = "error"
    TERMINATED = "terminated"


class AgentType(str, Enum):
    CODING = "coding"
    BUSINESS = "business"
    ACCOUNTING = "accounting"
    MARKETING = "marketing"
    PRODUCT = "product"
    ASSISTANT = "assistant"
    CUSTOM = "custom"


class BriefingDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    FULL = "full"


class RetryPolicy(BaseModel):
    max_retries: int = Field(0, ge=0)
    backoff_ms: int = Field(1000, ge=0)
    max_backoff_ms: int = Field(30000, ge=0)


class AgentConfig(BaseModel):
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, gt=0)
    budget_limit: float = Field(0.0, ge=0.0)  # trailing-month cap in USD; 0 disables the check
    timeout_seconds: int = Field(300, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    briefing_required: bool = True
    briefing_depth: BriefingDepth = BriefingDepth.STANDARD


class ToolFunctionSpec(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class AgentBriefing(BaseModel):
    enhanced_prompt: str
    context_summary: str = ""
    estimated_tokens: int = 0
    warnings: List[str] = Field(default_factory=list)
    briefed_at: datetime


class Agent(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str = ""
    type: AgentType = AgentType.CUSTOM
    provider: str
    model: str
    system_prompt: str = ""
    tools: List[ToolFunctionSpec] = Field(default_factory=list)
    config: AgentConfig = Field(default_factory=AgentConfig)
    status: AgentStatus = AgentStatus.CONFIGURED
    briefing: Optional[AgentBriefing] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    type: AgentType = AgentType.CUSTOM
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    system_prompt: str = ""
    tools: List[ToolFunctionSpec] = Field(default_factory=list)
    config: Optional[AgentConfig] = None
