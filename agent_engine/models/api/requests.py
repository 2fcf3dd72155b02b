from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CreateExecutionRequest(BaseModel):
    agent_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    context: Optional[Dict[str, Any]] = None

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt cannot be empty")
        return value


class ValidateKeyRequest(BaseModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
