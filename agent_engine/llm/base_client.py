from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from agent_engine.core.utils import utc_now

# Rough English-text ratio. This is a pre-flight estimate only and must never
# be used for billing; real usage always comes from the backend's reply.
CHARS_PER_TOKEN = 4


@dataclass
class ToolFunction:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    function: ToolFunction
    type: str = "function"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # JSON-encoded, as produced by the backend
    type: str = "function"


@dataclass
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    name: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class CompletionRequest:
    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    max_tokens: int = 0
    top_p: Optional[float] = None
    stop: List[str] = field(default_factory=list)
    tools: List[Tool] = field(default_factory=list)
    tool_choice: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None) -> "TokenUsage":
        prompt = int(prompt_tokens or 0)
        completion = int(completion_tokens or 0)
        total = int(total_tokens) if total_tokens else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class CompletionResponse:
    id: str
    model: str
    message: Message
    finish_reason: str  # opaque, backend-specific vocabulary
    usage: TokenUsage
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class StreamChunk:
    id: str = ""
    delta: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None

    @property
    def is_final(self) -> bool:
        return self.usage is not None


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    context_window: int
    max_output: int
    input_price: float  # USD per 1K tokens
    output_price: float  # USD per 1K tokens
    capabilities: Tuple[str, ...] = ("text",)
    description: str = ""


@runtime_checkable
class BaseLLMClient(Protocol):
    """Capability contract every provider backend implements."""

    name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]: ...

    def get_models(self) -> List[ModelInfo]: ...

    async def validate_key(self, credential: str) -> None: ...

    def count_tokens(self, text: str) -> int: ...

    async def aclose(self) -> None: ...


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def split_system_prompt(messages: List[Message]) -> Tuple[Optional[str], List[Message]]:
    """
    Pull system messages out of the conversation for backends that take the
    system prompt as a separate field.

    This does not keep only the first system message: every system message
    is joined in order, first one leading, so none is silently dropped.
    """
    system_parts: List[str] = []
    conversation: List[Message] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            conversation.append(msg)
    system_prompt = "\n\n".join(part for part in system_parts if part) or None
    return system_prompt, conversation
