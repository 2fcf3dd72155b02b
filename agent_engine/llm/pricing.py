from __future__ import annotations

import threading
from typing import Dict, Iterable, Optional

from agent_engine.llm.anthropic_client import ANTHROPIC_MODELS
from agent_engine.llm.base_client import ModelInfo, TokenUsage
from agent_engine.llm.google_client import GOOGLE_MODELS
from agent_engine.llm.openai_client import OPENAI_MODELS

# Applied per token (input and output alike) when a model has no pricing
# entry. Execution is never blocked on a pricing-table gap.
FALLBACK_RATE_PER_TOKEN = 0.00001


def default_pricing() -> Dict[str, ModelInfo]:
    table: Dict[str, ModelInfo] = {}
    for info in (*OPENAI_MODELS, *ANTHROPIC_MODELS, *GOOGLE_MODELS):
        table[info.id] = info
    return table


class CostCalculator:
    def __init__(self, pricing: Optional[Dict[str, ModelInfo]] = None) -> None:
        self._pricing: Dict[str, ModelInfo] = dict(default_pricing() if pricing is None else pricing)
        self._lock = threading.Lock()

    def set_pricing(self, model: str, info: ModelInfo) -> None:
        with self._lock:
            self._pricing[model] = info

    def set_many(self, models: Iterable[ModelInfo]) -> None:
        with self._lock:
            for info in models:
                self._pricing[info.id] = info

    def get(self, model: str) -> Optional[ModelInfo]:
        return self._pricing.get(model)

    def calculate(self, model: str, usage: TokenUsage) -> float:
        info = self._pricing.get(model)
        if info is None:
            total = usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)
            return max(0, total) * FALLBACK_RATE_PER_TOKEN

        input_cost = usage.prompt_tokens / 1000.0 * info.input_price
        output_cost = usage.completion_tokens / 1000.0 * info.output_price
        return input_cost + output_cost
