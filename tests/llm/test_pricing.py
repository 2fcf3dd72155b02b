from __future__ import annotations

import pytest

from agent_engine.llm.base_client import ModelInfo, TokenUsage
from agent_engine.llm.pricing import FALLBACK_RATE_PER_TOKEN, CostCalculator, default_pricing


def test_gpt4o_scenario_costs_0_0125():
    calculator = CostCalculator()
    cost = calculator.calculate("gpt-4o", TokenUsage.of(1000, 500))
    assert cost == pytest.approx(1.0 * 0.005 + 0.5 * 0.015)
    assert cost == pytest.approx(0.0125)


@pytest.mark.parametrize("model", sorted(default_pricing()))
def test_cost_is_linear_in_input_and_output(model):
    calculator = CostCalculator()
    base = calculator.calculate(model, TokenUsage.of(300, 200))
    doubled = calculator.calculate(model, TokenUsage.of(600, 400))
    assert doubled == pytest.approx(2 * base)

    only_in = calculator.calculate(model, TokenUsage.of(300, 0))
    only_out = calculator.calculate(model, TokenUsage.of(0, 200))
    assert base == pytest.approx(only_in + only_out)


def test_unknown_model_uses_flat_fallback():
    calculator = CostCalculator()
    usage = TokenUsage.of(1000, 500)
    first = calculator.calculate("no-such-model", usage)
    assert first == pytest.approx(1500 * FALLBACK_RATE_PER_TOKEN)
    assert calculator.calculate("no-such-model", usage) == first
    assert first >= 0


def test_unknown_model_with_zero_usage_is_free():
    assert CostCalculator().calculate("no-such-model", TokenUsage()) == 0


def test_set_pricing_overrides_default():
    calculator = CostCalculator()
    calculator.set_pricing(
        "gpt-4o",
        ModelInfo(id="gpt-4o", name="GPT-4o", context_window=1, max_output=1, input_price=1.0, output_price=2.0),
    )
    assert calculator.calculate("gpt-4o", TokenUsage.of(1000, 1000)) == pytest.approx(3.0)
