from __future__ import annotations

import pytest

from agent_engine.core.utils import utc_now
from agent_engine.lifecycle.briefing import (
    BriefingContext,
    BriefingEngine,
    BriefingError,
    KnowledgeDocument,
    RunSummary,
    build_completion_request,
    compose_prompt,
    summarize_context,
)
from agent_engine.llm.base_client import ModelInfo
from agent_engine.models.domain.agent import (
    Agent,
    AgentBriefing,
    AgentConfig,
    AgentType,
    BriefingDepth,
    ToolFunctionSpec,
)


def _agent(depth: BriefingDepth = BriefingDepth.STANDARD, **overrides) -> Agent:
    now = utc_now()
    values = dict(
        id="agent-1",
        tenant_id="tenant-1",
        name="Coder",
        type=AgentType.CODING,
        provider="stub",
        model="stub-model",
        system_prompt="You write code.",
        config=AgentConfig(briefing_depth=depth),
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return Agent(**values)


CONTEXT = BriefingContext(
    tenant_name="Acme",
    project_name="Billing",
    project_description="Invoices and payments.",
    repositories=["acme/billing"],
    recent_commits=["fix rounding"],
    recent_runs=[RunSummary(prompt="Refactor the invoice generator to support multiple currencies", status="completed")],
    pending_tasks=["Add VAT export"],
    documents=[KnowledgeDocument(title="Style guide", summary="Use black.", source="wiki")],
)


class StaticLoader:
    def __init__(self, context: BriefingContext) -> None:
        self.context = context
        self.calls = 0

    async def load(self, agent):
        self.calls += 1
        return self.context


def test_quick_prompt_only_names_org_and_project():
    prompt = compose_prompt(_agent(BriefingDepth.QUICK), CONTEXT)
    assert "## Current Context (Quick Briefing)" in prompt
    assert "Organization: Acme" in prompt
    assert "Project: Billing" in prompt
    assert "Recent Activity" not in prompt


def test_standard_prompt_lists_recent_runs_truncated():
    prompt = compose_prompt(_agent(), CONTEXT)
    assert prompt.startswith("You write code.")
    assert "### Current Project: Billing" in prompt
    assert "- acme/billing" in prompt
    assert "- [completed] Refactor the invoice generator to support multi..." in prompt
    assert "Pending Tasks" not in prompt
    assert "## Guidelines" in prompt


def test_full_prompt_adds_knowledge_commits_and_tasks():
    prompt = compose_prompt(_agent(BriefingDepth.FULL), CONTEXT)
    assert "## Current Context (Full Briefing)" in prompt
    assert "**Style guide** (wiki)" in prompt
    assert "- fix rounding" in prompt
    assert "- [ ] Add VAT export" in prompt


def test_custom_agents_get_no_guidelines():
    prompt = compose_prompt(_agent(type=AgentType.CUSTOM), BriefingContext())
    assert "## Guidelines" not in prompt


def test_summary_of_empty_context():
    assert summarize_context(BriefingContext()) == "No context loaded"
    assert summarize_context(CONTEXT) == "Acme | Billing | 1 recent runs"


@pytest.mark.asyncio
async def test_engine_produces_briefing_with_estimate():
    loader = StaticLoader(CONTEXT)
    info = ModelInfo(id="stub-model", name="Stub", context_window=8000, max_output=2000, input_price=0, output_price=0)
    engine = BriefingEngine(loader, delays={"standard": 0.0}, model_lookup=lambda model: info)

    briefing = await engine.brief(_agent())

    assert loader.calls == 1
    assert briefing.enhanced_prompt.startswith("You write code.")
    assert briefing.estimated_tokens == len(briefing.enhanced_prompt) // 4
    assert briefing.context_summary == "Acme | Billing | 1 recent runs"
    assert briefing.warnings == []


@pytest.mark.asyncio
async def test_engine_warns_when_model_is_not_catalogued():
    engine = BriefingEngine(StaticLoader(BriefingContext()), delays={}, model_lookup=lambda model: None)
    briefing = await engine.brief(_agent())
    assert any("fallback pricing" in w for w in briefing.warnings)


@pytest.mark.asyncio
async def test_engine_rejects_prompt_that_does_not_fit_the_model():
    tiny = ModelInfo(id="stub-model", name="Tiny", context_window=50, max_output=10, input_price=0, output_price=0)
    engine = BriefingEngine(StaticLoader(CONTEXT), delays={}, model_lookup=lambda model: tiny)
    with pytest.raises(BriefingError):
        await engine.brief(_agent(BriefingDepth.FULL))


def test_request_prefers_briefed_prompt_and_appends_context():
    agent = _agent(
        briefing=AgentBriefing(enhanced_prompt="Briefed.", briefed_at=utc_now()),
        tools=[ToolFunctionSpec(name="search", parameters={"type": "object"})],
    )
    request = build_completion_request(agent, "Fix the bug", {"ticket": "BUG-1"})

    assert [m.role for m in request.messages] == ["system", "user"]
    assert request.messages[0].content == "Briefed.\n\n## Request Context\n\n- ticket: BUG-1"
    assert request.messages[1].content == "Fix the bug"
    assert request.model == "stub-model"
    assert request.max_tokens == 4096
    assert request.tools[0].function.name == "search"


def test_request_without_system_prompt_has_only_user_message():
    request = build_completion_request(_agent(system_prompt=""), "Hello")
    assert [m.role for m in request.messages] == ["user"]
