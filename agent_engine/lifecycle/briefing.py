from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, TypedDict

from langgraph.graph import END, START, StateGraph

from agent_engine.core.logging import get_logger
from agent_engine.core.utils import truncate, utc_now
from agent_engine.db.repositories.base import RunRepository
from agent_engine.llm.base_client import CompletionRequest, Message, ModelInfo, Tool, ToolFunction, estimate_tokens
from agent_engine.models.domain.agent import Agent, AgentBriefing, AgentType, BriefingDepth

DEFAULT_BRIEFING_DELAYS: Dict[str, float] = {"quick": 2.0, "standard": 5.0, "full": 10.0}

GUIDELINES: Dict[AgentType, List[str]] = {
    AgentType.CODING: [
        "Always commit to the dev or staging branch, never directly to main",
        "Write clear, descriptive commit messages",
        "Follow the existing code style and conventions",
        "Add appropriate tests for new functionality",
        "Create a PR with a clear description when done",
    ],
    AgentType.BUSINESS: [
        "Provide data-driven insights with sources when possible",
        "Consider both short-term and long-term implications",
        "Be specific and actionable in recommendations",
    ],
    AgentType.ACCOUNTING: [
        "Ensure accuracy in all calculations",
        "Follow standard accounting practices",
        "Maintain clear audit trails",
    ],
    AgentType.MARKETING: [
        "Align content with brand voice and guidelines",
        "Consider the target audience for all content",
        "Optimize for engagement and conversions",
    ],
    AgentType.ASSISTANT: [
        "Be concise and professional in communications",
        "Verify important details before taking action",
        "Prioritize urgent matters appropriately",
    ],
}


class BriefingError(Exception):
    pass


@dataclass
class RunSummary:
    prompt: str
    status: str


@dataclass
class KnowledgeDocument:
    title: str
    summary: str
    source: str


@dataclass
class BriefingContext:
    tenant_name: Optional[str] = None
    project_name: Optional[str] = None
    project_description: Optional[str] = None
    repositories: List[str] = field(default_factory=list)
    recent_commits: List[str] = field(default_factory=list)
    recent_runs: List[RunSummary] = field(default_factory=list)
    pending_tasks: List[str] = field(default_factory=list)
    documents: List[KnowledgeDocument] = field(default_factory=list)


class ContextLoader(Protocol):
    async def load(self, agent: Agent) -> BriefingContext: ...


class RunHistoryContextLoader:
    """Loads the agent's recent run history; tenant and project context come from the wider platform."""

    def __init__(self, runs_repo: RunRepository, limit: int = 5) -> None:
        self.runs_repo = runs_repo
        self.limit = limit

    async def load(self, agent: Agent) -> BriefingContext:
        runs = await self.runs_repo.list_by_agent(agent.tenant_id, agent.id, limit=self.limit)
        return BriefingContext(
            recent_runs=[RunSummary(prompt=r.prompt, status=r.status.value) for r in runs],
        )


class BriefingState(TypedDict, total=False):
    agent: Agent
    context: BriefingContext
    prompt: str
    warnings: List[str]


class BriefingEngine:
    """
    LangGraph pipeline run while an agent sits in `briefing`:
    - load context (with a depth-dependent warm-up delay)
    - compose the enhanced system prompt
    - verify it fits the model before the agent is declared ready
    """

    def __init__(
        self,
        context_loader: ContextLoader,
        *,
        delays: Optional[Dict[str, float]] = None,
        model_lookup: Optional[Callable[[str], Optional[ModelInfo]]] = None,
    ) -> None:
        self.context_loader = context_loader
        self.delays = dict(DEFAULT_BRIEFING_DELAYS if delays is None else delays)
        self.model_lookup = model_lookup
        self.logger = get_logger("BriefingEngine")
        self._graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(BriefingState)

        graph.add_node("load_context", self._load_context_node)
        graph.add_node("compose_prompt", self._compose_prompt_node)
        graph.add_node("verify", self._verify_node)

        graph.add_edge(START, "load_context")
        graph.add_edge("load_context", "compose_prompt")
        graph.add_edge("compose_prompt", "verify")
        graph.add_edge("verify", END)

        return graph.compile()

    async def brief(self, agent: Agent) -> AgentBriefing:
        self.logger.info("Briefing.start", agent_id=agent.id, depth=agent.config.briefing_depth.value)
        final_state: Dict[str, Any] = await self._graph.ainvoke({"agent": agent, "warnings": []})

        prompt = final_state["prompt"]
        briefing = AgentBriefing(
            enhanced_prompt=prompt,
            context_summary=summarize_context(final_state["context"]),
            estimated_tokens=estimate_tokens(prompt),
            warnings=list(final_state.get("warnings") or []),
            briefed_at=utc_now(),
        )
        self.logger.info(
            "Briefing.complete",
            agent_id=agent.id,
            estimated_tokens=briefing.estimated_tokens,
            warnings=len(briefing.warnings),
        )
        return briefing

    async def _load_context_node(self, state: BriefingState) -> Dict[str, Any]:
        agent = state["agent"]
        delay = self.delays.get(agent.config.briefing_depth.value, 0.0)
        if delay > 0:
            await asyncio.sleep(delay)
        context = await self.context_loader.load(agent)
        return {"context": context}

    async def _compose_prompt_node(self, state: BriefingState) -> Dict[str, Any]:
        agent = state["agent"]
        return {"prompt": compose_prompt(agent, state["context"])}

    async def _verify_node(self, state: BriefingState) -> Dict[str, Any]:
        agent = state["agent"]
        prompt = state["prompt"]
        warnings = list(state.get("warnings") or [])

        info = self.model_lookup(agent.model) if self.model_lookup else None
        if info is None:
            warnings.append(f"No catalogue entry for model {agent.model}; fallback pricing applies.")
            return {"warnings": warnings}

        estimated = estimate_tokens(prompt)
        budget = info.context_window - min(agent.config.max_tokens, info.max_output)
        if estimated > budget:
            raise BriefingError(
                f"Briefed prompt (~{estimated} tokens) does not fit {agent.model} "
                f"context window of {info.context_window} tokens."
            )
        if estimated > info.context_window // 2:
            warnings.append("Briefed prompt uses more than half of the model context window.")
        return {"warnings": warnings}


def compose_prompt(agent: Agent, context: BriefingContext) -> str:
    lines: List[str] = []
    if agent.system_prompt:
        lines.extend([agent.system_prompt, ""])

    depth = agent.config.briefing_depth
    if depth is BriefingDepth.QUICK:
        lines.extend(_quick_context(context))
    elif depth is BriefingDepth.FULL:
        lines.append("## Current Context (Full Briefing)")
        lines.append("")
        lines.extend(_standard_context(context, heading=False))
        lines.extend(_full_context(context))
    else:
        lines.extend(_standard_context(context))

    guidelines = GUIDELINES.get(agent.type)
    if guidelines:
        lines.append("## Guidelines")
        lines.append("")
        lines.extend(f"- {item}" for item in guidelines)
        lines.append("")

    return "\n".join(lines).strip()


def _quick_context(context: BriefingContext) -> List[str]:
    lines = ["## Current Context (Quick Briefing)", ""]
    if context.tenant_name:
        lines.append(f"Organization: {context.tenant_name}")
    if context.project_name:
        lines.append(f"Project: {context.project_name}")
    lines.append("")
    return lines


def _standard_context(context: BriefingContext, *, heading: bool = True) -> List[str]:
    lines: List[str] = []
    if heading:
        lines.extend(["## Current Context (Standard Briefing)", ""])
    if context.tenant_name:
        lines.extend([f"### Organization: {context.tenant_name}", ""])
    if context.project_name:
        lines.append(f"### Current Project: {context.project_name}")
        if context.project_description:
            lines.append(context.project_description)
        if context.repositories:
            lines.append("Repositories:")
            lines.extend(f"- {repo}" for repo in context.repositories)
        lines.append("")
    if context.recent_runs:
        lines.append("### Recent Activity")
        for run in context.recent_runs[:3]:
            lines.append(f"- [{run.status}] {truncate(run.prompt, 50)}")
        lines.append("")
    return lines


def _full_context(context: BriefingContext) -> List[str]:
    lines: List[str] = []
    if context.documents:
        lines.append("### Relevant Knowledge")
        for doc in context.documents[:5]:
            lines.append(f"**{doc.title}** ({doc.source})")
            lines.extend([doc.summary, ""])
    if context.recent_commits:
        lines.append("### Recent Commits")
        lines.extend(f"- {commit}" for commit in context.recent_commits[:5])
        lines.append("")
    if context.pending_tasks:
        lines.append("### Pending Tasks")
        lines.extend(f"- [ ] {task}" for task in context.pending_tasks)
        lines.append("")
    return lines


def summarize_context(context: BriefingContext) -> str:
    parts: List[str] = []
    if context.tenant_name:
        parts.append(context.tenant_name)
    if context.project_name:
        parts.append(context.project_name)
    if context.recent_runs:
        parts.append(f"{len(context.recent_runs)} recent runs")
    return " | ".join(parts) if parts else "No context loaded"


def build_completion_request(
    agent: Agent,
    prompt: str,
    context: Optional[Dict[str, Any]] = None,
) -> CompletionRequest:
    """Assemble the normalized request for one run: briefed system prompt, optional request context, task."""
    system_prompt = agent.briefing.enhanced_prompt if agent.briefing else agent.system_prompt
    if context:
        extra = "\n".join(f"- {key}: {value}" for key, value in context.items())
        system_prompt = f"{system_prompt}\n\n## Request Context\n\n{extra}".strip()

    messages: List[Message] = []
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))
    messages.append(Message(role="user", content=prompt))

    return CompletionRequest(
        model=agent.model,
        messages=messages,
        temperature=agent.config.temperature,
        max_tokens=agent.config.max_tokens,
        tools=[
            Tool(function=ToolFunction(name=t.name, description=t.description, parameters=t.parameters))
            for t in agent.tools
        ],
    )
