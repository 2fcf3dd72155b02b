from __future__ import annotations

import asyncio
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from agent_engine.core.config import Settings
from agent_engine.core.errors import (
    AgentNotReadyError,
    AppError,
    BudgetCheckUnavailableError,
    BudgetExceededError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    RunNotCancellableError,
)
from agent_engine.core.logging import get_logger
from agent_engine.core.metrics import RUN_COST, RUN_DURATION, RUN_TOKENS, RUNS_TOTAL
from agent_engine.core.utils import generate_uuid, sanitize_error, start_timer, stop_timer, utc_now
from agent_engine.db.repositories.base import (
    ActiveRunExistsError,
    AgentRepository,
    CostRepository,
    CredentialStore,
    RunRepository,
)
from agent_engine.lifecycle.briefing import build_completion_request
from agent_engine.lifecycle.state_machine import transition
from agent_engine.llm.base_client import BaseLLMClient, CompletionRequest, CompletionResponse
from agent_engine.llm.registry import PROVIDER_CLASSES, ProviderRegistry
from agent_engine.models.domain.agent import Agent, AgentStatus
from agent_engine.models.domain.cost import CostRecord
from agent_engine.models.domain.run import CANCELLABLE_RUN_STATUSES, Run, RunResult, RunStatus, RunUpdate
from agent_engine.services.events import EventSink, agent_channel, event_payload, run_channel
from agent_engine.worker.dispatch import Dispatcher
from agent_engine.worker.pool import AgentLocks, CancellationToken


class _RunCancelled(Exception):
    """Raised inside the background job when a checkpoint sees the run was cancelled."""


class ExecutionService:
    """
    Creates runs, executes them on a detached worker and finalizes them.

    Admission (`create_run`) is synchronous and fail-fast; everything after
    the run row exists happens in `execute_run`, whose failures land on the
    run record instead of reaching the caller.
    """

    def __init__(
        self,
        *,
        agents: AgentRepository,
        runs: RunRepository,
        costs: CostRepository,
        credentials: CredentialStore,
        registry: ProviderRegistry,
        dispatcher: Dispatcher,
        events: EventSink,
        locks: AgentLocks,
        settings: Settings,
    ) -> None:
        self.agents = agents
        self.runs = runs
        self.costs = costs
        self.credentials = credentials
        self.registry = registry
        self.dispatcher = dispatcher
        self.events = events
        self.locks = locks
        self.settings = settings
        self.logger = get_logger("ExecutionService")

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def create_run(
        self,
        tenant_id: str,
        agent_id: str,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Run:
        async with self.locks.for_agent(agent_id):
            agent = await self.agents.get(tenant_id, agent_id)
            if agent is None:
                raise NotFoundError("agent", agent_id)
            if agent.status is not AgentStatus.READY:
                raise AgentNotReadyError(agent.status.value)
            if await self.runs.has_active_run(tenant_id, agent_id):
                raise AgentNotReadyError(agent.status.value, "Agent already has an active run.")

            await self._check_budget(agent)
            await self._ensure_provider(tenant_id, agent.provider)

            run = Run(
                id=generate_uuid(),
                tenant_id=tenant_id,
                agent_id=agent_id,
                prompt=prompt,
                context=context,
                status=RunStatus.PENDING,
                provider=agent.provider,
                model=agent.model,
                started_at=utc_now(),
            )
            try:
                await self.runs.create(run)
            except ActiveRunExistsError:
                raise AgentNotReadyError(agent.status.value, "Agent already has an active run.") from None
            if not await self._move_agent(agent, AgentStatus.EXECUTING, expected=AgentStatus.READY):
                # Another process changed the agent after it was read; withdraw the run.
                await self.runs.update(
                    tenant_id,
                    run.id,
                    RunUpdate(status=RunStatus.CANCELLED, completed_at=utc_now(), error="Agent left ready state."),
                )
                current = await self.agents.get(tenant_id, agent_id)
                raise AgentNotReadyError(current.status.value if current else agent.status.value)

        self.logger.info("Execution.create_run", tenant_id=tenant_id, agent_id=agent_id, run_id=run.id)
        await self.events.publish(
            run_channel(run.id),
            event_payload("run.status", run_id=run.id, agent_id=agent_id, status=run.status.value),
        )
        self.dispatcher.dispatch_run(tenant_id, run.id)
        return run

    async def _check_budget(self, agent: Agent) -> None:
        limit = agent.config.budget_limit
        if limit <= 0:
            return

        since = utc_now() - timedelta(days=self.settings.budget_window_days)
        try:
            spent = await self.costs.total_by_agent(agent.tenant_id, agent.id, since)
        except Exception as exc:
            if self.settings.strict_budget:
                self.logger.error("Execution.budget_check_failed", agent_id=agent.id, error=str(exc))
                raise BudgetCheckUnavailableError() from exc
            self.logger.warning("Execution.budget_check_skipped", agent_id=agent.id, error=str(exc))
            return

        if spent >= limit:
            self.logger.info("Execution.budget_exceeded", agent_id=agent.id, spent=spent, limit=limit)
            raise BudgetExceededError(spent, limit)

    async def _ensure_provider(self, tenant_id: str, provider_id: str) -> None:
        credential = await self.credentials.get(tenant_id, provider_id)
        if credential is not None and provider_id in PROVIDER_CLASSES:
            return
        self.registry.get(provider_id)

    async def _resolve_provider(self, tenant_id: str, provider_id: str) -> Tuple[BaseLLMClient, bool]:
        """Tenant credential first, then the startup registry. The flag marks a client this call owns."""
        credential = await self.credentials.get(tenant_id, provider_id)
        if credential is not None:
            client = self.registry.create_provider_with_key(provider_id, credential.api_key, credential.base_url)
            return client, True
        return self.registry.get(provider_id), False

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    async def execute_run(self, tenant_id: str, run_id: str, token: Optional[CancellationToken] = None) -> None:
        run = await self.runs.get(tenant_id, run_id)
        if run is None or run.status.is_terminal:
            self.logger.info("Execution.skip", run_id=run_id, status=run.status.value if run else None)
            return

        agent = await self.agents.get(tenant_id, run.agent_id)
        if agent is None:
            await self._finish_failed(run, None, "Agent no longer exists.")
            return

        provider: Optional[BaseLLMClient] = None
        owned = False
        timer = start_timer()
        try:
            await self._advance(run, RunStatus.BRIEFING, token)
            request = build_completion_request(agent, run.prompt, run.context)

            await self._advance(run, RunStatus.RUNNING, token)
            provider, owned = await self._resolve_provider(tenant_id, agent.provider)
            response = await self._complete_with_retries(provider, request, agent, run, token)
        except _RunCancelled:
            self.logger.info("Execution.cancelled", run_id=run_id)
            return
        except AppError as exc:
            await self._finish_failed(run, agent, exc.message)
            return
        except asyncio.CancelledError:
            await self._finish_failed(run, agent, "Execution interrupted by shutdown.")
            raise
        except Exception as exc:
            self.logger.error("Execution.unexpected_error", run_id=run_id, error=str(exc), exc_info=exc)
            await self._finish_failed(run, agent, sanitize_error(str(exc)) or exc.__class__.__name__)
            return
        finally:
            RUN_DURATION.labels(agent.provider).observe(stop_timer(timer) / 1000.0)
            if owned and provider is not None:
                await provider.aclose()

        if token is not None and token.cancelled:
            self.logger.info("Execution.result_discarded", run_id=run_id)
            return
        await self._finish_completed(run, agent, response, int(stop_timer(timer)))

    async def _advance(self, run: Run, status: RunStatus, token: Optional[CancellationToken]) -> None:
        """Checkpoint: stop if cancelled, otherwise move the run forward."""
        if token is not None and token.cancelled:
            raise _RunCancelled()
        updated = await self.runs.update(run.tenant_id, run.id, RunUpdate(status=status))
        if updated is None:
            raise _RunCancelled()
        await self.events.publish(
            run_channel(run.id),
            event_payload("run.status", run_id=run.id, agent_id=run.agent_id, status=status.value),
        )

    async def _complete_with_retries(
        self,
        provider: BaseLLMClient,
        request: CompletionRequest,
        agent: Agent,
        run: Run,
        token: Optional[CancellationToken],
    ) -> CompletionResponse:
        policy = agent.config.retry_policy
        timeout = agent.config.timeout_seconds or self.settings.default_timeout_seconds
        attempt = 0

        while True:
            attempt += 1
            if await self.runs.update(run.tenant_id, run.id, RunUpdate(attempts=attempt)) is None:
                raise _RunCancelled()
            try:
                return await asyncio.wait_for(provider.complete(request), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(provider.name, timeout) from exc
            except ProviderTimeoutError:
                raise
            except ProviderError as exc:
                if attempt > policy.max_retries:
                    raise
                delay_ms = min(policy.backoff_ms * (2 ** (attempt - 1)), policy.max_backoff_ms)
                self.logger.warning(
                    "Execution.retry",
                    run_id=run.id,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error=exc.message,
                )
                await asyncio.sleep(delay_ms / 1000.0)
                if token is not None and token.cancelled:
                    raise _RunCancelled() from exc

    async def _finish_completed(self, run: Run, agent: Agent, response: CompletionResponse, duration_ms: int) -> None:
        usage = response.usage
        cost = self.registry.calculate_cost(agent.model, usage)
        result = RunResult(
            content=response.message.content,
            finish_reason=response.finish_reason,
            tool_calls=[asdict(call) for call in response.message.tool_calls],
        )
        update = RunUpdate(
            status=RunStatus.COMPLETED,
            result=result,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            tokens_used=usage.total_tokens,
            cost=cost,
            completed_at=utc_now(),
        )
        finished = await self.runs.update(run.tenant_id, run.id, update, expected={RunStatus.RUNNING})
        if finished is None:
            # Cancelled while the provider call was in flight.
            self.logger.info("Execution.result_discarded", run_id=run.id)
            return

        record = CostRecord(
            id=generate_uuid(),
            tenant_id=run.tenant_id,
            agent_id=agent.id,
            run_id=run.id,
            provider=agent.provider,
            model=agent.model,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
            duration_ms=duration_ms,
            created_at=utc_now(),
        )
        try:
            await self.costs.record(record)
        except Exception as exc:
            self.logger.error("Execution.cost_record_failed", run_id=run.id, cost=cost, error=str(exc))

        RUNS_TOTAL.labels(agent.provider, RunStatus.COMPLETED.value).inc()
        RUN_COST.labels(agent.provider, agent.model).inc(cost)
        RUN_TOKENS.labels(agent.provider, "input").inc(usage.prompt_tokens)
        RUN_TOKENS.labels(agent.provider, "output").inc(usage.completion_tokens)

        await self._settle_agent(agent, AgentStatus.READY)
        self.logger.info(
            "Execution.completed",
            run_id=run.id,
            agent_id=agent.id,
            tokens=usage.total_tokens,
            cost=cost,
            duration_ms=duration_ms,
        )
        await self.events.publish(
            run_channel(run.id),
            event_payload(
                "run.completed",
                run_id=run.id,
                agent_id=agent.id,
                status=RunStatus.COMPLETED.value,
                tokens_used=usage.total_tokens,
                cost=cost,
            ),
        )

    async def _finish_failed(self, run: Run, agent: Optional[Agent], message: str) -> None:
        update = RunUpdate(status=RunStatus.FAILED, error=message, completed_at=utc_now())
        failed = await self.runs.update(run.tenant_id, run.id, update)
        if failed is None:
            self.logger.info("Execution.failure_discarded", run_id=run.id, error=message)
            return

        RUNS_TOTAL.labels(run.provider, RunStatus.FAILED.value).inc()
        self.logger.warning("Execution.failed", run_id=run.id, agent_id=run.agent_id, error=message)
        if agent is not None:
            await self._settle_agent(agent, AgentStatus.ERROR)
        await self.events.publish(
            run_channel(run.id),
            event_payload(
                "run.failed",
                run_id=run.id,
                agent_id=run.agent_id,
                status=RunStatus.FAILED.value,
                error=message,
            ),
        )

    # ------------------------------------------------------------------
    # Agent status bookkeeping
    # ------------------------------------------------------------------

    async def _move_agent(self, agent: Agent, target: AgentStatus, *, expected: AgentStatus) -> bool:
        """
        Apply expected -> target for the agent. A refused transition is logged
        and reported as False; it never aborts the run that triggered it.
        """
        try:
            transition(expected, target)
        except InvalidTransitionError as exc:
            self.logger.warning("Execution.agent_transition_invalid", agent_id=agent.id, error=exc.message)
            return False

        moved = await self.agents.update_status(agent.tenant_id, agent.id, target, expected=expected)
        if not moved:
            current = await self.agents.get(agent.tenant_id, agent.id)
            self.logger.warning(
                "Execution.agent_transition_skipped",
                agent_id=agent.id,
                expected=expected.value,
                target=target.value,
                current=current.status.value if current else None,
            )
            return False

        await self.events.publish(
            agent_channel(agent.id),
            event_payload("agent.status", agent_id=agent.id, status=target.value),
        )
        return True

    async def _settle_agent(self, agent: Agent, target: AgentStatus) -> None:
        async with self.locks.for_agent(agent.id):
            await self._move_agent(agent, target, expected=AgentStatus.EXECUTING)

    # ------------------------------------------------------------------
    # Queries and cancellation
    # ------------------------------------------------------------------

    async def cancel(self, tenant_id: str, run_id: str) -> Run:
        run = await self.get(tenant_id, run_id)
        if run.status not in CANCELLABLE_RUN_STATUSES:
            raise RunNotCancellableError(run.status.value)

        async with self.locks.for_agent(run.agent_id):
            update = RunUpdate(status=RunStatus.CANCELLED, completed_at=utc_now())
            cancelled = await self.runs.update(tenant_id, run_id, update, expected=CANCELLABLE_RUN_STATUSES)
            if cancelled is None:
                current = await self.runs.get(tenant_id, run_id)
                raise RunNotCancellableError(current.status.value if current else run.status.value)

            self.dispatcher.cancel_run(run_id)
            agent = await self.agents.get(tenant_id, run.agent_id)
            if agent is not None and agent.status is AgentStatus.EXECUTING:
                await self._move_agent(agent, AgentStatus.READY, expected=AgentStatus.EXECUTING)

        RUNS_TOTAL.labels(run.provider, RunStatus.CANCELLED.value).inc()
        self.logger.info("Execution.cancel", tenant_id=tenant_id, run_id=run_id, previous=run.status.value)
        await self.events.publish(
            run_channel(run_id),
            event_payload("run.cancelled", run_id=run_id, agent_id=run.agent_id, status=RunStatus.CANCELLED.value),
        )
        return cancelled

    async def get(self, tenant_id: str, run_id: str) -> Run:
        run = await self.runs.get(tenant_id, run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def list_runs(self, tenant_id: str, agent_id: str, limit: int = 50) -> List[Run]:
        agent = await self.agents.get(tenant_id, agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return await self.runs.list_by_agent(tenant_id, agent_id, limit=limit)
