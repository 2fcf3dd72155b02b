from __future__ import annotations

from typing import List, Optional

from agent_engine.core.errors import AgentNotReadyError, AppError, InvalidTransitionError, NotFoundError
from agent_engine.core.logging import get_logger
from agent_engine.core.utils import generate_uuid, sanitize_error, utc_now
from agent_engine.db.repositories.base import AgentRepository
from agent_engine.lifecycle.briefing import BriefingEngine, BriefingError
from agent_engine.lifecycle.state_machine import launch_target, pause_target, terminate_target, transition
from agent_engine.models.domain.agent import Agent, AgentConfig, AgentCreate, AgentStatus
from agent_engine.services.events import EventSink, agent_channel, event_payload
from agent_engine.worker.dispatch import Dispatcher
from agent_engine.worker.pool import AgentLocks, CancellationToken


class AgentService:
    def __init__(
        self,
        *,
        agents: AgentRepository,
        briefing: BriefingEngine,
        dispatcher: Dispatcher,
        events: EventSink,
        locks: AgentLocks,
    ) -> None:
        self.agents = agents
        self.briefing = briefing
        self.dispatcher = dispatcher
        self.events = events
        self.locks = locks
        self.logger = get_logger("AgentService")

    async def create(self, tenant_id: str, payload: AgentCreate) -> Agent:
        config = payload.config or AgentConfig()
        # Every agent goes through briefing before its first run.
        config = config.model_copy(update={"briefing_required": True})

        now = utc_now()
        agent = Agent(
            id=generate_uuid(),
            tenant_id=tenant_id,
            name=payload.name,
            description=payload.description,
            type=payload.type,
            provider=payload.provider,
            model=payload.model,
            system_prompt=payload.system_prompt,
            tools=payload.tools,
            config=config,
            status=AgentStatus.CONFIGURED,
            created_at=now,
            updated_at=now,
        )
        await self.agents.create(agent)
        self.logger.info("AgentService.create", tenant_id=tenant_id, agent_id=agent.id, type=agent.type.value)
        return agent

    async def get(self, tenant_id: str, agent_id: str) -> Agent:
        agent = await self.agents.get(tenant_id, agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    async def list(self, tenant_id: str) -> List[Agent]:
        return await self.agents.list_by_tenant(tenant_id)

    async def delete(self, tenant_id: str, agent_id: str) -> None:
        async with self.locks.for_agent(agent_id):
            agent = await self.get(tenant_id, agent_id)
            if agent.status is AgentStatus.EXECUTING:
                raise AgentNotReadyError(agent.status.value, "Cannot delete an agent while it is executing.")
            await self.agents.soft_delete(tenant_id, agent_id)
        self.logger.info("AgentService.delete", tenant_id=tenant_id, agent_id=agent_id)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def launch(self, tenant_id: str, agent_id: str) -> AgentStatus:
        async with self.locks.for_agent(agent_id):
            agent = await self.get(tenant_id, agent_id)
            target = launch_target(agent.status)
            await self._write_status(agent, target)

        # Briefing runs detached; the caller sees `briefing` right away.
        self.dispatcher.dispatch_briefing(tenant_id, agent_id)
        return target

    async def pause(self, tenant_id: str, agent_id: str) -> AgentStatus:
        async with self.locks.for_agent(agent_id):
            agent = await self.get(tenant_id, agent_id)
            target = pause_target(agent.status)
            await self._write_status(agent, target)
        return target

    async def terminate(self, tenant_id: str, agent_id: str) -> AgentStatus:
        async with self.locks.for_agent(agent_id):
            agent = await self.get(tenant_id, agent_id)
            target = terminate_target(agent.status)
            if target is None:
                self.logger.info("AgentService.terminate_noop", agent_id=agent_id)
                return AgentStatus.TERMINATED
            await self._write_status(agent, target)
        return target

    async def reset(self, tenant_id: str, agent_id: str) -> AgentStatus:
        """Error -> configured, so a failed agent can be launched again."""
        async with self.locks.for_agent(agent_id):
            agent = await self.get(tenant_id, agent_id)
            target = transition(agent.status, AgentStatus.CONFIGURED)
            await self._write_status(agent, target)
        return target

    async def _write_status(self, agent: Agent, target: AgentStatus) -> None:
        moved = await self.agents.update_status(agent.tenant_id, agent.id, target, expected=agent.status)
        if not moved:
            # Someone outside this process changed it first; report against what is stored now.
            current = await self.agents.get(agent.tenant_id, agent.id)
            if current is None:
                raise NotFoundError("agent", agent.id)
            raise InvalidTransitionError(current.status.value, target.value)

        self.logger.info(
            "AgentService.status",
            agent_id=agent.id,
            source=agent.status.value,
            target=target.value,
        )
        await self.events.publish(
            agent_channel(agent.id),
            event_payload("agent.status", agent_id=agent.id, status=target.value, previous=agent.status.value),
        )

    # ------------------------------------------------------------------
    # Background briefing
    # ------------------------------------------------------------------

    async def run_briefing(self, tenant_id: str, agent_id: str, token: Optional[CancellationToken] = None) -> None:
        agent = await self.agents.get(tenant_id, agent_id)
        if agent is None or agent.status is not AgentStatus.BRIEFING:
            self.logger.info("AgentService.briefing_skipped", agent_id=agent_id)
            return

        try:
            briefing = await self.briefing.brief(agent)
        except (AppError, BriefingError) as exc:
            await self._finish_briefing(agent, AgentStatus.ERROR, error=sanitize_error(str(exc)))
            return
        except Exception as exc:
            self.logger.error("AgentService.briefing_crashed", agent_id=agent_id, error=str(exc), exc_info=exc)
            await self._finish_briefing(agent, AgentStatus.ERROR, error=sanitize_error(str(exc)))
            return

        if token is not None and token.cancelled:
            self.logger.info("AgentService.briefing_abandoned", agent_id=agent_id)
            return

        await self.agents.save_briefing(tenant_id, agent_id, briefing)
        await self._finish_briefing(agent, AgentStatus.READY)

    async def _finish_briefing(self, agent: Agent, target: AgentStatus, *, error: Optional[str] = None) -> None:
        async with self.locks.for_agent(agent.id):
            transition(AgentStatus.BRIEFING, target)
            moved = await self.agents.update_status(
                agent.tenant_id, agent.id, target, expected=AgentStatus.BRIEFING
            )
        if not moved:
            # Paused or terminated while briefing; leave that decision standing.
            self.logger.warning("AgentService.briefing_result_dropped", agent_id=agent.id, target=target.value)
            return

        if error:
            self.logger.warning("AgentService.briefing_failed", agent_id=agent.id, error=error)
        else:
            self.logger.info("AgentService.briefing_complete", agent_id=agent.id)
        await self.events.publish(
            agent_channel(agent.id),
            event_payload("agent.status", agent_id=agent.id, status=target.value, error=error),
        )
