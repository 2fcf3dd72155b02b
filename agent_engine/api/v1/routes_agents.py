from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from agent_engine.api.deps import ERROR_RESPONSES, get_container
from agent_engine.core.logging import bind_request_context, get_logger
from agent_engine.core.security import get_tenant_id, verify_api_key
from agent_engine.models.api.responses import AgentCostResponse, AgentStatusResponse
from agent_engine.models.domain.agent import Agent, AgentCreate
from agent_engine.models.domain.run import Run
from agent_engine.services.container import ServiceContainer

router = APIRouter(
    prefix="/agents",
    tags=["agents"],
    dependencies=[Depends(verify_api_key)],
    responses=ERROR_RESPONSES,
)


@router.post("", response_model=Agent, status_code=201)
async def create_agent(
    payload: AgentCreate,
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> Agent:
    return await container.agents.create(tenant_id, payload)


@router.get("", response_model=List[Agent])
async def list_agents(
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> List[Agent]:
    return await container.agents.list(tenant_id)


@router.get("/{agent_id}", response_model=Agent)
async def get_agent(
    agent_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> Agent:
    return await container.agents.get(tenant_id, agent_id)


@router.delete("/{agent_id}", status_code=204)
async def delete_agent(
    agent_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await container.agents.delete(tenant_id, agent_id)
    return Response(status_code=204)


@router.get("/{agent_id}/runs", response_model=List[Run])
async def list_agent_runs(
    agent_id: str = Path(...),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> List[Run]:
    return await container.executions.list_runs(tenant_id, agent_id, limit=limit)


@router.get("/{agent_id}/costs", response_model=AgentCostResponse)
async def get_agent_costs(
    agent_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> AgentCostResponse:
    summary = await container.costs.agent_summary(tenant_id, agent_id)
    return AgentCostResponse(**summary.as_dict())


@router.post("/{agent_id}/{action}", response_model=AgentStatusResponse)
async def agent_lifecycle_action(
    request: Request,
    agent_id: str = Path(...),
    action: str = Path(..., pattern="^(launch|pause|terminate|reset)$"),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> AgentStatusResponse:
    logger = bind_request_context(
        get_logger("AgentLifecycle"),
        request_id=request.state.request_id,  # type: ignore[attr-defined]
        tenant_id=tenant_id,
        agent_id=agent_id,
        endpoint=str(request.url.path),
    )

    operation = {
        "launch": container.agents.launch,
        "pause": container.agents.pause,
        "terminate": container.agents.terminate,
        "reset": container.agents.reset,
    }[action]
    status = await operation(tenant_id, agent_id)

    logger.info("Agent lifecycle action", action=action, status=status.value)
    return AgentStatusResponse(status=status)
