from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Request
from starlette.responses import StreamingResponse

from agent_engine.api.deps import ERROR_RESPONSES, get_container
from agent_engine.core.logging import bind_request_context, get_logger
from agent_engine.core.redis_client import get_redis_client
from agent_engine.core.security import get_tenant_id, verify_api_key
from agent_engine.models.api.requests import CreateExecutionRequest
from agent_engine.models.api.responses import ExecutionCreatedResponse, MessageResponse
from agent_engine.models.domain.run import Run
from agent_engine.services.container import ServiceContainer
from agent_engine.services.events import run_channel

router = APIRouter(
    prefix="/executions",
    tags=["executions"],
    dependencies=[Depends(verify_api_key)],
    responses=ERROR_RESPONSES,
)


@router.post("", response_model=ExecutionCreatedResponse, status_code=201)
async def create_execution(
    payload: CreateExecutionRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> ExecutionCreatedResponse:
    logger = bind_request_context(
        get_logger("CreateExecution"),
        request_id=request.state.request_id,  # type: ignore[attr-defined]
        tenant_id=tenant_id,
        agent_id=payload.agent_id,
        endpoint=str(request.url.path),
    )

    run = await container.executions.create_run(tenant_id, payload.agent_id, payload.prompt, payload.context)
    logger.info("Execution accepted", run_id=run.id)

    return ExecutionCreatedResponse(
        id=run.id,
        agent_id=run.agent_id,
        status=run.status,
        started_at=run.started_at,
    )


@router.get("/{run_id}", response_model=Run)
async def get_execution(
    run_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> Run:
    return await container.executions.get(tenant_id, run_id)


@router.post("/{run_id}/cancel", response_model=MessageResponse)
async def cancel_execution(
    request: Request,
    run_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    logger = bind_request_context(
        get_logger("CancelExecution"),
        request_id=request.state.request_id,  # type: ignore[attr-defined]
        tenant_id=tenant_id,
        run_id=run_id,
        endpoint=str(request.url.path),
    )
    await container.executions.cancel(tenant_id, run_id)
    logger.info("Execution cancelled")
    return MessageResponse(message="Execution cancelled.")


@router.get("/{run_id}/events")
async def stream_execution_events(
    request: Request,
    run_id: str = Path(...),
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
):
    """
    SSE stream of run status events.

    Clients connect with EventSource to GET /executions/{run_id}/events.
    """
    logger = bind_request_context(
        get_logger("ExecutionEvents"),
        request_id=request.state.request_id,  # type: ignore[attr-defined]
        tenant_id=tenant_id,
        run_id=run_id,
        endpoint=str(request.url.path),
    )

    # Tenant scoping: 404 before subscribing to anything.
    await container.executions.get(tenant_id, run_id)

    channel = run_channel(run_id)
    redis = get_redis_client()

    async def event_stream():
        pubsub = redis.pubsub()
        await pubsub.subscribe(channel)
        logger.info("ExecutionEvents.subscribe", channel=channel)

        try:
            while True:
                if await request.is_disconnected():
                    logger.info("ExecutionEvents.client_disconnected")
                    break
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                yield f"data: {data}\n\n"
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as exc:
                logger.warning("ExecutionEvents.cleanup_failed", error=str(exc))

    return StreamingResponse(event_stream(), media_type="text/event-stream")
