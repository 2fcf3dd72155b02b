from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Path

from agent_engine.api.deps import ERROR_RESPONSES, get_container
from agent_engine.core.errors import ProviderError
from agent_engine.core.logging import get_logger
from agent_engine.core.security import verify_api_key
from agent_engine.models.api.requests import ValidateKeyRequest
from agent_engine.models.api.responses import ModelInfoResponse, ProvidersResponse, ValidateKeyResponse
from agent_engine.services.container import ServiceContainer

router = APIRouter(
    prefix="/providers",
    tags=["providers"],
    dependencies=[Depends(verify_api_key)],
    responses=ERROR_RESPONSES,
)

_REJECTED_CREDENTIAL = {401, 403}


@router.get("", response_model=ProvidersResponse)
async def list_providers(container: ServiceContainer = Depends(get_container)) -> ProvidersResponse:
    return ProvidersResponse(providers=sorted(container.registry.list()))


@router.get("/models", response_model=List[ModelInfoResponse])
async def list_models(container: ServiceContainer = Depends(get_container)) -> List[ModelInfoResponse]:
    return [
        ModelInfoResponse(
            id=info.id,
            name=info.name,
            description=info.description,
            context_window=info.context_window,
            max_output=info.max_output,
            input_price=info.input_price,
            output_price=info.output_price,
            capabilities=list(info.capabilities),
        )
        for info in container.registry.list_models()
    ]


@router.post("/{provider}/validate", response_model=ValidateKeyResponse)
async def validate_provider_key(
    payload: ValidateKeyRequest,
    provider: str = Path(...),
    container: ServiceContainer = Depends(get_container),
) -> ValidateKeyResponse:
    """
    Round-trip a credential against the backend. A key the backend refuses
    is reported as `valid: false`; an unreachable or failing backend still
    surfaces as PROVIDER_ERROR / PROVIDER_TIMEOUT. The key is never echoed.
    """
    logger = get_logger("ValidateProviderKey")
    client = container.registry.create_provider_with_key(provider, payload.api_key, payload.base_url)
    try:
        await client.validate_key(payload.api_key or "")
    except ProviderError as exc:
        if exc.status not in _REJECTED_CREDENTIAL:
            raise
        logger.info("Provider key rejected", provider=provider, status=exc.status)
        return ValidateKeyResponse(provider=provider, valid=False)
    finally:
        await client.aclose()
    logger.info("Provider key validated", provider=provider)
    return ValidateKeyResponse(provider=provider, valid=True)
