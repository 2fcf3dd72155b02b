from __future__ import annotations

import hmac
import re
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .logging import get_logger

_TENANT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")


def configure_cors(app: FastAPI) -> None:
    settings = get_settings()

    origins: List[str] = settings.cors_origins
    if not origins:
        origins = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-API-Key", "X-Tenant-Id", "X-Request-Id"],
        expose_headers=["X-Request-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )


async def get_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Optional[str]:
    return x_api_key


def _known_key(candidate: str, keys: List[str]) -> bool:
    # Compare against every key so timing does not reveal which one matched.
    matched = False
    for key in keys:
        matched |= hmac.compare_digest(candidate.encode(), key.encode())
    return matched


async def verify_api_key(api_key: Optional[str] = Depends(get_api_key)) -> Optional[str]:
    settings = get_settings()

    if not settings.api_keys:
        return None

    logger = get_logger("security")
    if not api_key:
        logger.warning("Missing API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key.")
    if not _known_key(api_key, settings.api_keys):
        logger.warning("Invalid API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key.")
    return api_key


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
) -> str:
    """
    Tenant identity is resolved upstream by the gateway. Here it only has to
    be present and well formed, since every query is scoped by it.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-Tenant-Id header.")
    if not _TENANT_ID.match(tenant_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed X-Tenant-Id header.")
    return tenant_id
