from __future__ import annotations

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from agent_engine.db.mongo import get_database
from agent_engine.db.repositories.base import ProviderCredential


class MongoCredentialStore:
    """
    Reads tenant provider credentials maintained by the surrounding platform.

    Documents are expected to already hold the decrypted key in `api_key`
    (decryption happens in the platform's secrets layer before hand-off).
    """

    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None) -> None:
        self._db: AsyncIOMotorDatabase = db if db is not None else get_database()
        self._collection: AsyncIOMotorCollection = self._db["provider_credentials"]

    async def get(self, tenant_id: str, provider: str) -> Optional[ProviderCredential]:
        doc = await self._collection.find_one(
            {"tenant_id": tenant_id, "provider": provider, "active": {"$ne": False}},
            {"_id": 0, "api_key": 1, "base_url": 1},
        )
        if not doc:
            return None
        return ProviderCredential(api_key=doc.get("api_key"), base_url=doc.get("base_url"))
