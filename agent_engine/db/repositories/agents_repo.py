from __future__ import annotations

from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from agent_engine.core.utils import utc_now
from agent_engine.db.mongo import get_database, to_document
from agent_engine.models.domain.agent import Agent, AgentBriefing, AgentStatus


class MongoAgentRepository:
    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None) -> None:
        self._db: AsyncIOMotorDatabase = db if db is not None else get_database()
        self._collection: AsyncIOMotorCollection = self._db["agents"]

    async def ensure_indexes(self) -> None:
        await self._collection.create_index("id", unique=True)
        await self._collection.create_index([("tenant_id", 1), ("status", 1)])

    @staticmethod
    def _scope(tenant_id: str, agent_id: str) -> Dict[str, Any]:
        return {"id": agent_id, "tenant_id": tenant_id, "deleted_at": None}

    async def create(self, agent: Agent) -> Agent:
        await self._collection.insert_one(to_document(agent))
        return agent

    async def get(self, tenant_id: str, agent_id: str) -> Optional[Agent]:
        doc = await self._collection.find_one(self._scope(tenant_id, agent_id), {"_id": 0})
        return Agent(**doc) if doc else None

    async def list_by_tenant(self, tenant_id: str) -> List[Agent]:
        cursor = self._collection.find({"tenant_id": tenant_id, "deleted_at": None}, {"_id": 0}).sort("created_at", -1)
        return [Agent(**doc) async for doc in cursor]

    async def update_status(
        self,
        tenant_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        expected: Optional[AgentStatus] = None,
    ) -> bool:
        query = self._scope(tenant_id, agent_id)
        if expected is not None:
            # Optimistic guard: only flip if nobody changed the status meanwhile.
            query["status"] = AgentStatus(expected).value
        result = await self._collection.update_one(
            query,
            {"$set": {"status": AgentStatus(status).value, "updated_at": utc_now()}},
        )
        return result.matched_count == 1

    async def save_briefing(self, tenant_id: str, agent_id: str, briefing: AgentBriefing) -> None:
        await self._collection.update_one(
            self._scope(tenant_id, agent_id),
            {"$set": {"briefing": to_document(briefing), "updated_at": utc_now()}},
        )

    async def soft_delete(self, tenant_id: str, agent_id: str) -> bool:
        now = utc_now()
        result = await self._collection.update_one(
            self._scope(tenant_id, agent_id),
            {"$set": {"deleted_at": now, "updated_at": now}},
        )
        return result.matched_count == 1
