from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from agent_engine.db.mongo import get_database, to_document
from agent_engine.db.repositories.base import ActiveRunExistsError
from agent_engine.models.domain.run import ACTIVE_RUN_STATUSES, Run, RunStatus, RunUpdate


class MongoRunRepository:
    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None) -> None:
        self._db: AsyncIOMotorDatabase = db if db is not None else get_database()
        self._collection: AsyncIOMotorCollection = self._db["agent_runs"]

    async def ensure_indexes(self) -> None:
        await self._collection.create_index("id", unique=True)
        await self._collection.create_index([("tenant_id", 1), ("agent_id", 1), ("started_at", -1)])
        await self._collection.create_index("status")
        # At most one non-terminal run per agent, across every replica and worker.
        # $in inside a partial filter needs MongoDB 6.0+.
        await self._collection.create_index(
            "agent_id",
            unique=True,
            name="one_active_run_per_agent",
            partialFilterExpression={"status": {"$in": sorted(s.value for s in ACTIVE_RUN_STATUSES)}},
        )

    async def create(self, run: Run) -> Run:
        try:
            await self._collection.insert_one(to_document(run))
        except DuplicateKeyError as exc:
            if "agent_id" not in ((exc.details or {}).get("keyPattern") or {}):
                raise
            raise ActiveRunExistsError(run.agent_id) from exc
        return run

    async def get(self, tenant_id: str, run_id: str) -> Optional[Run]:
        doc = await self._collection.find_one({"id": run_id, "tenant_id": tenant_id}, {"_id": 0})
        return Run(**doc) if doc else None

    async def list_by_agent(self, tenant_id: str, agent_id: str, limit: int = 50) -> List[Run]:
        cursor = (
            self._collection.find({"tenant_id": tenant_id, "agent_id": agent_id}, {"_id": 0})
            .sort("started_at", -1)
            .limit(limit)
        )
        return [Run(**doc) async for doc in cursor]

    async def has_active_run(self, tenant_id: str, agent_id: str) -> bool:
        count = await self._collection.count_documents(
            {
                "tenant_id": tenant_id,
                "agent_id": agent_id,
                "status": {"$in": [s.value for s in ACTIVE_RUN_STATUSES]},
            },
            limit=1,
        )
        return count > 0

    async def update(
        self,
        tenant_id: str,
        run_id: str,
        update: RunUpdate,
        *,
        expected: Iterable[RunStatus] = ACTIVE_RUN_STATUSES,
    ) -> Optional[Run]:
        changes: Dict[str, Any] = to_document(update, exclude_unset=True)
        if not changes:
            return await self.get(tenant_id, run_id)

        # Terminal runs are immutable: the status guard makes late writers no-ops.
        doc = await self._collection.find_one_and_update(
            {
                "id": run_id,
                "tenant_id": tenant_id,
                "status": {"$in": [RunStatus(s).value for s in expected]},
            },
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return Run(**doc) if doc else None
