from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from agent_engine.db.mongo import get_database, to_document
from agent_engine.db.repositories.base import ModelSpend
from agent_engine.models.domain.cost import CostRecord


class MongoCostRepository:
    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None) -> None:
        self._db: AsyncIOMotorDatabase = db if db is not None else get_database()
        self._collection: AsyncIOMotorCollection = self._db["cost_records"]

    async def ensure_indexes(self) -> None:
        await self._collection.create_index("id", unique=True)
        await self._collection.create_index([("tenant_id", 1), ("agent_id", 1), ("created_at", -1)])

    async def record(self, cost: CostRecord) -> None:
        await self._collection.insert_one(to_document(cost))

    async def total_by_agent(self, tenant_id: str, agent_id: str, since: datetime) -> float:
        pipeline = [
            {"$match": {"tenant_id": tenant_id, "agent_id": agent_id, "created_at": {"$gte": since}}},
            {"$group": {"_id": None, "total": {"$sum": "$cost"}}},
        ]
        async for row in self._collection.aggregate(pipeline):
            return float(row.get("total") or 0.0)
        return 0.0

    async def spend_by_model(self, tenant_id: str, agent_id: str, since: datetime) -> List[ModelSpend]:
        pipeline = [
            {"$match": {"tenant_id": tenant_id, "agent_id": agent_id, "created_at": {"$gte": since}}},
            {
                "$group": {
                    "_id": {"provider": "$provider", "model": "$model"},
                    "cost": {"$sum": "$cost"},
                    "input_tokens": {"$sum": "$input_tokens"},
                    "output_tokens": {"$sum": "$output_tokens"},
                    "runs": {"$sum": 1},
                }
            },
            {"$sort": {"cost": -1}},
        ]
        result: List[ModelSpend] = []
        async for row in self._collection.aggregate(pipeline):
            result.append(
                ModelSpend(
                    provider=row["_id"]["provider"],
                    model=row["_id"]["model"],
                    cost=float(row["cost"]),
                    input_tokens=int(row["input_tokens"]),
                    output_tokens=int(row["output_tokens"]),
                    runs=int(row["runs"]),
                )
            )
        return result
