# apps/api_keeper/adapters/external/database/execution_repository_mongodb.py

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from ....core.domain.entities.execution_entity import ExecutionAttemptEntity
from ....core.domain.enums.agent_enums import ExecutionOutcome, ExecutionPath
from ....core.repositories.execution_repository import ExecutionRepository


class ExecutionRepositoryMongoDB(ExecutionRepository):
    """
    Execution history. After each insert, entries beyond `limit` are trimmed
    oldest first.
    """

    COLLECTION = "executions"

    def __init__(self, db: AsyncIOMotorDatabase, limit: int = 1000):
        self._col = db[self.COLLECTION]
        self._limit = limit

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("seq", -1)], unique=True, name="ux_seq")
        await self._col.create_index([("agent_id", 1), ("seq", -1)], name="ix_agent_seq")

    async def record(self, attempt: ExecutionAttemptEntity) -> ExecutionAttemptEntity:
        now_ms = int(time.time() * 1000)
        now_iso = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        last = await self._col.find_one({}, sort=[("seq", -1)], projection={"seq": True})
        seq = (int(last["seq"]) if last else 0) + 1

        stored = attempt.model_copy(update={"id": str(seq)})
        doc = stored.model_dump(mode="json")
        doc.update({
            "seq": seq,
            "amount_in": str(stored.amount_in),
            "amount_out": str(stored.amount_out),
            "created_at": now_ms,
            "created_at_iso": now_iso,
        })
        await self._col.insert_one(doc)
        await self._trim(seq)
        return stored

    async def _trim(self, seq: int) -> None:
        cutoff = seq - self._limit
        if cutoff > 0:
            await self._col.delete_many({"seq": {"$lte": cutoff}})

    async def query(self, agent_id: Optional[int] = None, limit: int = 50) -> List[ExecutionAttemptEntity]:
        q: Dict = {}
        if agent_id is not None:
            q["agent_id"] = agent_id
        cursor = self._col.find(q, sort=[("seq", -1)], limit=limit, projection={"_id": False})
        docs = await cursor.to_list(length=limit)
        return [self._from_doc(d) for d in docs]

    async def count(self, agent_id: Optional[int] = None) -> int:
        q: Dict = {} if agent_id is None else {"agent_id": agent_id}
        return await self._col.count_documents(q)

    async def stats(self) -> Dict[str, int]:
        total = await self._col.count_documents({})
        successful = await self._col.count_documents({"outcome": ExecutionOutcome.SUCCESS.value})
        off_chain = await self._col.count_documents({"path": ExecutionPath.OFF_CHAIN.value})
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "off_chain": off_chain,
            "on_chain": total - off_chain,
        }

    @staticmethod
    def _from_doc(doc: Dict) -> ExecutionAttemptEntity:
        fields = {k: v for k, v in doc.items() if k in ExecutionAttemptEntity.model_fields}
        fields["amount_in"] = int(doc.get("amount_in", 0))
        fields["amount_out"] = int(doc.get("amount_out", 0))
        return ExecutionAttemptEntity(**fields)
