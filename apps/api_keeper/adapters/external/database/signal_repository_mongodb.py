# apps/api_keeper/adapters/external/database/signal_repository_mongodb.py

import time
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from ....core.domain.entities.signal_entity import SignalEntity
from ....core.repositories.signal_repository import SignalRepository


class SignalRepositoryMongoDB(SignalRepository):
    """
    Pool signal history. `dedup_key` makes re-ingesting the same log a no-op.
    """

    COLLECTION = "pool_signals"

    def __init__(self, db: AsyncIOMotorDatabase):
        self._col = db[self.COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("dedup_key", 1)], unique=True, name="ux_dedup_key")
        await self._col.create_index(
            [("pool_id", 1), ("timestamp", -1), ("block_number", -1), ("log_index", -1)],
            name="ix_pool_latest",
        )

    async def save_signal(self, signal: SignalEntity) -> bool:
        latest = await self.get_latest_signal(signal.pool_id)
        doc = self._to_doc(signal)
        try:
            await self._col.insert_one(doc)
        except DuplicateKeyError:
            return False
        return signal.is_newer_than(latest)

    async def get_latest_signal(self, pool_id: str) -> Optional[SignalEntity]:
        doc = await self._col.find_one(
            {"pool_id": pool_id},
            sort=[("timestamp", -1), ("block_number", -1), ("log_index", -1)],
            projection={"_id": False},
        )
        return self._from_doc(doc) if doc else None

    async def list_history(self, pool_id: str, limit: int = 50) -> List[SignalEntity]:
        cursor = self._col.find(
            {"pool_id": pool_id},
            sort=[("timestamp", -1), ("block_number", -1), ("log_index", -1)],
            limit=limit,
            projection={"_id": False},
        )
        docs = await cursor.to_list(length=limit)
        return [self._from_doc(d) for d in docs]

    @staticmethod
    def _to_doc(signal: SignalEntity) -> Dict:
        if signal.tx_hash is not None and signal.log_index is not None:
            dedup = f"{signal.pool_id}:{signal.tx_hash}:{signal.log_index}"
        else:
            dedup = f"{signal.pool_id}:{signal.timestamp}:{signal.signal_type}:{signal.magnitude}"
        return {
            **signal.model_dump(),
            "magnitude": str(signal.magnitude),
            "block_number": signal.block_number or 0,
            "log_index": signal.log_index or 0,
            "dedup_key": dedup,
            "created_at": int(time.time() * 1000),
        }

    @staticmethod
    def _from_doc(doc: Dict) -> SignalEntity:
        return SignalEntity(
            pool_id=doc["pool_id"],
            signal_type=int(doc["signal_type"]),
            magnitude=int(doc["magnitude"]),
            timestamp=int(doc["timestamp"]),
            block_number=doc.get("block_number") or None,
            log_index=doc.get("log_index"),
            tx_hash=doc.get("tx_hash"),
        )
