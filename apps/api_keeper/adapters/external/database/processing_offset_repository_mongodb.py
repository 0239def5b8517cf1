import time
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from ....core.repositories.processing_offset_repository import ProcessingOffsetRepository


class ProcessingOffsetRepositoryMongoDB(ProcessingOffsetRepository):
    """
    MongoDB implementation for event-ingestion watermarks.
    """

    COLLECTION_NAME = "processing_offsets"

    def __init__(self, db: AsyncIOMotorDatabase):
        """
        :param db: Motor async database instance.
        """
        self._db = db
        self._collection = self._db[self.COLLECTION_NAME]

    async def ensure_indexes(self) -> None:
        """
        Unique index on 'stream'.
        """
        await self._collection.create_index(
            [("stream", 1)],
            unique=True,
            name="ux_stream",
        )

    async def set_last_block(self, stream: str, block_number: int) -> None:
        """
        Advance the watermark; `$max` keeps a late writer from moving it back.
        """
        now_ms = int(time.time() * 1000)
        key = {"stream": stream}
        update = {
            "$max": {"last_block": int(block_number)},
            "$set": {"last_sync_at": now_ms},
            "$setOnInsert": {"created_at": now_ms},
        }
        await self._collection.update_one(key, update, upsert=True)

    async def get_last_block(self, stream: str) -> Optional[int]:
        """
        :param stream: Unique stream key.
        :return: Last acknowledged block, or None before the first page.
        """
        doc = await self._collection.find_one({"stream": stream}, {"last_block": 1})
        if not doc or doc.get("last_block") is None:
            return None
        return int(doc["last_block"])
