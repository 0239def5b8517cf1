from typing import Dict, Optional

from ....core.repositories.processing_offset_repository import ProcessingOffsetRepository


class ProcessingOffsetRepositoryMemory(ProcessingOffsetRepository):

    def __init__(self):
        self._offsets: Dict[str, int] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def set_last_block(self, stream: str, block_number: int) -> None:
        self._offsets[stream] = max(int(block_number), self._offsets.get(stream, 0))

    async def get_last_block(self, stream: str) -> Optional[int]:
        return self._offsets.get(stream)
