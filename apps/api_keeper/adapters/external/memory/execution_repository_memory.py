import itertools
from collections import deque
from typing import Deque, Dict, List, Optional

from ....core.domain.entities.execution_entity import ExecutionAttemptEntity
from ....core.domain.enums.agent_enums import ExecutionPath
from ....core.repositories.execution_repository import ExecutionRepository


class ExecutionRepositoryMemory(ExecutionRepository):
    """
    Bounded history; the oldest attempt is dropped once `limit` is reached.
    """

    def __init__(self, limit: int = 1000):
        self._items: Deque[ExecutionAttemptEntity] = deque(maxlen=limit)
        self._ids = itertools.count(1)

    async def ensure_indexes(self) -> None:
        return None

    async def record(self, attempt: ExecutionAttemptEntity) -> ExecutionAttemptEntity:
        stored = attempt.model_copy(update={"id": str(next(self._ids))})
        self._items.append(stored)
        return stored

    async def query(self, agent_id: Optional[int] = None, limit: int = 50) -> List[ExecutionAttemptEntity]:
        out: List[ExecutionAttemptEntity] = []
        for item in reversed(self._items):
            if agent_id is not None and item.agent_id != agent_id:
                continue
            out.append(item)
            if len(out) >= limit:
                break
        return out

    async def count(self, agent_id: Optional[int] = None) -> int:
        if agent_id is None:
            return len(self._items)
        return sum(1 for i in self._items if i.agent_id == agent_id)

    async def stats(self) -> Dict[str, int]:
        successful = sum(1 for i in self._items if i.success)
        off_chain = sum(1 for i in self._items if i.path == ExecutionPath.OFF_CHAIN)
        return {
            "total": len(self._items),
            "successful": successful,
            "failed": len(self._items) - successful,
            "off_chain": off_chain,
            "on_chain": len(self._items) - off_chain,
        }
