from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..domain.entities.execution_entity import ExecutionAttemptEntity


class ExecutionRepository(ABC):
    """
    Append-only history of terminal execution attempts, capped: once the cap
    is reached the oldest entries are discarded first.
    """

    @abstractmethod
    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def record(self, attempt: ExecutionAttemptEntity) -> ExecutionAttemptEntity:
        """
        Append one attempt. Returns it with its assigned `id`.
        """
        raise NotImplementedError

    @abstractmethod
    async def query(self, agent_id: Optional[int] = None, limit: int = 50) -> List[ExecutionAttemptEntity]:
        """
        Most recent first, optionally filtered by agent.
        """
        raise NotImplementedError

    @abstractmethod
    async def count(self, agent_id: Optional[int] = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def stats(self) -> Dict[str, int]:
        """
        {"total", "successful", "failed", "off_chain", "on_chain"}
        """
        raise NotImplementedError
