from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.entities.signal_entity import SignalEntity


class SignalRepository(ABC):

    @abstractmethod
    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def save_signal(self, signal: SignalEntity) -> bool:
        """
        Store a signal in the pool history (idempotent on duplicates).

        :return: True if it became the latest signal of its pool.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_latest_signal(self, pool_id: str) -> Optional[SignalEntity]:
        """
        Latest signal for the pool, or None if none was ever recorded.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_history(self, pool_id: str, limit: int = 50) -> List[SignalEntity]:
        """Most recent first."""
        raise NotImplementedError
