from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from ....core.domain.entities.signal_entity import SignalEntity
from ....core.repositories.signal_repository import SignalRepository


class SignalRepositoryMemory(SignalRepository):
    """
    Dedup keys live only as long as their signal stays in the per-pool
    history, so memory is bounded by `history_limit` per pool.
    """

    def __init__(self, history_limit: int = 500):
        self._limit = history_limit
        self._latest: Dict[str, SignalEntity] = {}
        self._history: Dict[str, Deque[SignalEntity]] = defaultdict(lambda: deque(maxlen=history_limit))
        self._seen: Dict[str, Set[Tuple]] = defaultdict(set)

    async def ensure_indexes(self) -> None:
        return None

    async def save_signal(self, signal: SignalEntity) -> bool:
        key = _dedup_key(signal)
        seen = self._seen[signal.pool_id]
        if key in seen:
            return False

        history = self._history[signal.pool_id]
        if len(history) == self._limit:
            seen.discard(_dedup_key(history[0]))
        history.append(signal)
        seen.add(key)

        if signal.is_newer_than(self._latest.get(signal.pool_id)):
            self._latest[signal.pool_id] = signal
            return True
        return False

    async def get_latest_signal(self, pool_id: str) -> Optional[SignalEntity]:
        return self._latest.get(pool_id)

    async def list_history(self, pool_id: str, limit: int = 50) -> List[SignalEntity]:
        items = list(self._history.get(pool_id, ()))
        items.reverse()
        return items[:limit]

    def tracked_keys(self, pool_id: str) -> int:
        return len(self._seen.get(pool_id, ()))


def _dedup_key(signal: SignalEntity) -> Tuple:
    if signal.tx_hash is not None and signal.log_index is not None:
        return (signal.pool_id, signal.tx_hash, signal.log_index)
    return (signal.pool_id, signal.timestamp, signal.signal_type, signal.magnitude)
