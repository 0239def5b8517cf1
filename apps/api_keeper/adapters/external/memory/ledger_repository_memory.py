from collections import defaultdict
from typing import Dict

from ....core.domain.exceptions import InsufficientBalanceError
from ....core.repositories.ledger_repository import LedgerRepository


class LedgerRepositoryMemory(LedgerRepository):
    """
    Dict-backed ledger store. A commit computes every resulting balance first
    and only then writes, so a rejected commit leaves nothing behind.
    """

    def __init__(self):
        self._balances: Dict[int, Dict[str, int]] = defaultdict(dict)
        self._custody: Dict[str, int] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def get_balance(self, agent_id: int, token: str) -> int:
        return self._balances.get(agent_id, {}).get(token, 0)

    async def get_balances(self, agent_id: int) -> Dict[str, int]:
        return dict(self._balances.get(agent_id, {}))

    async def total_tracked(self, token: str) -> int:
        return sum(b.get(token, 0) for b in self._balances.values())

    async def get_custodied(self, token: str) -> int:
        return self._custody.get(token, 0)

    async def set_custodied(self, token: str, amount: int) -> None:
        self._custody[token] = int(amount)

    async def commit(
        self,
        agent_id: int,
        balance_deltas: Dict[str, int],
        custody_deltas: Dict[str, int],
    ) -> Dict[str, int]:
        current = self._balances[agent_id]
        staged = dict(current)
        for token, delta in balance_deltas.items():
            new = staged.get(token, 0) + int(delta)
            if new < 0:
                raise InsufficientBalanceError(agent_id, token, -int(delta), staged.get(token, 0))
            staged[token] = new

        staged_custody = {t: self._custody.get(t, 0) + int(d) for t, d in custody_deltas.items()}

        # no await between here and the end: readers never see half a commit
        self._balances[agent_id] = staged
        self._custody.update(staged_custody)
        return dict(staged)
