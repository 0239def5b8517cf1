from abc import ABC, abstractmethod
from typing import Dict


class LedgerRepository(ABC):
    """
    Storage for per-agent token balances and per-token custodied totals.
    Business rules (non-negativity, solvency, per-agent exclusion) live in
    AgentLedgerService; the store only guarantees that one `commit` is applied
    all-or-nothing.
    """

    @abstractmethod
    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_balance(self, agent_id: int, token: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_balances(self, agent_id: int) -> Dict[str, int]:
        raise NotImplementedError

    @abstractmethod
    async def total_tracked(self, token: str) -> int:
        """Sum of `token` balances across all agents."""
        raise NotImplementedError

    @abstractmethod
    async def get_custodied(self, token: str) -> int:
        """Amount of `token` actually held by the vault, as last reconciled."""
        raise NotImplementedError

    @abstractmethod
    async def set_custodied(self, token: str, amount: int) -> None:
        raise NotImplementedError

    @abstractmethod
    async def commit(
        self,
        agent_id: int,
        balance_deltas: Dict[str, int],
        custody_deltas: Dict[str, int],
    ) -> Dict[str, int]:
        """
        Apply every delta as one unit. Readers never observe a subset.

        :return: the agent's balances after the commit.
        :raises InsufficientBalanceError: a resulting balance would be negative
            (nothing is applied).
        """
        raise NotImplementedError
