import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from ..domain.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    SolvencyViolationError,
)
from ..repositories.ledger_repository import LedgerRepository


class AgentLedgerService:
    """
    Authoritative per-agent balance map.

    Mutations: deposit (+amount), withdraw (-amount, bounded by balance) and
    swap settlement (-amountIn on tokenIn, +amountOut on tokenOut, as one
    commit). Every mutation runs under the agent's exclusion scope, so two
    settlements for the same agent are never in flight together.

    Invariants checked before anything is applied:
      - balance[agent][token] never goes negative
      - sum of tracked balances per token <= custodied amount of that token
    A failed check applies nothing.
    """

    def __init__(self, store: LedgerRepository, logger: Optional[logging.Logger] = None):
        self._store = store
        self._locks: Dict[int, asyncio.Lock] = {}
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def _lock_for(self, agent_id: int) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock

    def is_busy(self, agent_id: int) -> bool:
        lock = self._locks.get(agent_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def exclusive(self, agent_id: int) -> AsyncIterator["LockedAgentLedger"]:
        """
        Hold the agent's exclusion scope across a whole quote -> settle ->
        apply sequence. Use the yielded view for mutations inside the scope;
        the public apply_* methods would wait on the lock you already hold.
        """
        async with self._lock_for(agent_id):
            yield LockedAgentLedger(self, agent_id)

    # ---------- reads ----------

    async def balance(self, agent_id: int, token: str) -> int:
        return await self._store.get_balance(agent_id, _norm(token))

    async def balances(self, agent_id: int) -> Dict[str, int]:
        return await self._store.get_balances(agent_id)

    async def check_solvency(self, token: str) -> bool:
        token = _norm(token)
        tracked = await self._store.total_tracked(token)
        custodied = await self._store.get_custodied(token)
        return tracked <= custodied

    # ---------- mutations (locked) ----------

    async def apply_deposit(self, agent_id: int, token: str, amount: int) -> Dict[str, int]:
        async with self.exclusive(agent_id) as view:
            return await view.apply_deposit(token, amount)

    async def apply_withdraw(self, agent_id: int, token: str, amount: int) -> Dict[str, int]:
        async with self.exclusive(agent_id) as view:
            return await view.apply_withdraw(token, amount)

    async def apply_swap_settlement(
        self,
        agent_id: int,
        token_in: str,
        amount_in: int,
        token_out: str,
        amount_out: int,
    ) -> Dict[str, int]:
        async with self.exclusive(agent_id) as view:
            return await view.apply_swap_settlement(token_in, amount_in, token_out, amount_out)

    async def reconcile_custody(self, token: str, custodied: int) -> bool:
        """
        Record the vault's actual holdings of `token` (e.g. ERC20 balanceOf).
        Returns False and logs when tracked balances already exceed it.
        """
        token = _norm(token)
        await self._store.set_custodied(token, int(custodied))
        tracked = await self._store.total_tracked(token)
        if tracked > custodied:
            self._logger.error(
                "Solvency breach on reconcile: token=%s tracked=%s custodied=%s",
                token, tracked, custodied,
            )
            return False
        return True

    # ---------- unlocked implementations (caller holds the lock) ----------

    async def _deposit(self, agent_id: int, token: str, amount: int) -> Dict[str, int]:
        token = _norm(token)
        _require_positive(amount)
        out = await self._store.commit(agent_id, {token: amount}, {token: amount})
        self._logger.info("Deposit agent=%s token=%s amount=%s", agent_id, token, amount)
        return out

    async def _withdraw(self, agent_id: int, token: str, amount: int) -> Dict[str, int]:
        token = _norm(token)
        _require_positive(amount)
        available = await self._store.get_balance(agent_id, token)
        if amount > available:
            raise InsufficientBalanceError(agent_id, token, amount, available)
        out = await self._store.commit(agent_id, {token: -amount}, {token: -amount})
        self._logger.info("Withdraw agent=%s token=%s amount=%s", agent_id, token, amount)
        return out

    async def _swap_settlement(
        self,
        agent_id: int,
        token_in: str,
        amount_in: int,
        token_out: str,
        amount_out: int,
    ) -> Dict[str, int]:
        token_in, token_out = _norm(token_in), _norm(token_out)
        _require_positive(amount_in)
        if amount_out < 0:
            raise InvalidAmountError(f"amount_out must be >= 0, got {amount_out}")
        if token_in == token_out:
            raise InvalidAmountError("token_in and token_out must differ", public_message="Swap tokens must differ")

        available = await self._store.get_balance(agent_id, token_in)
        if amount_in > available:
            raise InsufficientBalanceError(agent_id, token_in, amount_in, available)

        deltas = {token_in: -amount_in, token_out: amount_out}
        await self._ensure_solvent(deltas, deltas)

        out = await self._store.commit(agent_id, deltas, deltas)
        self._logger.info(
            "Settlement applied agent=%s %s -%s / %s +%s",
            agent_id, token_in, amount_in, token_out, amount_out,
        )
        return out

    async def _ensure_solvent(self, balance_deltas: Dict[str, int], custody_deltas: Dict[str, int]) -> None:
        for token, delta in balance_deltas.items():
            if delta <= 0:
                continue
            tracked = await self._store.total_tracked(token) + delta
            custodied = await self._store.get_custodied(token) + custody_deltas.get(token, 0)
            if tracked > custodied:
                raise SolvencyViolationError(token, tracked, custodied)


class LockedAgentLedger:
    """
    View over one agent's ledger, valid only inside AgentLedgerService.exclusive().
    """

    def __init__(self, ledger: AgentLedgerService, agent_id: int):
        self._ledger = ledger
        self.agent_id = agent_id

    async def balance(self, token: str) -> int:
        return await self._ledger.balance(self.agent_id, token)

    async def apply_deposit(self, token: str, amount: int) -> Dict[str, int]:
        return await self._ledger._deposit(self.agent_id, token, amount)

    async def apply_withdraw(self, token: str, amount: int) -> Dict[str, int]:
        return await self._ledger._withdraw(self.agent_id, token, amount)

    async def apply_swap_settlement(
        self, token_in: str, amount_in: int, token_out: str, amount_out: int,
    ) -> Dict[str, int]:
        return await self._ledger._swap_settlement(self.agent_id, token_in, amount_in, token_out, amount_out)


def _norm(token: str) -> str:
    return token.lower() if token.startswith("0x") else token


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
