from abc import ABC, abstractmethod
from typing import List, Optional

from ..core.domain.entities.agent_entity import AgentEntity
from ..core.domain.entities.chain_event_entity import ChainEvent
from ..core.domain.entities.execution_entity import OffChainSession, Quote, SettlementReceipt
from ..core.domain.entities.signal_entity import SignalEntity


class ChainEventSource(ABC):
    """
    Read-only access to the contracts' append-only logs and to the hook's
    latest-signal view.
    """

    @abstractmethod
    async def block_number(self) -> int: ...

    @abstractmethod
    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        """
        Every keeper-relevant log in [from_block, to_block], inclusive.
        Order is not guaranteed; callers sort by (block, log_index).
        """
        ...

    @abstractmethod
    async def get_latest_signal(self, pool_id: str) -> Optional[SignalEntity]:
        """None when the pool never emitted a signal."""
        ...


class Quoter(ABC):
    """
    Prices a swap. The routing algorithm lives behind this interface.
    """

    @abstractmethod
    async def quote(self, token_in: str, token_out: str, amount_in: int, slippage_bps: int) -> Quote:
        """
        :raises QuoteUnavailableError: no route / provider down.
        """
        ...

    async def aclose(self) -> None:
        return None


class SettlementProvider(ABC):
    """
    Quote/settle provider used by the dual-path executor.

    One instance per keeper process. Off-chain calls must be fast-failing;
    on-chain calls represent ONE submission attempt (the executor owns retries).
    """

    # ---------- quoting ----------
    @abstractmethod
    async def quote(self, token_in: str, token_out: str, amount_in: int, slippage_bps: int) -> Quote: ...

    @abstractmethod
    async def validate(self, quote: Quote) -> bool:
        """Re-quote and compare; False when the quote went stale."""
        ...

    # ---------- off-chain session path ----------
    @property
    @abstractmethod
    def off_chain_available(self) -> bool:
        """True when the session channel to the counter-party is connected."""
        ...

    @abstractmethod
    async def open_session(self, agent: AgentEntity, quote: Quote) -> OffChainSession:
        """Open (or reuse) a settlement session funded for `quote`."""
        ...

    @abstractmethod
    async def settle_off_chain(self, session: OffChainSession, quote: Quote) -> SettlementReceipt:
        """Submit the balance-delta update reflecting the swap."""
        ...

    @abstractmethod
    async def close_session(self, session: OffChainSession) -> None: ...

    @abstractmethod
    async def commit_off_chain(self, agent_id: int, rule_index: int, executed_at: int, reference: str) -> None:
        """Close the rule's cooldown window at the substrate after an off-chain settlement."""
        ...

    # ---------- on-chain path ----------
    @abstractmethod
    async def simulate_on_chain(self, agent_id: int, rule_index: int, quote: Quote, min_amount_out: int) -> None:
        """
        Dry-run the settlement transaction.

        :raises OnChainSubmissionError | GateRejectedError: it would revert.
        """
        ...

    @abstractmethod
    async def settle_on_chain(
        self, agent_id: int, rule_index: int, quote: Quote, min_amount_out: int,
    ) -> SettlementReceipt:
        """Sign, submit and wait for confirmation of one settlement tx."""
        ...

    @property
    def keeper_address(self) -> Optional[str]:
        return None

    async def aclose(self) -> None:
        return None
