"""
Shared fixtures: token addresses, a settable clock and an in-memory keeper
world (agent substrate + ledger + recorder) wired the way the supervisor
wires the memory backend.
"""

from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.api_keeper.adapters.base import SettlementProvider
from apps.api_keeper.adapters.external.memory.agent_repository_memory import AgentRepositoryMemory
from apps.api_keeper.adapters.external.memory.execution_repository_memory import ExecutionRepositoryMemory
from apps.api_keeper.adapters.external.memory.ledger_repository_memory import LedgerRepositoryMemory
from apps.api_keeper.adapters.external.memory.signal_repository_memory import SignalRepositoryMemory
from apps.api_keeper.adapters.external.quote.fixed_fee_quoter import FixedFeeQuoter
from apps.api_keeper.core.domain.entities.agent_entity import PoolKey
from apps.api_keeper.core.domain.entities.execution_entity import OffChainSession, SettlementReceipt
from apps.api_keeper.core.services.agent_ledger_service import AgentLedgerService
from apps.api_keeper.core.services.dispatch_journal_service import DispatchJournalService

WETH = "0xfff9976782d46cc05630d1f6ebab18b2324d6b14"
USDC = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"
OWNER = "0x00000000000000000000000000000000000000a1"
STRANGER = "0x00000000000000000000000000000000000000b2"
KEEPER = "0x00000000000000000000000000000000000000c3"


class FakeClock:
    """Settable unix-seconds clock."""

    def __init__(self, now: int = 10_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_session_client(address: str = KEEPER) -> MagicMock:
    """A connected ClearNode client whose calls succeed and bump the state version."""
    client = MagicMock()
    client.connected = True
    client.address = address
    client.create_app_session = AsyncMock(
        side_effect=lambda participants, allocations: OffChainSession(
            session_id="0x" + "11" * 32, participants=participants, allocations=allocations,
        ),
    )
    client.submit_app_state = AsyncMock(
        side_effect=lambda session, allocations, intent: session.model_copy(
            update={"allocations": allocations, "version": session.version + 1},
        ),
    )
    client.close_app_session = AsyncMock()
    client.close = AsyncMock()
    return client


class FakeProvider(SettlementProvider):
    """
    Scriptable settlement provider. Every call is an AsyncMock so tests can
    swap behavior (side_effect / return_value) and assert on calls.
    """

    def __init__(self, quoter=None, off_chain: bool = False):
        self._quoter = quoter or FixedFeeQuoter(fee_bps=500)
        self.off_chain = off_chain
        self.quote = AsyncMock(side_effect=self._quoter.quote)
        self.validate = AsyncMock(return_value=True)
        self.open_session = AsyncMock(
            return_value=OffChainSession(session_id="0xsession", participants=["0xkeeper", OWNER], allocations=[]),
        )
        self.settle_off_chain = AsyncMock(
            side_effect=lambda session, quote: SettlementReceipt(
                success=True, reference="0xoffchain", amount_out=quote.amount_out,
            ),
        )
        self.close_session = AsyncMock(return_value=None)
        self.commit_off_chain = AsyncMock(return_value=None)
        self.simulate_on_chain = AsyncMock(return_value=None)
        self.settle_on_chain = AsyncMock(return_value=SettlementReceipt(success=True, reference="0xtx"))

    @property
    def off_chain_available(self) -> bool:
        return self.off_chain

    # the instance attributes above shadow these
    async def quote(self, token_in, token_out, amount_in, slippage_bps): ...

    async def validate(self, quote): ...

    async def open_session(self, agent, quote): ...

    async def settle_off_chain(self, session, quote): ...

    async def close_session(self, session): ...

    async def commit_off_chain(self, agent_id, rule_index, executed_at, reference): ...

    async def simulate_on_chain(self, agent_id, rule_index, quote, min_amount_out): ...

    async def settle_on_chain(self, agent_id, rule_index, quote, min_amount_out): ...


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def pool_key() -> PoolKey:
    return PoolKey(currency0=WETH, currency1=USDC)


@pytest.fixture
def ledger_store() -> LedgerRepositoryMemory:
    return LedgerRepositoryMemory()


@pytest.fixture
def ledger(ledger_store) -> AgentLedgerService:
    return AgentLedgerService(ledger_store)


@pytest.fixture
def agents(ledger_store, clock) -> AgentRepositoryMemory:
    return AgentRepositoryMemory(ledger_store=ledger_store, clock=clock, admin=STRANGER)


@pytest.fixture
def signals() -> SignalRepositoryMemory:
    return SignalRepositoryMemory()


@pytest.fixture
def recorder() -> ExecutionRepositoryMemory:
    return ExecutionRepositoryMemory(limit=1000)


@pytest.fixture
def journal() -> DispatchJournalService:
    return DispatchJournalService()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
