"""Tests for KeeperSettlementProvider and the execution payload."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode
from web3 import Web3

from apps.api_keeper.adapters.external.quote.fixed_fee_quoter import FixedFeeQuoter
from apps.api_keeper.adapters.external.settlement.keeper_settlement_provider import (
    EXECUTION_PAYLOAD_TYPES,
    KeeperSettlementProvider,
    build_execution_payload,
)
from apps.api_keeper.core.domain.entities.agent_entity import AgentEntity
from apps.api_keeper.core.domain.entities.execution_entity import Quote
from apps.api_keeper.core.domain.enums.agent_enums import AgentStatus, RuleType
from apps.api_keeper.core.domain.exceptions import QuoteUnavailableError, SessionError

from conftest import KEEPER, OWNER, USDC, WETH, make_session_client


def _quote(amount_out: int = 95) -> Quote:
    return Quote(token_in=WETH, token_out=USDC, amount_in=100, amount_out=amount_out)


def test_execution_payload_layout() -> None:
    payload = build_execution_payload(7, _quote(), 94)
    agent_id, token_in, token_out, amount_in, min_out, route = decode(EXECUTION_PAYLOAD_TYPES, payload)
    assert agent_id == 7
    assert token_in == Web3.to_checksum_address(WETH)
    assert token_out == Web3.to_checksum_address(USDC)
    assert (amount_in, min_out, route) == (100, 94, b"")


class TestValidate:

    @pytest.mark.asyncio
    async def test_requote_within_tolerance(self, agents) -> None:
        provider = KeeperSettlementProvider(quoter=FixedFeeQuoter(fee_bps=30), agents=agents)
        quote = await provider.quote(WETH, USDC, 10_000, 50)
        assert quote.amount_out == 9_970
        assert await provider.validate(quote)

    @pytest.mark.asyncio
    async def test_requote_drift_is_stale(self, agents) -> None:
        quoter = AsyncMock()
        quoter.quote.return_value = _quote(amount_out=90)
        provider = KeeperSettlementProvider(quoter=quoter, agents=agents)
        assert not await provider.validate(_quote(amount_out=95))

    @pytest.mark.asyncio
    async def test_requote_failure_is_stale(self, agents) -> None:
        quoter = AsyncMock()
        quoter.quote.side_effect = QuoteUnavailableError("down")
        provider = KeeperSettlementProvider(quoter=quoter, agents=agents)
        assert not await provider.validate(_quote())


class TestOffChain:

    @pytest.mark.asyncio
    async def test_unavailable_without_session_client(self, agents) -> None:
        provider = KeeperSettlementProvider(quoter=FixedFeeQuoter(), agents=agents)
        assert not provider.off_chain_available
        with pytest.raises(SessionError):
            await provider.open_session(MagicMock(), _quote())

    @pytest.mark.asyncio
    async def test_state_update_moves_amounts_between_participants(self, agents, pool_key) -> None:
        client = make_session_client()
        provider = KeeperSettlementProvider(quoter=FixedFeeQuoter(), agents=agents, session_client=client)
        agent = AgentEntity(agent_id=1, owner=OWNER, pool_key=pool_key, status=AgentStatus.ACTIVE)

        assert provider.off_chain_available
        assert provider.keeper_address == KEEPER

        session = await provider.open_session(agent, _quote())
        receipt = await provider.settle_off_chain(session, _quote())

        assert receipt.success
        assert receipt.amount_out == 95
        assert receipt.reference.startswith("0x")
        _, allocations = client.submit_app_state.await_args.args[:2]
        amounts = {a["participant"]: a["amount"] for a in allocations}
        assert amounts == {KEEPER: "0", OWNER: "95"}
        assert client.submit_app_state.await_args.kwargs["intent"] == "OPERATE"

    @pytest.mark.asyncio
    async def test_off_chain_commit_reaches_the_substrate(self, agents, pool_key, clock) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 300)
        provider = KeeperSettlementProvider(quoter=FixedFeeQuoter(), agents=agents, session_client=make_session_client())

        await provider.commit_off_chain(agent.agent_id, 0, clock.now, "0xref")

        assert (await agents.get_rules(agent.agent_id))[0].last_executed == clock.now
