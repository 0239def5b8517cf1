"""Tests for the in-process agent substrate."""

import pytest

from apps.api_keeper.adapters.external.memory.agent_repository_memory import AgentRepositoryMemory
from apps.api_keeper.adapters.external.settlement.keeper_settlement_provider import build_execution_payload
from apps.api_keeper.core.domain.entities.execution_entity import Quote, SettlementReceipt
from apps.api_keeper.core.domain.enums.agent_enums import AgentStatus, RuleType
from apps.api_keeper.core.domain.exceptions import (
    AgentNotFoundError,
    GateRejectedError,
    OnChainSubmissionError,
    UnauthorizedError,
)

from conftest import FakeClock, OWNER, STRANGER, USDC, WETH


def _payload(agent_id: int) -> bytes:
    quote = Quote(token_in=WETH, token_out=USDC, amount_in=100, amount_out=95)
    return build_execution_payload(agent_id, quote, 94)


class TestCooldownScenario:

    @pytest.mark.asyncio
    async def test_execute_commits_the_window(self, pool_key) -> None:
        clock = FakeClock(now=1)
        repo = AgentRepositoryMemory(clock=clock)
        agent = repo.create_agent(OWNER, pool_key)
        repo.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 300)

        assert not await repo.can_execute(agent.agent_id, 0)

        clock.now = 301
        assert await repo.can_execute(agent.agent_id, 0)

        receipt = await repo.execute(agent.agent_id, 0, _payload(agent.agent_id))
        assert receipt.success
        assert (await repo.get_rules(agent.agent_id))[0].last_executed == 301
        assert not await repo.can_execute(agent.agent_id, 0)

    @pytest.mark.asyncio
    async def test_execute_before_cooldown_is_gate_rejected(self, agents, pool_key, clock) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        await agents.execute(agent.agent_id, 0, _payload(agent.agent_id))

        clock.advance(30)
        with pytest.raises(GateRejectedError) as exc_info:
            await agents.execute(agent.agent_id, 0, _payload(agent.agent_id))
        assert exc_info.value.reason == "cooldown remaining 30s"

    @pytest.mark.asyncio
    async def test_reverted_settlement_commits_nothing(self, pool_key, clock) -> None:
        async def reverting(agent_id, rule_index, payload):
            return SettlementReceipt(success=False, reference="0xdead")

        repo = AgentRepositoryMemory(settler=reverting, clock=clock)
        agent = repo.create_agent(OWNER, pool_key)
        repo.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)

        with pytest.raises(OnChainSubmissionError):
            await repo.execute(agent.agent_id, 0, _payload(agent.agent_id))
        assert (await repo.get_rules(agent.agent_id))[0].last_executed == 0
        assert await repo.can_execute(agent.agent_id, 0)

    @pytest.mark.asyncio
    async def test_payload_for_another_agent_is_refused(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        with pytest.raises(OnChainSubmissionError):
            await agents.simulate_execute(agent.agent_id, 0, _payload(agent.agent_id + 1))


class TestRules:

    def test_cooldown_floor(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        with pytest.raises(ValueError):
            agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 59)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)

    def test_only_owner_edits_rules(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        with pytest.raises(UnauthorizedError):
            agents.add_rule(agent.agent_id, STRANGER, RuleType.TIME_WEIGHTED, 0, 0, 60)

    @pytest.mark.asyncio
    async def test_remove_swaps_last_rule_into_slot(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        for cooldown in (60, 120, 180):
            agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, cooldown)
        last_id = (await agents.get_rules(agent.agent_id))[2].rule_id

        agents.remove_rule(agent.agent_id, OWNER, 0)

        rules = await agents.get_rules(agent.agent_id)
        assert [r.cooldown for r in rules] == [180, 120]
        assert rules[0].rule_id == last_id

    @pytest.mark.asyncio
    async def test_update_keeps_identity_and_changes_fingerprint(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.REBALANCE_THRESHOLD, 100, 0, 60)
        before = (await agents.get_rules(agent.agent_id))[0]

        agents.update_rule(agent.agent_id, OWNER, 0, threshold=200, target_value=0, cooldown=60)

        after = (await agents.get_rules(agent.agent_id))[0]
        assert after.rule_id == before.rule_id
        assert after.threshold == 200
        assert after.fingerprint() != before.fingerprint()

    @pytest.mark.asyncio
    async def test_disabled_rule_is_not_executable(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        agents.set_rule_enabled(agent.agent_id, OWNER, 0, False)
        assert not await agents.can_execute(agent.agent_id, 0)
        assert not await agents.can_execute(agent.agent_id, 5)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_pause_unpause_and_liquidate(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)

        agents.pause(agent.agent_id, OWNER)
        assert not await agents.can_execute(agent.agent_id, 0)
        agents.unpause(agent.agent_id, OWNER)
        assert await agents.can_execute(agent.agent_id, 0)

        agents.liquidate(agent.agent_id, OWNER)
        assert (await agents.get_agent(agent.agent_id)).status == AgentStatus.LIQUIDATED
        with pytest.raises(ValueError):
            agents.unpause(agent.agent_id, OWNER)
        # never deleted
        assert await agents.list_agent_ids() == [agent.agent_id]

    def test_emergency_pause_is_admin_only(self, agents, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        with pytest.raises(UnauthorizedError):
            agents.emergency_pause(agent.agent_id, OWNER)
        agents.emergency_pause(agent.agent_id, STRANGER)

    @pytest.mark.asyncio
    async def test_unknown_agent(self, agents) -> None:
        with pytest.raises(AgentNotFoundError):
            await agents.get_agent(42)
        assert not await agents.can_execute(42, 0)

    @pytest.mark.asyncio
    async def test_balance_reads_the_ledger_store(self, agents, ledger, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        await ledger.apply_deposit(agent.agent_id, WETH, 700)
        assert await agents.get_agent_balance(agent.agent_id, WETH.upper().replace("0X", "0x")) == 700
