"""Tests for EvaluateAgentsUseCase against the in-memory substrate."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from apps.api_keeper.adapters.external.quote.fixed_fee_quoter import FixedFeeQuoter
from apps.api_keeper.adapters.external.settlement.keeper_settlement_provider import KeeperSettlementProvider
from apps.api_keeper.core.domain.entities.execution_entity import ExecutionResult
from apps.api_keeper.core.domain.entities.signal_entity import SignalEntity
from apps.api_keeper.core.domain.enums.agent_enums import ExecutionPath, RuleType, SignalType
from apps.api_keeper.core.services.dual_path_executor_service import DualPathExecutorService
from apps.api_keeper.core.usecases.evaluate_agents_use_case import EvaluateAgentsUseCase

from conftest import OWNER, USDC, WETH, make_session_client


@pytest.fixture
def executor(agents, ledger, journal, clock, recording_sleep) -> DualPathExecutorService:
    provider = KeeperSettlementProvider(quoter=FixedFeeQuoter(fee_bps=500), agents=agents)
    return DualPathExecutorService(
        provider=provider, ledger=ledger, journal=journal, clock=clock, sleep=recording_sleep,
    )


@pytest.fixture
def use_case(agents, signals, executor, recorder, journal, clock) -> EvaluateAgentsUseCase:
    return EvaluateAgentsUseCase(
        agents=agents,
        signal_repo=signals,
        executor=executor,
        recorder=recorder,
        journal=journal,
        clock=clock,
    )


def _mock_executor() -> AsyncMock:
    executor = AsyncMock()
    executor.execute.return_value = ExecutionResult(
        agent_id=1, rule_index=0, success=True, path=ExecutionPath.ON_CHAIN, amount_in=1, amount_out=1,
    )
    return executor


class TestPass:

    @pytest.mark.asyncio
    async def test_ready_rule_is_dispatched_and_recorded(self, use_case, agents, ledger, recorder, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        await ledger.apply_deposit(agent.agent_id, WETH, 1_000)

        summary = await use_case.run_pass()

        assert summary == {"agents": 1, "ready": 1, "dispatched": 1, "succeeded": 1, "errors": 0}
        assert await ledger.balances(agent.agent_id) == {WETH: 900, USDC: 95}
        [attempt] = await recorder.query(agent_id=agent.agent_id)
        assert attempt.success
        assert attempt.rule_type == int(RuleType.TIME_WEIGHTED)
        assert use_case.agent_status[agent.agent_id]["total_executions"] == 1

        # same instant: the window is claimed
        again = await use_case.run_pass()
        assert again["dispatched"] == 0

    @pytest.mark.asyncio
    async def test_signal_driven_rule(self, use_case, agents, ledger, signals, clock, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.REBALANCE_THRESHOLD, 100, 0, 60)
        await ledger.apply_deposit(agent.agent_id, WETH, 1_000)

        assert (await use_case.run_pass())["ready"] == 0

        await signals.save_signal(
            SignalEntity(
                pool_id=pool_key.pool_id(),
                signal_type=int(SignalType.PRICE_IMPACT),
                magnitude=150,
                timestamp=clock.now,
            )
        )
        assert (await use_case.run_pass())["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_inactive_agents_and_disabled_rules_are_skipped(self, use_case, agents, pool_key) -> None:
        paused = agents.create_agent(OWNER, pool_key)
        agents.add_rule(paused.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        agents.pause(paused.agent_id, OWNER)

        quiet = agents.create_agent(OWNER, pool_key)
        agents.add_rule(quiet.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60, enabled=False)

        summary = await use_case.run_pass()

        assert summary["ready"] == 0
        assert use_case.agent_status[paused.agent_id]["is_active"] is False
        assert use_case.agent_status[quiet.agent_id]["is_active"] is True


class TestDispatchGuards:

    @pytest.mark.asyncio
    async def test_gate_divergence_skips_dispatch(self, agents, signals, recorder, journal, clock, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        agents.can_execute = AsyncMock(return_value=False)
        executor = _mock_executor()
        use_case = EvaluateAgentsUseCase(agents, signals, executor, recorder, journal=journal, clock=clock)

        summary = await use_case.run_pass()

        assert summary["ready"] == 1
        assert summary["dispatched"] == 0
        executor.execute.assert_not_awaited()
        assert await recorder.count() == 0

    @pytest.mark.asyncio
    async def test_rewritten_slot_is_not_dispatched(self, agents, signals, recorder, journal, clock, pool_key) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 120)

        calls = []

        async def owner_removes_rule_meanwhile(agent_id, index, now=None):
            if not calls:
                agents.remove_rule(agent_id, OWNER, 0)
            calls.append(index)
            return True

        agents.can_execute = owner_removes_rule_meanwhile
        executor = _mock_executor()
        use_case = EvaluateAgentsUseCase(agents, signals, executor, recorder, journal=journal, clock=clock)

        summary = await use_case.run_pass()

        assert summary["ready"] == 2
        assert summary["dispatched"] == 0
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_failing_agent_does_not_stop_the_pass(
        self, agents, signals, recorder, journal, clock, pool_key,
    ) -> None:
        broken = agents.create_agent(OWNER, pool_key)
        healthy = agents.create_agent(OWNER, pool_key)
        agents.add_rule(healthy.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)

        real_get_rules = agents.get_rules

        async def get_rules(agent_id):
            if agent_id == broken.agent_id:
                raise RuntimeError("rpc timeout")
            return await real_get_rules(agent_id)

        agents.get_rules = get_rules
        executor = _mock_executor()
        use_case = EvaluateAgentsUseCase(agents, signals, executor, recorder, journal=journal, clock=clock)

        summary = await use_case.run_pass()

        assert summary["errors"] == 1
        assert summary["dispatched"] == 1
        executor.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_live_signal_source_wins_when_newer(
        self, agents, signals, recorder, journal, clock, pool_key,
    ) -> None:
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.STOP_LOSS, 300, 0, 60)
        pool_id = pool_key.pool_id()
        await signals.save_signal(
            SignalEntity(pool_id=pool_id, signal_type=0, magnitude=10, timestamp=clock.now - 100),
        )
        source = AsyncMock()
        source.get_latest_signal.return_value = SignalEntity(
            pool_id=pool_id, signal_type=0, magnitude=400, timestamp=clock.now,
        )
        executor = _mock_executor()
        use_case = EvaluateAgentsUseCase(
            agents, signals, executor, recorder, journal=journal, signal_source=source, clock=clock,
        )

        summary = await use_case.run_pass()

        assert summary["dispatched"] == 1
        source.get_latest_signal.assert_awaited_once_with(pool_id)


def _off_chain_use_case(agents, signals, ledger, recorder, journal, clock, recording_sleep, session_client):
    provider = KeeperSettlementProvider(
        quoter=FixedFeeQuoter(fee_bps=500), agents=agents, session_client=session_client,
    )
    executor = DualPathExecutorService(
        provider=provider, ledger=ledger, journal=journal, clock=clock, sleep=recording_sleep,
        session_timeout_sec=0.05,
    )
    return EvaluateAgentsUseCase(
        agents=agents, signal_repo=signals, executor=executor, recorder=recorder, journal=journal, clock=clock,
    )


class TestSettlementPaths:

    @pytest.mark.asyncio
    async def test_off_chain_success_closes_the_substrate_gate(
        self, agents, signals, ledger, recorder, journal, clock, recording_sleep, pool_key,
    ) -> None:
        clock.now = 301
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 300)
        await ledger.apply_deposit(agent.agent_id, WETH, 1_000)
        use_case = _off_chain_use_case(
            agents, signals, ledger, recorder, journal, clock, recording_sleep, make_session_client(),
        )

        summary = await use_case.run_pass()

        assert summary["succeeded"] == 1
        [attempt] = await recorder.query(agent_id=agent.agent_id)
        assert attempt.path == ExecutionPath.OFF_CHAIN
        assert await ledger.balances(agent.agent_id) == {WETH: 900, USDC: 95}
        assert (await agents.get_rules(agent.agent_id))[0].last_executed == 301
        assert not await agents.can_execute(agent.agent_id, 0)
        assert not await agents.can_execute(agent.agent_id, 0, 600)
        assert await agents.can_execute(agent.agent_id, 0, 601)

    @pytest.mark.asyncio
    async def test_off_chain_timeout_falls_back_and_records_on_chain(
        self, agents, signals, ledger, recorder, journal, clock, recording_sleep, pool_key,
    ) -> None:
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        session_client = make_session_client()
        session_client.submit_app_state = AsyncMock(side_effect=hang)
        agent = agents.create_agent(OWNER, pool_key)
        agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 300)
        await ledger.apply_deposit(agent.agent_id, WETH, 1_000)
        use_case = _off_chain_use_case(agents, signals, ledger, recorder, journal, clock, recording_sleep, session_client)

        summary = await use_case.run_pass()

        assert summary["succeeded"] == 1
        assert await ledger.balances(agent.agent_id) == {WETH: 900, USDC: 95}
        [attempt] = await recorder.query(agent_id=agent.agent_id)
        assert attempt.path == ExecutionPath.ON_CHAIN
        assert attempt.success
        assert (attempt.amount_in, attempt.amount_out) == (100, 95)
        session_client.close_app_session.assert_awaited_once()
        assert not await agents.can_execute(agent.agent_id, 0)
