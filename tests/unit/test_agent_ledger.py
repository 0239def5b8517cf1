"""Tests for AgentLedgerService over the in-memory ledger store."""

import asyncio

import pytest

from apps.api_keeper.core.domain.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    SolvencyViolationError,
)

from conftest import USDC, WETH


class TestDepositWithdraw:

    @pytest.mark.asyncio
    async def test_withdraw_more_than_balance_fails_and_changes_nothing(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.apply_withdraw(1, WETH, 2_000)

        assert exc_info.value.public_message == "Insufficient agent balance"
        assert await ledger.balance(1, WETH) == 1_000

    @pytest.mark.asyncio
    async def test_withdraw_within_balance(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        balances = await ledger.apply_withdraw(1, WETH, 400)
        assert balances[WETH] == 600

    @pytest.mark.asyncio
    async def test_token_addresses_are_case_insensitive(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH.upper().replace("0X", "0x"), 10)
        assert await ledger.balance(1, WETH) == 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amounts_rejected(self, ledger, amount) -> None:
        with pytest.raises(InvalidAmountError):
            await ledger.apply_deposit(1, WETH, amount)

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_never_overdraw(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)

        results = await asyncio.gather(
            ledger.apply_withdraw(1, WETH, 600),
            ledger.apply_withdraw(1, WETH, 600),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientBalanceError) for r in results) == 1
        assert await ledger.balance(1, WETH) == 400


class TestSwapSettlement:

    @pytest.mark.asyncio
    async def test_swap_moves_both_legs(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        balances = await ledger.apply_swap_settlement(1, WETH, 100, USDC, 95)
        assert balances == {WETH: 900, USDC: 95}

    @pytest.mark.asyncio
    async def test_swap_beyond_balance_applies_nothing(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 50)
        with pytest.raises(InsufficientBalanceError):
            await ledger.apply_swap_settlement(1, WETH, 100, USDC, 95)
        assert await ledger.balances(1) == {WETH: 50}

    @pytest.mark.asyncio
    async def test_swap_same_token_rejected(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        with pytest.raises(InvalidAmountError):
            await ledger.apply_swap_settlement(1, WETH, 100, WETH, 95)

    @pytest.mark.asyncio
    async def test_tracked_sums_stay_within_custody(self, ledger, ledger_store) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        await ledger.apply_deposit(2, WETH, 500)
        await ledger.apply_swap_settlement(1, WETH, 100, USDC, 95)
        await ledger.apply_withdraw(2, WETH, 200)

        for token in (WETH, USDC):
            assert await ledger_store.total_tracked(token) <= await ledger_store.get_custodied(token)
            assert await ledger.check_solvency(token)
        assert await ledger_store.total_tracked(WETH) == 1_200

    @pytest.mark.asyncio
    async def test_solvency_breach_blocks_credit(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        await ledger.apply_swap_settlement(1, WETH, 100, USDC, 95)

        # vault reports less USDC than we track
        assert not await ledger.reconcile_custody(USDC, 0)

        with pytest.raises(SolvencyViolationError):
            await ledger.apply_swap_settlement(1, WETH, 100, USDC, 95)
        assert await ledger.balances(1) == {WETH: 900, USDC: 95}


class TestExclusive:

    @pytest.mark.asyncio
    async def test_exclusive_scope_marks_agent_busy(self, ledger) -> None:
        await ledger.apply_deposit(1, WETH, 1_000)
        async with ledger.exclusive(1) as view:
            assert ledger.is_busy(1)
            assert not ledger.is_busy(2)
            await view.apply_withdraw(WETH, 1)
        assert not ledger.is_busy(1)
        assert await ledger.balance(1, WETH) == 999
