"""
Policy helpers shared by the rule engine, the executor and the ledger
substrate. All basis-point math is integer-only.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

BPS_DENOMINATOR = 10_000
MIN_RULE_COOLDOWN_SEC = 60


def cooldown_remaining(last_executed: int, cooldown: int, now_ts: int) -> int:
    """
    Seconds left before the rule may fire again; 0 when the gate is open.
    `last_executed == 0` is NOT special: a never-run rule still waits until
    `now >= cooldown`.
    """
    remaining = int(last_executed) + int(cooldown) - int(now_ts)
    return max(0, remaining)


def cooldown_ok(last_executed: int, cooldown: int, now_ts: int) -> bool:
    return (int(now_ts) - int(last_executed)) >= int(cooldown)


def readiness(
    *,
    agent_active: bool,
    rule_exists: bool,
    rule_enabled: bool,
    last_executed: int,
    cooldown: int,
    now_ts: int,
) -> Tuple[bool, Optional[str]]:
    """
    The full execute gate (active + index valid + enabled + cooldown).
    Every substrate's `can_execute` must be built on this function so it can
    never drift from the rule engine's own cooldown gate.
    """
    if not agent_active:
        return False, "agent not active"
    if not rule_exists:
        return False, "rule index out of range"
    if not rule_enabled:
        return False, "rule disabled"
    if not cooldown_ok(last_executed, cooldown, now_ts):
        left = cooldown_remaining(last_executed, cooldown, now_ts)
        return False, f"cooldown remaining {left}s"
    return True, None


@dataclass
class FractionSizingPolicy:
    """
    amountIn = balance * fraction_bps / 10000 (floor).
    Default 1000 bps = 10% of the current tokenIn balance.
    """
    fraction_bps: int = 1_000

    def amount_in(self, balance: int) -> int:
        if balance <= 0:
            return 0
        return (int(balance) * int(self.fraction_bps)) // BPS_DENOMINATOR


@dataclass
class SlippagePolicy:
    slippage_bps: int = 50

    def min_amount_out(self, amount_out: int) -> int:
        return (int(amount_out) * (BPS_DENOMINATOR - int(self.slippage_bps))) // BPS_DENOMINATOR


@dataclass
class QuoteFreshnessPolicy:
    """
    A re-quote is accepted only when it deviates from the original output by
    strictly less than `tolerance_bps`.
    """
    tolerance_bps: int = 100

    def ok(self, original_out: int, fresh_out: int) -> bool:
        if original_out <= 0:
            return False
        deviation = abs(int(fresh_out) - int(original_out)) * BPS_DENOMINATOR
        return deviation < int(self.tolerance_bps) * int(original_out)
