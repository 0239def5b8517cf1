from typing import Optional

from ..domain.entities.agent_entity import AgentEntity, RuleEntity
from ..domain.entities.execution_entity import Decision
from ..domain.entities.signal_entity import SignalEntity
from ..domain.enums.agent_enums import RuleType, SignalType
from ..domain.policies import cooldown_ok, cooldown_remaining


class RuleEngineService:
    """
    Pure decision function: (agent, rule, latest signal, now) -> Decision.

    The caller has already checked that the agent is ACTIVE, the rule index is
    valid and the rule is enabled. The cooldown gate is applied here, once,
    before any type-specific logic.
    """

    def evaluate(
        self,
        agent: AgentEntity,
        rule: RuleEntity,
        latest_signal: Optional[SignalEntity],
        now: int,
    ) -> Decision:
        if not cooldown_ok(rule.last_executed, rule.cooldown, now):
            left = cooldown_remaining(rule.last_executed, rule.cooldown, now)
            return Decision(should_execute=False, reason=f"cooldown remaining {left}s")

        rule_type = rule.rule_type
        if rule_type == RuleType.TIME_WEIGHTED:
            return self._time_weighted(rule, now)
        if rule_type == RuleType.REBALANCE_THRESHOLD:
            return self._price_impact(rule, latest_signal, label="Rebalance")
        if rule_type == RuleType.STOP_LOSS:
            return self._price_impact(rule, latest_signal, label="Stop loss")
        if rule_type == RuleType.TAKE_PROFIT:
            return self._take_profit()
        if rule_type == RuleType.CUSTOM_SIGNAL:
            return self._custom_signal(rule, latest_signal)
        if rule_type == RuleType.LIQUIDITY_RANGE:
            return Decision(should_execute=False, reason="insufficient data: liquidity range rules need position data")
        return Decision(should_execute=False, reason=f"unknown rule type {int(rule_type)}")

    # ---------- per type ----------

    @staticmethod
    def _time_weighted(rule: RuleEntity, now: int) -> Decision:
        # cooldown is the trade interval, the gate already passed
        elapsed = now - rule.last_executed
        return Decision(
            should_execute=True,
            reason=f"time interval {elapsed}s >= cooldown {rule.cooldown}s",
        )

    @staticmethod
    def _price_impact(rule: RuleEntity, signal: Optional[SignalEntity], label: str) -> Decision:
        if signal is None:
            return Decision(should_execute=False, reason="no signal")
        if signal.signal_type != SignalType.PRICE_IMPACT:
            return Decision(should_execute=False, reason="no signal: latest signal is not a price impact")
        if signal.magnitude >= rule.threshold:
            return Decision(
                should_execute=True,
                reason=f"{label}: price impact {signal.magnitude} >= threshold {rule.threshold}",
            )
        return Decision(
            should_execute=False,
            reason=f"below threshold: price impact {signal.magnitude} < {rule.threshold}",
        )

    @staticmethod
    def _take_profit() -> Decision:
        # needs a price oracle this engine does not have; never approximate
        return Decision(should_execute=False, reason="insufficient data: take profit requires a price oracle")

    @staticmethod
    def _custom_signal(rule: RuleEntity, signal: Optional[SignalEntity]) -> Decision:
        if signal is None:
            return Decision(should_execute=False, reason="no signal")
        if signal.signal_type != rule.target_value:
            return Decision(
                should_execute=False,
                reason=f"signal type {signal.signal_type} != target {rule.target_value}",
            )
        if signal.magnitude < rule.threshold:
            return Decision(
                should_execute=False,
                reason=f"below threshold: magnitude {signal.magnitude} < {rule.threshold}",
            )
        return Decision(
            should_execute=True,
            reason=f"signal {signal.signal_type} with magnitude {signal.magnitude} triggered",
        )
