# apps/api_keeper/core/domain/enums/agent_enums.py

from enum import Enum, IntEnum


class AgentStatus(IntEnum):
    """
    Lifecycle of an agent as stored by the StrategyAgent contract (uint8).
    Agents are never deleted, only moved to LIQUIDATED.
    """
    INACTIVE = 0
    ACTIVE = 1
    PAUSED = 2
    LIQUIDATED = 3


class RuleType(IntEnum):
    """
    Rule kinds understood by the rule engine (uint8 on-chain).

    targetValue meaning depends on the type:
      - TIME_WEIGHTED: unused, the cooldown IS the trade interval
      - CUSTOM_SIGNAL: numeric SignalType the rule listens to
    """
    REBALANCE_THRESHOLD = 0
    TIME_WEIGHTED = 1
    LIQUIDITY_RANGE = 2
    STOP_LOSS = 3
    TAKE_PROFIT = 4
    CUSTOM_SIGNAL = 5


class SignalType(IntEnum):
    """
    Kinds of pool signals emitted by the hook contract.
    """
    PRICE_IMPACT = 0
    LIQUIDITY_CHANGE = 1
    VOLATILITY_SPIKE = 2
    ARBITRAGE_OPPORTUNITY = 3
    REBALANCE_NEEDED = 4


class ExecutionPath(str, Enum):
    """
    Which settlement path finalized (or last tried to finalize) a swap.
    """
    OFF_CHAIN = "OFF_CHAIN"   # session-based, instant, gasless
    ON_CHAIN = "ON_CHAIN"     # StrategyAgent.execute transaction


class ExecutionOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TriggerSource(str, Enum):
    """
    Producer that woke the evaluation loop. The loop never branches on it,
    it is only carried for logs.
    """
    TIMER = "TIMER"
    SIGNAL = "SIGNAL"
    MANUAL = "MANUAL"
