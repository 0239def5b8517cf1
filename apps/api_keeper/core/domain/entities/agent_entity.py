# apps/api_keeper/core/domain/entities/agent_entity.py

from typing import Optional, Tuple

from eth_abi import encode
from pydantic import BaseModel, Field
from web3 import Web3

from ..enums.agent_enums import AgentStatus, RuleType


class PoolKey(BaseModel):
    """
    Trading pair reference of an agent (Uniswap v4 style pool key).
    """
    currency0: str
    currency1: str
    fee: int = 3000
    tick_spacing: int = 60
    hooks: str = "0x0000000000000000000000000000000000000000"

    def pool_id(self) -> str:
        """
        keccak256(abi.encode(currency0, currency1, fee, tickSpacing, hooks)),
        the key the hook contract uses for its signal history.
        """
        packed = encode(
            ["address", "address", "uint24", "int24", "address"],
            [
                Web3.to_checksum_address(self.currency0),
                Web3.to_checksum_address(self.currency1),
                int(self.fee),
                int(self.tick_spacing),
                Web3.to_checksum_address(self.hooks),
            ],
        )
        return Web3.to_hex(Web3.keccak(packed))


class AgentEntity(BaseModel):
    """
    Canonical in-memory representation of an agent record, whatever the
    backing substrate (StrategyAgent contract or local store).
    """

    agent_id: int
    owner: str
    pool_key: PoolKey
    status: AgentStatus = AgentStatus.INACTIVE
    deposited_amount: int = 0   # aggregate, informational only
    created_at: int = 0
    last_activity: int = 0
    name: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE


class RuleEntity(BaseModel):
    """
    One rule of an agent. Its position in the agent's rule list is part of its
    identity on-chain, and removal swaps the last rule into the freed slot, so
    indices are NOT stable across removals. `rule_id` is an immutable id when
    the substrate can provide one.
    """

    rule_type: RuleType
    threshold: int = Field(0, ge=0, le=10_000)   # basis points
    target_value: int = 0
    cooldown: int = Field(0, ge=0)               # seconds
    last_executed: int = 0                       # unix seconds, 0 = never
    enabled: bool = True
    rule_id: Optional[str] = None

    def fingerprint(self) -> Tuple:
        """
        Identity of the rule's configuration, used to detect a slot that was
        rewritten between evaluation and dispatch.
        """
        return (
            self.rule_id,
            int(self.rule_type),
            self.threshold,
            self.target_value,
            self.cooldown,
        )
