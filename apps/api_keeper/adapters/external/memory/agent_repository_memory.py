import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from eth_abi import decode

from ....core.domain.entities.agent_entity import AgentEntity, PoolKey, RuleEntity
from ....core.domain.entities.execution_entity import SettlementReceipt
from ....core.domain.enums.agent_enums import AgentStatus, RuleType
from ....core.domain.exceptions import (
    AgentNotFoundError,
    GateRejectedError,
    OnChainSubmissionError,
    UnauthorizedError,
)
from ....core.domain.policies import MIN_RULE_COOLDOWN_SEC, readiness
from ....core.repositories.agent_repository import AgentRepository
from ....core.repositories.ledger_repository import LedgerRepository
from ..settlement.keeper_settlement_provider import EXECUTION_PAYLOAD_TYPES

Settler = Callable[[int, int, bytes], Awaitable[SettlementReceipt]]


class AgentRepositoryMemory(AgentRepository):
    """
    In-process agent/rule substrate with the same semantics as the
    StrategyAgent contract:

    - agents are never deleted, only moved to LIQUIDATED
    - rule removal swaps the last rule into the freed slot and truncates
    - cooldowns below MIN_RULE_COOLDOWN_SEC are refused on create/update
    - `execute` re-validates the gate and commits `last_executed` only when
      settlement succeeds (a reverted tx commits nothing)
    - `commit_off_chain` closes the same window for off-chain settlements
    """

    def __init__(
        self,
        ledger_store: Optional[LedgerRepository] = None,
        settler: Optional[Settler] = None,
        clock: Optional[Callable[[], int]] = None,
        min_cooldown: int = MIN_RULE_COOLDOWN_SEC,
        admin: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._ledger_store = ledger_store
        self._settler = settler
        self._clock = clock or (lambda: int(time.time()))
        self._min_cooldown = min_cooldown
        self._admin = admin.lower() if admin else None
        self._logger = logger or logging.getLogger(self.__class__.__name__)

        self._agents: Dict[int, AgentEntity] = {}
        self._rules: Dict[int, List[RuleEntity]] = {}
        self._next_id = 1
        self._exec_lock = asyncio.Lock()

    # ---------- registration / owner operations ----------

    def create_agent(self, owner: str, pool_key: PoolKey, name: Optional[str] = None) -> AgentEntity:
        now = self._clock()
        agent = AgentEntity(
            agent_id=self._next_id,
            owner=owner,
            pool_key=pool_key,
            status=AgentStatus.ACTIVE,
            created_at=now,
            last_activity=now,
            name=name,
        )
        self._agents[agent.agent_id] = agent
        self._rules[agent.agent_id] = []
        self._next_id += 1
        self._logger.info("Agent created id=%s owner=%s", agent.agent_id, owner)
        return agent

    def add_rule(
        self,
        agent_id: int,
        caller: str,
        rule_type: RuleType,
        threshold: int,
        target_value: int,
        cooldown: int,
        enabled: bool = True,
    ) -> int:
        self._require_owner(agent_id, caller)
        self._check_cooldown(cooldown)
        rule = RuleEntity(
            rule_type=rule_type,
            threshold=threshold,
            target_value=target_value,
            cooldown=cooldown,
            enabled=enabled,
            rule_id=uuid.uuid4().hex,
        )
        self._rules[agent_id].append(rule)
        return len(self._rules[agent_id]) - 1

    def update_rule(
        self,
        agent_id: int,
        caller: str,
        rule_index: int,
        threshold: int,
        target_value: int,
        cooldown: int,
    ) -> None:
        self._require_owner(agent_id, caller)
        self._check_cooldown(cooldown)
        rules = self._rules_or_raise(agent_id, rule_index)
        # rule_id and last_executed survive an update
        rules[rule_index] = RuleEntity(
            **{
                **rules[rule_index].model_dump(),
                "threshold": threshold,
                "target_value": target_value,
                "cooldown": cooldown,
            }
        )

    def set_rule_enabled(self, agent_id: int, caller: str, rule_index: int, enabled: bool) -> None:
        self._require_owner(agent_id, caller)
        rules = self._rules_or_raise(agent_id, rule_index)
        rules[rule_index] = rules[rule_index].model_copy(update={"enabled": enabled})

    def remove_rule(self, agent_id: int, caller: str, rule_index: int) -> None:
        """
        Swap-and-truncate: the last rule takes `rule_index`, so every caller
        holding an index past this one now points somewhere else.
        """
        self._require_owner(agent_id, caller)
        rules = self._rules_or_raise(agent_id, rule_index)
        rules[rule_index] = rules[-1]
        rules.pop()

    def pause(self, agent_id: int, caller: str) -> None:
        self._require_owner(agent_id, caller)
        self._transition(agent_id, AgentStatus.PAUSED, allowed_from=(AgentStatus.ACTIVE,))

    def unpause(self, agent_id: int, caller: str) -> None:
        self._require_owner(agent_id, caller)
        self._transition(agent_id, AgentStatus.ACTIVE, allowed_from=(AgentStatus.PAUSED,))

    def emergency_pause(self, agent_id: int, caller: str) -> None:
        if self._admin is None or caller.lower() != self._admin:
            raise UnauthorizedError(f"{caller} is not the admin")
        self._transition(
            agent_id, AgentStatus.PAUSED, allowed_from=(AgentStatus.ACTIVE, AgentStatus.INACTIVE),
        )

    def liquidate(self, agent_id: int, caller: str) -> None:
        self._require_owner(agent_id, caller)
        self._transition(
            agent_id,
            AgentStatus.LIQUIDATED,
            allowed_from=(AgentStatus.ACTIVE, AgentStatus.PAUSED, AgentStatus.INACTIVE),
        )

    # ---------- AgentRepository ----------

    async def list_agent_ids(self) -> List[int]:
        return sorted(self._agents)

    async def get_agent(self, agent_id: int) -> AgentEntity:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def get_rules(self, agent_id: int) -> List[RuleEntity]:
        if agent_id not in self._agents:
            raise AgentNotFoundError(agent_id)
        return list(self._rules[agent_id])

    async def get_agent_balance(self, agent_id: int, token: str) -> int:
        if self._ledger_store is None:
            return 0
        return await self._ledger_store.get_balance(agent_id, token.lower())

    async def can_execute(self, agent_id: int, rule_index: int, now: Optional[int] = None) -> bool:
        ok, _ = self._gate(agent_id, rule_index, self._clock() if now is None else now)
        return ok

    async def simulate_execute(self, agent_id: int, rule_index: int, payload: bytes) -> None:
        ok, reason = self._gate(agent_id, rule_index, self._clock())
        if not ok:
            raise GateRejectedError(reason)
        self._check_payload(agent_id, payload)

    async def execute(self, agent_id: int, rule_index: int, payload: bytes) -> SettlementReceipt:
        async with self._exec_lock:
            now = self._clock()
            ok, reason = self._gate(agent_id, rule_index, now)
            if not ok:
                raise GateRejectedError(reason)
            self._check_payload(agent_id, payload)

            if self._settler is not None:
                receipt = await self._settler(agent_id, rule_index, payload)
            else:
                receipt = SettlementReceipt(success=True, reference="0x" + uuid.uuid4().hex)
            if not receipt.success:
                raise OnChainSubmissionError("settlement reverted")

            rules = self._rules[agent_id]
            rules[rule_index] = rules[rule_index].model_copy(update={"last_executed": now})
            self._agents[agent_id] = self._agents[agent_id].model_copy(update={"last_activity": now})
            self._logger.info(
                "Rule executed agent=%s rule=%s at=%s ref=%s", agent_id, rule_index, now, receipt.reference,
            )
            return receipt

    async def commit_off_chain(self, agent_id: int, rule_index: int, executed_at: int, reference: str) -> None:
        async with self._exec_lock:
            rules = self._rules.get(agent_id, [])
            if not 0 <= rule_index < len(rules):
                self._logger.warning(
                    "Off-chain commit for missing rule agent=%s rule=%s ref=%s", agent_id, rule_index, reference,
                )
                return
            rule = rules[rule_index]
            rules[rule_index] = rule.model_copy(update={"last_executed": max(rule.last_executed, int(executed_at))})
            self._agents[agent_id] = self._agents[agent_id].model_copy(update={"last_activity": int(executed_at)})
            self._logger.info(
                "Rule executed off-chain agent=%s rule=%s at=%s ref=%s", agent_id, rule_index, executed_at, reference,
            )

    # ---------- helpers ----------

    def _gate(self, agent_id: int, rule_index: int, now: int) -> Tuple[bool, Optional[str]]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False, "agent not found"
        rules = self._rules.get(agent_id, [])
        rule = rules[rule_index] if 0 <= rule_index < len(rules) else None
        return readiness(
            agent_active=agent.is_active,
            rule_exists=rule is not None,
            rule_enabled=bool(rule and rule.enabled),
            last_executed=rule.last_executed if rule else 0,
            cooldown=rule.cooldown if rule else 0,
            now_ts=now,
        )

    @staticmethod
    def _check_payload(agent_id: int, payload: bytes) -> None:
        try:
            decoded = decode(EXECUTION_PAYLOAD_TYPES, payload)
        except Exception as exc:
            raise OnChainSubmissionError(f"malformed execution payload: {exc}") from exc
        if int(decoded[0]) != agent_id:
            raise OnChainSubmissionError(f"payload agent {decoded[0]} != {agent_id}")

    def _check_cooldown(self, cooldown: int) -> None:
        if cooldown < self._min_cooldown:
            raise ValueError(f"cooldown {cooldown}s below minimum {self._min_cooldown}s")

    def _require_owner(self, agent_id: int, caller: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if agent.owner.lower() != caller.lower():
            raise UnauthorizedError(f"{caller} does not own agent {agent_id}")

    def _rules_or_raise(self, agent_id: int, rule_index: int) -> List[RuleEntity]:
        rules = self._rules[agent_id]
        if not 0 <= rule_index < len(rules):
            raise IndexError(f"rule index {rule_index} out of range for agent {agent_id}")
        return rules

    def _transition(self, agent_id: int, target: AgentStatus, allowed_from: Tuple[AgentStatus, ...]) -> None:
        agent = self._agents[agent_id]
        if agent.status not in allowed_from:
            raise ValueError(f"agent {agent_id} cannot move {agent.status.name} -> {target.name}")
        self._agents[agent_id] = agent.model_copy(
            update={"status": target, "last_activity": self._clock()},
        )
        self._logger.info("Agent %s status %s -> %s", agent_id, agent.status.name, target.name)
