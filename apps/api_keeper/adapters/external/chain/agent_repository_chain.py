import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

from ....core.domain.entities.agent_entity import AgentEntity, PoolKey, RuleEntity
from ....core.domain.entities.execution_entity import SettlementReceipt
from ....core.domain.enums.agent_enums import AgentStatus, RuleType
from ....core.domain.exceptions import (
    AgentNotFoundError,
    GateRejectedError,
    OnChainSubmissionError,
    TransactionRevertedError,
)
from ....core.domain.policies import cooldown_ok, cooldown_remaining
from ....core.repositories.agent_repository import AgentRepository
from .abis import STRATEGY_AGENT_ABI
from .tx_service import AsyncTxService
from .utils import to_hex32

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# revert strings of StrategyAgent.execute that mean "gate closed"
GATE_REVERT_MARKERS = ("cooldown", "not active", "disabled", "invalid rule", "cannot execute")


class AgentRepositoryChain(AgentRepository):
    """
    StrategyAgent contract as the agent/rule substrate.

    Agent ids are 1..totalAgents(). `can_execute` is the contract's own view,
    evaluated at the latest block; `now` is ignored there because the chain
    uses its block timestamp.

    The contract has no entry point for off-chain settlements, so those are
    kept in `_off_chain` and folded into every read and gate check.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        tx_service: Optional[AsyncTxService] = None,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._w3 = w3
        self._contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract_address), abi=STRATEGY_AGENT_ABI)
        self._tx = tx_service
        self._clock = clock or (lambda: int(time.time()))
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._off_chain: Dict[Tuple[int, int], int] = {}

    @property
    def contract(self):
        return self._contract

    async def list_agent_ids(self) -> List[int]:
        total = int(await self._contract.functions.totalAgents().call())
        return list(range(1, total + 1))

    async def get_agent(self, agent_id: int) -> AgentEntity:
        raw = await self._contract.functions.getAgent(agent_id).call()
        owner, ens_name, pool_key, status, deposited, created_at, last_activity = raw
        if owner == ZERO_ADDRESS:
            raise AgentNotFoundError(agent_id)
        c0, c1, fee, tick_spacing, hooks = pool_key
        return AgentEntity(
            agent_id=agent_id,
            owner=owner,
            pool_key=PoolKey(currency0=c0, currency1=c1, fee=fee, tick_spacing=tick_spacing, hooks=hooks),
            status=AgentStatus(int(status)),
            deposited_amount=int(deposited),
            created_at=int(created_at),
            last_activity=int(last_activity),
            name=ens_name or None,
        )

    async def get_rules(self, agent_id: int) -> List[RuleEntity]:
        raw = await self._contract.functions.getRules(agent_id).call()
        rules: List[RuleEntity] = []
        for index, (rule_type, threshold, target_value, cooldown, last_executed, enabled) in enumerate(raw):
            rules.append(
                RuleEntity(
                    rule_type=RuleType(int(rule_type)),
                    threshold=int(threshold),
                    target_value=int(target_value),
                    cooldown=int(cooldown),
                    last_executed=max(int(last_executed), self._off_chain.get((agent_id, index), 0)),
                    enabled=bool(enabled),
                )
            )
        return rules

    async def get_agent_balance(self, agent_id: int, token: str) -> int:
        fn = self._contract.functions.getAgentBalance(agent_id, AsyncWeb3.to_checksum_address(token))
        return int(await fn.call())

    async def can_execute(self, agent_id: int, rule_index: int, now: Optional[int] = None) -> bool:
        if not await self._contract.functions.canExecute(agent_id, rule_index).call():
            return False
        return await self._off_chain_block(agent_id, rule_index, now) is None

    async def simulate_execute(self, agent_id: int, rule_index: int, payload: bytes) -> None:
        reason = await self._off_chain_block(agent_id, rule_index)
        if reason is not None:
            raise GateRejectedError(reason)
        fn = self._contract.functions.execute(agent_id, rule_index, payload)
        try:
            await self._require_tx().simulate(fn)
        except ContractLogicError as exc:
            raise self._classify_revert(exc) from exc

    async def execute(self, agent_id: int, rule_index: int, payload: bytes) -> SettlementReceipt:
        reason = await self._off_chain_block(agent_id, rule_index)
        if reason is not None:
            raise GateRejectedError(reason)
        fn = self._contract.functions.execute(agent_id, rule_index, payload)
        try:
            res = await self._require_tx().send(fn)
        except ContractLogicError as exc:
            raise self._classify_revert(exc) from exc
        except (TransactionRevertedError, OnChainSubmissionError):
            raise
        except Exception as exc:
            raise OnChainSubmissionError(f"broadcast failed: {exc}") from exc

        amount_out, execution_id = self._amount_out_from_receipt(agent_id, res["receipt"])
        self._logger.info(
            "execute mined agent=%s rule=%s tx=%s execution_id=%s amount_out=%s",
            agent_id, rule_index, res["tx_hash"], execution_id, amount_out,
        )
        return SettlementReceipt(
            success=True,
            reference=res["tx_hash"],
            amount_out=amount_out,
            gas_used=res.get("gas_used"),
        )

    async def commit_off_chain(self, agent_id: int, rule_index: int, executed_at: int, reference: str) -> None:
        key = (agent_id, rule_index)
        self._off_chain[key] = max(self._off_chain.get(key, 0), int(executed_at))
        self._logger.info(
            "Rule executed off-chain agent=%s rule=%s at=%s ref=%s", agent_id, rule_index, executed_at, reference,
        )

    # ---------- helpers ----------

    async def _off_chain_block(self, agent_id: int, rule_index: int, now: Optional[int] = None) -> Optional[str]:
        """Reason the off-chain record keeps the rule closed, or None."""
        if (agent_id, rule_index) not in self._off_chain:
            return None
        rules = await self.get_rules(agent_id)
        if not 0 <= rule_index < len(rules):
            return None
        rule = rules[rule_index]
        ts = self._clock() if now is None else now
        if cooldown_ok(rule.last_executed, rule.cooldown, ts):
            return None
        return f"cooldown remaining {cooldown_remaining(rule.last_executed, rule.cooldown, ts)}s"

    def _require_tx(self) -> AsyncTxService:
        if self._tx is None:
            raise OnChainSubmissionError("no signing key configured for on-chain execution")
        return self._tx

    def _amount_out_from_receipt(self, agent_id: int, receipt: dict):
        try:
            events = self._contract.events.AgentExecuted().process_receipt(receipt)
        except Exception as exc:
            self._logger.warning("could not decode AgentExecuted from receipt: %s", exc)
            return None, None
        for ev in events:
            if int(ev["args"]["agentId"]) == agent_id:
                return int(ev["args"]["amountOut"]), to_hex32(ev["args"]["executionId"])
        return None, None

    @staticmethod
    def _classify_revert(exc: ContractLogicError) -> Exception:
        reason = str(exc)
        lowered = reason.lower()
        if any(marker in lowered for marker in GATE_REVERT_MARKERS):
            return GateRejectedError(reason)
        return OnChainSubmissionError(f"execute would revert: {reason}")
