from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.entities.agent_entity import AgentEntity, RuleEntity
from ..domain.entities.execution_entity import SettlementReceipt


class AgentRepository(ABC):
    """
    Boundary with the agent/rule substrate (StrategyAgent contract, or a local
    store with identical semantics). Reads carry no business logic; `execute`
    re-validates the full gate at the point of commit.
    """

    @abstractmethod
    async def list_agent_ids(self) -> List[int]:
        """All known agent ids, in ascending order."""
        raise NotImplementedError

    @abstractmethod
    async def get_agent(self, agent_id: int) -> AgentEntity:
        """
        :raises AgentNotFoundError: unknown id.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_rules(self, agent_id: int) -> List[RuleEntity]:
        """Rules in stored order; index i is the rule's current slot."""
        raise NotImplementedError

    @abstractmethod
    async def get_agent_balance(self, agent_id: int, token: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def can_execute(self, agent_id: int, rule_index: int, now: Optional[int] = None) -> bool:
        """
        Active + index valid + enabled + cooldown elapsed. Must agree exactly
        with RuleEngineService's cooldown gate for identical inputs.
        """
        raise NotImplementedError

    @abstractmethod
    async def simulate_execute(self, agent_id: int, rule_index: int, payload: bytes) -> None:
        """
        Dry-run `execute` without committing anything.

        :raises GateRejectedError | OnChainSubmissionError: the commit would fail.
        """
        raise NotImplementedError

    @abstractmethod
    async def execute(self, agent_id: int, rule_index: int, payload: bytes) -> SettlementReceipt:
        """
        Commit rule.lastExecuted and trigger settlement of `payload`.

        :raises GateRejectedError: rule not ready at commit time.
        :raises OnChainSubmissionError: submission or confirmation failed.
        """
        raise NotImplementedError

    @abstractmethod
    async def commit_off_chain(self, agent_id: int, rule_index: int, executed_at: int, reference: str) -> None:
        """
        Record a rule execution that settled off-chain, closing its cooldown
        window exactly like `execute` does. `last_executed` never moves back.
        """
        raise NotImplementedError
