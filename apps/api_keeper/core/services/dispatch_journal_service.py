from typing import Dict, Iterable, Optional, Tuple

from ..domain.entities.agent_entity import RuleEntity
from ..domain.entities.execution_entity import ExecutionAttemptEntity


class DispatchJournalService:
    """
    In-process record of when each (agent, rule) was last dispatched.

    A dispatch claims the rule's cooldown window *before* settlement is known,
    the same optimistic behavior as the contract's `lastExecuted` write. This
    also covers off-chain settlements, which never touch the contract. The
    evaluation loop sees max(rule.last_executed, journal) as the rule's
    effective last execution.

    With `release_on_failure=True` a failed attempt gives the window back.
    """

    def __init__(self, release_on_failure: bool = False):
        self._release_on_failure = release_on_failure
        self._claims: Dict[Tuple[int, int], int] = {}
        self._previous: Dict[Tuple[int, int], Optional[int]] = {}

    @property
    def release_on_failure(self) -> bool:
        return self._release_on_failure

    def claim(self, agent_id: int, rule_index: int, now: int) -> None:
        key = (agent_id, rule_index)
        self._previous[key] = self._claims.get(key)
        self._claims[key] = int(now)

    def settle(self, agent_id: int, rule_index: int, success: bool) -> None:
        key = (agent_id, rule_index)
        previous = self._previous.pop(key, None)
        if success or not self._release_on_failure:
            return
        if previous is None:
            self._claims.pop(key, None)
        else:
            self._claims[key] = previous

    def last_dispatched(self, agent_id: int, rule_index: int) -> int:
        return self._claims.get((agent_id, rule_index), 0)

    def effective(self, agent_id: int, rule_index: int, rule: RuleEntity) -> RuleEntity:
        """
        The rule as the engine should see it.
        """
        claimed = self.last_dispatched(agent_id, rule_index)
        if claimed <= rule.last_executed:
            return rule
        return rule.model_copy(update={"last_executed": claimed})

    def forget_agent(self, agent_id: int) -> None:
        """Drop claims after the agent's rule list changed shape."""
        for key in [k for k in self._claims if k[0] == agent_id]:
            self._claims.pop(key, None)

    def seed(self, attempts: Iterable[ExecutionAttemptEntity]) -> int:
        """
        Rebuild claims from recorded history after a restart.
        """
        n = 0
        for att in attempts:
            if not att.success and self._release_on_failure:
                continue
            key = (att.agent_id, att.rule_index)
            if att.timestamp > self._claims.get(key, 0):
                self._claims[key] = att.timestamp
                n += 1
        return n
