import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ...adapters.base import ChainEventSource
from ..domain.entities.agent_entity import AgentEntity, RuleEntity
from ..domain.entities.signal_entity import SignalEntity
from ..domain.enums.agent_enums import TriggerSource
from ..repositories.agent_repository import AgentRepository
from ..repositories.execution_repository import ExecutionRepository
from ..repositories.signal_repository import SignalRepository
from ..services.dispatch_journal_service import DispatchJournalService
from ..services.dual_path_executor_service import DualPathExecutorService
from ..services.rule_engine_service import RuleEngineService


class EvaluateAgentsUseCase:
    """
    One evaluation pass over every agent:

    1) list agent ids
    2) per agent (bounded parallelism across agents):
       - skip unless ACTIVE
       - for each enabled rule, in stored order: run the rule engine against
         the rule as the dispatch journal sees it and the pool's latest signal
       - for each ready rule, sequentially: cross-check the substrate gate,
         re-read the slot, dispatch to the executor, record the outcome
    3) per-agent failures are logged and skipped; the pass always completes
    """

    def __init__(
        self,
        agents: AgentRepository,
        signal_repo: SignalRepository,
        executor: DualPathExecutorService,
        recorder: ExecutionRepository,
        journal: Optional[DispatchJournalService] = None,
        rule_engine: Optional[RuleEngineService] = None,
        signal_source: Optional[ChainEventSource] = None,
        max_concurrent_agents: int = 8,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._agents = agents
        self._signals = signal_repo
        self._executor = executor
        self._recorder = recorder
        self._journal = journal or DispatchJournalService()
        self._engine = rule_engine or RuleEngineService()
        self._signal_source = signal_source
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_agents))
        self._clock = clock or (lambda: int(time.time()))
        self._logger = logger or logging.getLogger(self.__class__.__name__)

        self._agent_status: Dict[int, Dict[str, Any]] = {}
        self._pass_lock = asyncio.Lock()
        self.last_pass_at: Optional[int] = None

    @property
    def agent_status(self) -> Dict[int, Dict[str, Any]]:
        """agent_id -> {last_evaluation, total_executions, is_active}"""
        return self._agent_status

    async def run_pass(self, source: TriggerSource = TriggerSource.TIMER) -> Dict[str, int]:
        async with self._pass_lock:
            started = self._clock()
            agent_ids = await self._agents.list_agent_ids()
            self._logger.info("Evaluation pass (%s) over %s agents", source.value, len(agent_ids))

            results = await asyncio.gather(*(self._evaluate_agent_bounded(a) for a in agent_ids))

            summary = {
                "agents": len(agent_ids),
                "ready": sum(r["ready"] for r in results),
                "dispatched": sum(r["dispatched"] for r in results),
                "succeeded": sum(r["succeeded"] for r in results),
                "errors": sum(r["errors"] for r in results),
            }
            self.last_pass_at = started
            self._logger.info("Evaluation pass done: %s", summary)
            return summary

    async def _evaluate_agent_bounded(self, agent_id: int) -> Dict[str, int]:
        async with self._semaphore:
            counts = {"ready": 0, "dispatched": 0, "succeeded": 0, "errors": 0}
            try:
                await self._evaluate_agent(agent_id, counts)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                counts["errors"] += 1
                self._logger.exception("Agent %s evaluation failed: %s", agent_id, exc)
            return counts

    async def _evaluate_agent(self, agent_id: int, counts: Dict[str, int]) -> None:
        agent = await self._agents.get_agent(agent_id)
        now = self._clock()
        status = self._agent_status.setdefault(
            agent_id, {"last_evaluation": None, "total_executions": 0, "is_active": False},
        )
        status["last_evaluation"] = now
        status["is_active"] = agent.is_active

        if not agent.is_active:
            self._logger.debug("Agent %s skipped: status %s", agent_id, agent.status.name)
            return

        rules = await self._agents.get_rules(agent_id)
        signal = await self._latest_signal(agent)

        ready: List[tuple] = []
        for index, rule in enumerate(rules):
            if not rule.enabled:
                continue
            effective = self._journal.effective(agent_id, index, rule)
            decision = self._engine.evaluate(agent, effective, signal, now)
            if decision.should_execute:
                self._logger.info("Agent %s rule %s ready: %s", agent_id, index, decision.reason)
                ready.append((index, rule, decision.reason))
            else:
                self._logger.debug("Agent %s rule %s not ready: %s", agent_id, index, decision.reason)

        counts["ready"] += len(ready)
        for index, rule, reason in ready:
            if not await self._still_dispatchable(agent_id, index, rule):
                continue

            counts["dispatched"] += 1
            result = await self._executor.execute(agent_id, index, agent)
            await self._recorder.record(
                result.to_attempt(
                    self._clock(),
                    rule_type=int(rule.rule_type),
                    threshold=rule.threshold,
                    reason=reason,
                )
            )
            if result.success:
                counts["succeeded"] += 1
                status["total_executions"] += 1
                self._logger.info(
                    "Agent %s rule %s executed via %s out=%s",
                    agent_id, index, result.path.value, result.amount_out,
                )
            else:
                self._logger.warning(
                    "Agent %s rule %s failed via %s: %s", agent_id, index, result.path.value, result.error,
                )

            # a dispatch may move balances the next rule sizes from
            agent = await self._agents.get_agent(agent_id)
            if not agent.is_active:
                self._logger.info("Agent %s no longer active, remaining rules skipped", agent_id)
                break

    async def _still_dispatchable(self, agent_id: int, index: int, rule: RuleEntity) -> bool:
        if not await self._agents.can_execute(agent_id, index, self._clock()):
            self._logger.warning(
                "Gate divergence agent=%s rule=%s: engine ready but substrate canExecute=false; skipping",
                agent_id, index,
            )
            return False

        current = await self._agents.get_rules(agent_id)
        if index >= len(current) or current[index].fingerprint() != rule.fingerprint():
            self._logger.warning(
                "Rule slot agent=%s index=%s changed since evaluation; skipping dispatch", agent_id, index,
            )
            self._journal.forget_agent(agent_id)
            return False
        return True

    async def _latest_signal(self, agent: AgentEntity) -> Optional[SignalEntity]:
        pool_id = agent.pool_key.pool_id()
        stored = await self._signals.get_latest_signal(pool_id)
        if self._signal_source is None:
            return stored
        try:
            live = await self._signal_source.get_latest_signal(pool_id)
        except Exception as exc:
            self._logger.warning("getLatestSignal failed for pool %s: %s", pool_id, exc)
            return stored
        if live is not None and live.is_newer_than(stored):
            return live
        return stored
