import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ...adapters.base import SettlementProvider
from ..domain.entities.agent_entity import AgentEntity
from ..domain.entities.chain_event_entity import ChainEvent
from ..domain.entities.execution_entity import ExecutionResult, PendingSettlement, Quote, SettlementReceipt
from ..domain.enums.agent_enums import ExecutionPath
from ..domain.exceptions import (
    GateRejectedError,
    InsufficientBalanceError,
    InvariantViolationError,
    KeeperError,
    OnChainSubmissionError,
    QuoteUnavailableError,
    SessionError,
    StaleQuoteError,
    TransactionPendingError,
    public_message_for,
)
from ..domain.policies import FractionSizingPolicy, SlippagePolicy
from .agent_ledger_service import AgentLedgerService, LockedAgentLedger
from .dispatch_journal_service import DispatchJournalService


class DualPathExecutorService:
    """
    Executes one ready rule: quote -> validate -> off-chain attempt ->
    on-chain fallback with bounded retries -> ledger update.

    Rules:
      - The whole sequence runs inside the agent's ledger exclusion scope.
      - Off-chain has no retry: any failure falls through to on-chain at once.
      - On-chain: up to `max_retries` attempts, each simulated before it is
        submitted, linear backoff `retry_delay_sec * attempt` between them.
      - Invariant violations and gate rejections are terminal, never retried,
        and apply nothing to the ledger.
      - A broadcast tx that never confirmed is not sent again; it stays
        pending until `reconcile` sees its AgentExecuted log.
      - No deduplication here; readiness is the cooldown gate's job.
    """

    def __init__(
        self,
        provider: SettlementProvider,
        ledger: AgentLedgerService,
        journal: Optional[DispatchJournalService] = None,
        sizing: Optional[FractionSizingPolicy] = None,
        slippage: Optional[SlippagePolicy] = None,
        max_retries: int = 3,
        retry_delay_sec: float = 3.0,
        quote_timeout_sec: float = 10.0,
        session_timeout_sec: float = 5.0,
        onchain_timeout_sec: float = 120.0,
        clock: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._provider = provider
        self._ledger = ledger
        self._journal = journal
        self._sizing = sizing or FractionSizingPolicy()
        self._slippage = slippage or SlippagePolicy()
        self._max_retries = max_retries
        self._retry_delay = retry_delay_sec
        self._quote_timeout = quote_timeout_sec
        self._session_timeout = session_timeout_sec
        self._onchain_timeout = onchain_timeout_sec
        self._clock = clock or (lambda: int(time.time()))
        self._sleep = sleep
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._pending: Dict[str, PendingSettlement] = {}

    async def execute(self, agent_id: int, rule_index: int, agent: AgentEntity) -> ExecutionResult:
        dispatched_at = self._clock()
        if self._journal is not None:
            self._journal.claim(agent_id, rule_index, dispatched_at)

        default_path = ExecutionPath.OFF_CHAIN if self._provider.off_chain_available else ExecutionPath.ON_CHAIN
        unconfirmed = False
        try:
            async with self._ledger.exclusive(agent_id) as view:
                result = await self._execute_locked(view, agent_id, rule_index, agent, dispatched_at)
        except TransactionPendingError as exc:
            self._logger.error(
                "Settlement tx %s unconfirmed agent=%s rule=%s, ledger waits for AgentExecuted: %s",
                exc.tx_hash, agent_id, rule_index, exc,
            )
            unconfirmed = True
            result = self._failed(agent_id, rule_index, ExecutionPath.ON_CHAIN, exc)
        except InvariantViolationError as exc:
            self._logger.error(
                "Invariant violation agent=%s rule=%s: %s", agent_id, rule_index, exc,
            )
            result = self._failed(agent_id, rule_index, default_path, exc)
        except GateRejectedError as exc:
            self._logger.info("Gate rejected at commit agent=%s rule=%s: %s", agent_id, rule_index, exc.reason)
            result = self._failed(agent_id, rule_index, ExecutionPath.ON_CHAIN, exc)
        except KeeperError as exc:
            self._logger.warning("Execution failed agent=%s rule=%s: %s", agent_id, rule_index, exc)
            result = self._failed(agent_id, rule_index, default_path, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("Unexpected execution error agent=%s rule=%s: %s", agent_id, rule_index, exc)
            result = self._failed(agent_id, rule_index, default_path, exc)

        if self._journal is not None:
            self._journal.settle(agent_id, rule_index, result.success or unconfirmed)
        return result

    @property
    def pending_settlements(self) -> Dict[str, PendingSettlement]:
        return dict(self._pending)

    async def reconcile(self, event: ChainEvent) -> bool:
        """
        Apply a late-confirmed settlement once its AgentExecuted log is seen.
        Returns True when the event closed a pending settlement.
        """
        if event.name != "AgentExecuted" or not event.tx_hash:
            return False
        pending = self._pending.pop(event.tx_hash.lower(), None)
        if pending is None:
            return False
        amount_in = int(event.args.get("amountIn", pending.amount_in))
        amount_out = int(event.args.get("amountOut", pending.amount_out))
        async with self._ledger.exclusive(pending.agent_id) as view:
            await view.apply_swap_settlement(pending.token_in, amount_in, pending.token_out, amount_out)
        self._logger.info(
            "Reconciled late settlement tx=%s agent=%s in=%s out=%s",
            event.tx_hash, pending.agent_id, amount_in, amount_out,
        )
        return True

    # ---------- main sequence ----------

    async def _execute_locked(
        self,
        view: LockedAgentLedger,
        agent_id: int,
        rule_index: int,
        agent: AgentEntity,
        dispatched_at: int,
    ) -> ExecutionResult:
        token_in = agent.pool_key.currency0
        token_out = agent.pool_key.currency1

        balance_in = await view.balance(token_in)
        amount_in = self._sizing.amount_in(balance_in)
        if amount_in <= 0:
            raise InsufficientBalanceError(agent_id, token_in, max(amount_in, 1), balance_in)

        self._logger.info(
            "Executing agent=%s rule=%s amount_in=%s %s->%s",
            agent_id, rule_index, amount_in, token_in, token_out,
        )

        # 1) quote
        try:
            quote = await asyncio.wait_for(
                self._provider.quote(token_in, token_out, amount_in, self._slippage.slippage_bps),
                timeout=self._quote_timeout,
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise QuoteUnavailableError("quote timed out") from exc

        # 2) freshness
        try:
            fresh = await asyncio.wait_for(self._provider.validate(quote), timeout=self._quote_timeout)
        except (asyncio.TimeoutError, TimeoutError):
            fresh = False
        if not fresh:
            raise StaleQuoteError("re-quote deviated beyond tolerance")

        # precondition for any settlement
        available = await view.balance(token_in)
        if quote.amount_in > available:
            raise InsufficientBalanceError(agent_id, token_in, quote.amount_in, available)

        # 3) off-chain
        path = ExecutionPath.OFF_CHAIN
        receipt: Optional[SettlementReceipt] = None
        attempts = 0
        if self._provider.off_chain_available:
            receipt = await self._try_off_chain(agent, quote)
            if receipt is not None:
                await self._commit_off_chain(agent_id, rule_index, dispatched_at, receipt)

        # 4) on-chain fallback
        if receipt is None:
            path = ExecutionPath.ON_CHAIN
            min_out = self._slippage.min_amount_out(quote.amount_out)
            try:
                receipt, attempts, last_err = await self._on_chain_with_retry(agent_id, rule_index, quote, min_out)
            except TransactionPendingError as exc:
                if exc.tx_hash:
                    self._pending[exc.tx_hash.lower()] = PendingSettlement(
                        agent_id=agent_id, token_in=token_in, token_out=token_out,
                        amount_in=quote.amount_in, amount_out=quote.amount_out,
                    )
                raise
            if receipt is None:
                self._logger.error(
                    "On-chain settlement exhausted %s attempts agent=%s rule=%s: %s",
                    attempts, agent_id, rule_index, last_err,
                )
                return ExecutionResult(
                    agent_id=agent_id,
                    rule_index=rule_index,
                    success=False,
                    path=path,
                    amount_in=quote.amount_in,
                    error=f"On-chain settlement failed after {attempts} attempts: "
                          f"{public_message_for(last_err) if last_err else 'unknown error'}",
                    attempts=attempts,
                )

        # 5) ledger
        amount_out = receipt.amount_out if receipt.amount_out is not None else quote.amount_out
        await view.apply_swap_settlement(token_in, quote.amount_in, token_out, amount_out)

        self._logger.info(
            "Execution completed via %s agent=%s rule=%s in=%s out=%s ref=%s",
            path.value, agent_id, rule_index, quote.amount_in, amount_out, receipt.reference,
        )
        return ExecutionResult(
            agent_id=agent_id,
            rule_index=rule_index,
            success=True,
            path=path,
            amount_in=quote.amount_in,
            amount_out=amount_out,
            reference=receipt.reference,
            attempts=attempts,
        )

    async def _try_off_chain(self, agent: AgentEntity, quote: Quote) -> Optional[SettlementReceipt]:
        """
        Single attempt. Returns None on any failure so the caller falls
        through to on-chain.
        """
        self._logger.info("Attempting off-chain settlement agent=%s", agent.agent_id)
        session = None
        try:
            session = await asyncio.wait_for(
                self._provider.open_session(agent, quote), timeout=self._session_timeout,
            )
            receipt = await asyncio.wait_for(
                self._provider.settle_off_chain(session, quote), timeout=self._session_timeout,
            )
            if not receipt.success:
                raise SessionError("counter-party rejected the state update")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning(
                "Off-chain settlement failed for agent=%s, falling back to on-chain: %s",
                agent.agent_id, exc or exc.__class__.__name__,
            )
            if session is not None:
                await self._close_quietly(session)
            return None

        # the update is co-signed at this point; a close failure does not undo it
        await self._close_quietly(session)
        return receipt

    async def _commit_off_chain(
        self, agent_id: int, rule_index: int, dispatched_at: int, receipt: SettlementReceipt,
    ) -> None:
        # the swap is already co-signed, so a commit failure must not undo the ledger update
        try:
            await self._provider.commit_off_chain(agent_id, rule_index, dispatched_at, receipt.reference or "")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error(
                "Off-chain settlement %s not committed at the substrate agent=%s rule=%s: %s",
                receipt.reference, agent_id, rule_index, exc,
            )

    async def _close_quietly(self, session) -> None:
        try:
            await asyncio.wait_for(self._provider.close_session(session), timeout=self._session_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("Failed to close session %s: %s", session.session_id, exc)

    async def _on_chain_with_retry(
        self,
        agent_id: int,
        rule_index: int,
        quote: Quote,
        min_amount_out: int,
    ) -> Tuple[Optional[SettlementReceipt], int, Optional[BaseException]]:
        last_err: Optional[BaseException] = None

        for attempt in range(1, self._max_retries + 1):
            try:
                self._logger.info(
                    "On-chain attempt %s/%s agent=%s rule=%s min_out=%s",
                    attempt, self._max_retries, agent_id, rule_index, min_amount_out,
                )
                await asyncio.wait_for(
                    self._provider.simulate_on_chain(agent_id, rule_index, quote, min_amount_out),
                    timeout=self._onchain_timeout,
                )
                try:
                    receipt = await asyncio.wait_for(
                        self._provider.settle_on_chain(agent_id, rule_index, quote, min_amount_out),
                        timeout=self._onchain_timeout,
                    )
                except (asyncio.TimeoutError, TimeoutError) as exc:
                    # the tx may already be out; sending again could settle twice
                    raise TransactionPendingError(None, "settlement attempt timed out after broadcast") from exc
                if not receipt.success:
                    raise OnChainSubmissionError("settlement reported failure")
                return receipt, attempt, None

            except (GateRejectedError, InvariantViolationError, TransactionPendingError):
                raise
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_err = exc
                self._logger.warning(
                    "On-chain attempt %s/%s failed agent=%s rule=%s: %s",
                    attempt, self._max_retries, agent_id, rule_index, exc or exc.__class__.__name__,
                )
                if attempt < self._max_retries:
                    await self._sleep(self._retry_delay * attempt)

        return None, self._max_retries, last_err

    @staticmethod
    def _failed(agent_id: int, rule_index: int, path: ExecutionPath, exc: BaseException) -> ExecutionResult:
        return ExecutionResult(
            agent_id=agent_id,
            rule_index=rule_index,
            success=False,
            path=path,
            error=public_message_for(exc),
        )
