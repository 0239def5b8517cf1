import contextlib
import logging
import time
from typing import Optional

from eth_account import Account
from motor.motor_asyncio import AsyncIOMotorClient

from ..adapters.base import Quoter
from ..adapters.external.chain.agent_repository_chain import AgentRepositoryChain
from ..adapters.external.chain.chain_client import ChainClient
from ..adapters.external.chain.hook_event_source import HookEventSource
from ..adapters.external.chain.log_subscription_client import LogSubscriptionClient
from ..adapters.external.chain.tx_service import AsyncTxService
from ..adapters.external.clearnode.clearnode_session_client import ClearNodeSessionClient
from ..adapters.external.database.execution_repository_mongodb import ExecutionRepositoryMongoDB
from ..adapters.external.database.ledger_repository_mongodb import LedgerRepositoryMongoDB
from ..adapters.external.database.processing_offset_repository_mongodb import ProcessingOffsetRepositoryMongoDB
from ..adapters.external.database.signal_repository_mongodb import SignalRepositoryMongoDB
from ..adapters.external.memory.agent_repository_memory import AgentRepositoryMemory
from ..adapters.external.memory.execution_repository_memory import ExecutionRepositoryMemory
from ..adapters.external.memory.ledger_repository_memory import LedgerRepositoryMemory
from ..adapters.external.memory.processing_offset_repository_memory import ProcessingOffsetRepositoryMemory
from ..adapters.external.memory.signal_repository_memory import SignalRepositoryMemory
from ..adapters.external.quote.fixed_fee_quoter import FixedFeeQuoter
from ..adapters.external.quote.http_quoter import HttpQuoter
from ..adapters.external.settlement.keeper_settlement_provider import KeeperSettlementProvider
from ..config import Settings, get_settings
from ..core.domain.entities.chain_event_entity import ChainEvent
from ..core.domain.entities.signal_entity import SignalEntity
from ..core.domain.enums.agent_enums import TriggerSource
from ..core.domain.policies import FractionSizingPolicy, QuoteFreshnessPolicy, SlippagePolicy
from ..core.repositories.agent_repository import AgentRepository
from ..core.repositories.execution_repository import ExecutionRepository
from ..core.repositories.signal_repository import SignalRepository
from ..core.services.agent_ledger_service import AgentLedgerService
from ..core.services.dispatch_journal_service import DispatchJournalService
from ..core.services.dual_path_executor_service import DualPathExecutorService
from ..core.usecases.evaluate_agents_use_case import EvaluateAgentsUseCase
from ..core.usecases.ingest_chain_events_use_case import IngestChainEventsUseCase
from .evaluation_loop import EvaluationLoop, periodic


class KeeperSupervisor:
    """
    High-level supervisor for the api-keeper process.

    Responsibilities:
    - Pick storage (memory | mongo) and ensure indexes.
    - Connect to the chain when configured (unreachable chain is fatal).
    - Wire repositories, services, and use cases.
    - Start the evaluation loop and its producers (timer, event poller,
      log subscription); admin pushes go through `loop.notify`.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._logger = logging.getLogger(self.__class__.__name__)
        self._settings = settings

        self._mongo_client: Optional[AsyncIOMotorClient] = None
        self._db = None
        self._chain: Optional[ChainClient] = None
        self._subscription: Optional[LogSubscriptionClient] = None
        self._provider: Optional[KeeperSettlementProvider] = None

        self.settings: Optional[Settings] = None
        self.agents: Optional[AgentRepository] = None
        self.signals: Optional[SignalRepository] = None
        self.recorder: Optional[ExecutionRepository] = None
        self.ledger: Optional[AgentLedgerService] = None
        self.journal: Optional[DispatchJournalService] = None
        self.evaluate_uc: Optional[EvaluateAgentsUseCase] = None
        self.ingest_uc: Optional[IngestChainEventsUseCase] = None
        self.loop: Optional[EvaluationLoop] = None
        self.executor: Optional[DualPathExecutorService] = None
        self.keeper_address: Optional[str] = None
        self.started_at: Optional[float] = None

    @property
    def db(self):
        """Expose the AsyncIOMotorDatabase instance after start() (None on memory storage)."""
        return self._db

    @property
    def off_chain_available(self) -> bool:
        return bool(self._provider and self._provider.off_chain_available)

    async def start(self):
        s = self._settings or get_settings()
        self.settings = s

        # --- storage
        if s.STORAGE_BACKEND == "mongo":
            self._mongo_client = AsyncIOMotorClient(s.MONGODB_URI)
            self._db = self._mongo_client[s.MONGODB_DB_NAME]
            ledger_store = LedgerRepositoryMongoDB(self._db)
            self.signals = SignalRepositoryMongoDB(self._db)
            self.recorder = ExecutionRepositoryMongoDB(self._db, limit=s.EXECUTION_HISTORY_LIMIT)
            offset_repo = ProcessingOffsetRepositoryMongoDB(self._db)
        else:
            ledger_store = LedgerRepositoryMemory()
            self.signals = SignalRepositoryMemory()
            self.recorder = ExecutionRepositoryMemory(limit=s.EXECUTION_HISTORY_LIMIT)
            offset_repo = ProcessingOffsetRepositoryMemory()

        for repo in (ledger_store, self.signals, self.recorder, offset_repo):
            await repo.ensure_indexes()

        # --- agent substrate
        event_source: Optional[HookEventSource] = None
        if s.chain_enabled:
            self._chain = ChainClient(s.rpc_urls, s.CHAIN_ID, read_timeout_sec=s.READ_TIMEOUT_SEC)
            w3 = await self._chain.connect()
            tx_service = AsyncTxService(w3, s.KEEPER_PRIVATE_KEY, confirm_timeout_sec=s.ONCHAIN_CONFIRM_TIMEOUT_SEC)
            self.agents = AgentRepositoryChain(w3, s.STRATEGY_AGENT_ADDRESS, tx_service=tx_service)
            event_source = HookEventSource(self._chain, s.STRATEGY_AGENT_ADDRESS, s.HOOK_ADDRESS)
            self.keeper_address = tx_service.sender_address()
        else:
            self.agents = AgentRepositoryMemory(ledger_store=ledger_store)
            if s.KEEPER_PRIVATE_KEY:
                self.keeper_address = Account.from_key(s.KEEPER_PRIVATE_KEY).address
            self._logger.warning("RPC_URL not set: using the in-memory agent substrate")

        # --- settlement provider
        quoter: Quoter = HttpQuoter(s.QUOTE_API_URL, timeout_sec=s.QUOTE_TIMEOUT_SEC) if s.QUOTE_API_URL else FixedFeeQuoter()
        session_client = None
        if s.CLEARNODE_ENABLED:
            session_client = ClearNodeSessionClient(
                s.CLEARNODE_URL, s.KEEPER_PRIVATE_KEY, request_timeout_sec=s.SESSION_TIMEOUT_SEC,
            )
            try:
                await session_client.connect()
            except Exception as exc:
                self._logger.warning("ClearNode unavailable, on-chain path only: %s", exc)
        self._provider = KeeperSettlementProvider(
            quoter=quoter,
            agents=self.agents,
            session_client=session_client,
            freshness=QuoteFreshnessPolicy(tolerance_bps=s.QUOTE_TOLERANCE_BPS),
            keeper_address=self.keeper_address,
        )

        # --- core services
        self.ledger = AgentLedgerService(ledger_store)
        self.journal = DispatchJournalService(release_on_failure=s.RELEASE_COOLDOWN_ON_FAILURE)
        history = await self.recorder.query(limit=s.EXECUTION_HISTORY_LIMIT)
        seeded = self.journal.seed(history)
        self._logger.info("Dispatch journal seeded with %s entries from history", seeded)

        self.executor = DualPathExecutorService(
            provider=self._provider,
            ledger=self.ledger,
            journal=self.journal,
            sizing=FractionSizingPolicy(fraction_bps=s.SWAP_FRACTION_BPS),
            slippage=SlippagePolicy(slippage_bps=s.SLIPPAGE_BPS),
            max_retries=s.MAX_RETRIES,
            retry_delay_sec=s.RETRY_DELAY_SEC,
            quote_timeout_sec=s.QUOTE_TIMEOUT_SEC,
            session_timeout_sec=s.SESSION_TIMEOUT_SEC,
            # build + broadcast + every receipt poll fit inside one attempt
            onchain_timeout_sec=s.ONCHAIN_CONFIRM_TIMEOUT_SEC * 2,
        )
        self.evaluate_uc = EvaluateAgentsUseCase(
            agents=self.agents,
            signal_repo=self.signals,
            executor=self.executor,
            recorder=self.recorder,
            journal=self.journal,
            signal_source=event_source,
            max_concurrent_agents=s.MAX_CONCURRENT_AGENTS,
        )
        self.loop = EvaluationLoop(self.evaluate_uc.run_pass, interval_sec=s.POLL_INTERVAL_SEC)

        # --- event ingestion (poll + optional push)
        if event_source is not None:
            self.ingest_uc = IngestChainEventsUseCase(
                source=event_source,
                signal_repo=self.signals,
                offset_repo=offset_repo,
                stream=f"keeper_events_{s.CHAIN_ID}",
                block_range=s.EVENT_BLOCK_RANGE,
                on_signal=self._on_signal,
                on_agent_event=self._on_agent_event,
            )
            self.loop.add_producer(
                periodic(self.ingest_uc.poll_once, s.EVENT_POLL_INTERVAL_SEC, self._logger, "event poller"),
                name="event-poller",
            )
            if s.SIGNAL_WS_URL:
                self._subscription = LogSubscriptionClient(
                    s.SIGNAL_WS_URL,
                    [s.STRATEGY_AGENT_ADDRESS, s.HOOK_ADDRESS],
                    decoder=event_source,
                )
                await self._subscription.subscribe(self.ingest_uc.handle_event)

        await self.loop.start()
        self.started_at = time.time()
        self._logger.info(
            "Keeper started: keeper=%s storage=%s chain=%s off_chain=%s",
            self.keeper_address, s.STORAGE_BACKEND, s.chain_enabled, self.off_chain_available,
        )

    async def _on_signal(self, signal: SignalEntity) -> None:
        if self.loop is not None:
            self.loop.notify(TriggerSource.SIGNAL)

    async def _on_agent_event(self, event: ChainEvent) -> None:
        if self.executor is not None:
            await self.executor.reconcile(event)

    async def push_signal(self, signal: SignalEntity) -> bool:
        """
        Store a pushed signal and wake the loop when it is the pool's newest.
        """
        is_latest = await self.signals.save_signal(signal)
        if is_latest:
            self.loop.notify(TriggerSource.SIGNAL)
        return is_latest

    async def stop(self):
        """
        Gracefully stop resources.
        """
        if self.loop:
            with contextlib.suppress(Exception):
                await self.loop.stop()

        if self._subscription:
            await self._subscription.close()

        if self._provider:
            with contextlib.suppress(Exception):
                await self._provider.aclose()

        if self._chain:
            with contextlib.suppress(Exception):
                await self._chain.aclose()

        if self._mongo_client:
            self._mongo_client.close()
