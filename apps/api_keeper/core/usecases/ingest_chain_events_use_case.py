import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ...adapters.base import ChainEventSource
from ..domain.entities.chain_event_entity import ChainEvent
from ..domain.entities.signal_entity import SignalEntity
from ..repositories.processing_offset_repository import ProcessingOffsetRepository
from ..repositories.signal_repository import SignalRepository


class IngestChainEventsUseCase:
    """
    Block-window poller for StrategyAgent and hook logs.

    Watermark rules:
    - no watermark yet: start at the current head (history is not replayed)
    - otherwise fetch [watermark + 1, min(head, watermark + block_range)]
    - events are handled in (block, log_index) order
    - the watermark moves only after the whole page was handled; a failed
      page is fetched again on the next poll

    Delivery is at-least-once: `save_signal` is idempotent on duplicates.
    """

    def __init__(
        self,
        source: ChainEventSource,
        signal_repo: SignalRepository,
        offset_repo: ProcessingOffsetRepository,
        stream: str,
        block_range: int = 100,
        on_signal: Optional[Callable[[SignalEntity], Awaitable[None]]] = None,
        on_agent_event: Optional[Callable[[ChainEvent], Awaitable[None]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if block_range < 1:
            raise ValueError("block_range must be >= 1")
        self._source = source
        self._signals = signal_repo
        self._offsets = offset_repo
        self._stream = stream
        self._block_range = block_range
        self._on_signal = on_signal
        self._on_agent_event = on_agent_event
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    async def poll_once(self) -> Dict[str, int]:
        """
        Handle at most one block window.
        :return: {"from_block", "to_block", "events", "signals"}; from/to are -1
            when there was nothing to fetch.
        """
        head = await self._source.block_number()
        watermark = await self._offsets.get_last_block(self._stream)

        if watermark is None:
            await self._offsets.set_last_block(self._stream, head)
            self._logger.info("No watermark for %s, starting at head block %s", self._stream, head)
            return {"from_block": -1, "to_block": -1, "events": 0, "signals": 0}

        from_block = watermark + 1
        if from_block > head:
            return {"from_block": -1, "to_block": -1, "events": 0, "signals": 0}
        to_block = min(head, watermark + self._block_range)

        events = await self._source.get_events(from_block, to_block)
        events.sort(key=ChainEvent.sort_key)

        new_signals = 0
        for event in events:
            if await self.handle_event(event):
                new_signals += 1

        await self._offsets.set_last_block(self._stream, to_block)
        if events:
            self._logger.info(
                "Ingested blocks %s-%s: %s events, %s new signals", from_block, to_block, len(events), new_signals,
            )
        return {"from_block": from_block, "to_block": to_block, "events": len(events), "signals": new_signals}

    async def handle_event(self, event: ChainEvent) -> bool:
        """
        Handle one decoded log, from the poller or the push channel.
        Returns True when it became its pool's latest signal.
        """
        if event.name == "SignalEmitted":
            signal = signal_from_event(event)
            is_new_latest = await self._signals.save_signal(signal)
            self._logger.info(
                "Signal pool=%s type=%s magnitude=%s block=%s",
                signal.pool_id, signal.signal_type, signal.magnitude, signal.block_number,
            )
            if is_new_latest and self._on_signal is not None:
                await self._on_signal(signal)
            return is_new_latest

        self._logger.info("%s %s at block %s", event.name, event.args, event.block_number)
        if self._on_agent_event is not None:
            await self._on_agent_event(event)
        return False

    async def catch_up(self, max_pages: int = 1000) -> List[Dict[str, int]]:
        """Poll until the watermark reaches the head (or `max_pages`)."""
        pages = []
        for _ in range(max_pages):
            page = await self.poll_once()
            pages.append(page)
            if page["from_block"] == -1:
                break
            head = await self._source.block_number()
            if page["to_block"] >= head:
                break
        return pages


def signal_from_event(event: ChainEvent) -> SignalEntity:
    args = event.args
    return SignalEntity(
        pool_id=str(args["poolId"]).lower(),
        signal_type=int(args["signalType"]),
        magnitude=int(args["magnitude"]),
        timestamp=int(args["timestamp"]),
        block_number=event.block_number,
        log_index=event.log_index,
        tx_hash=event.tx_hash,
    )
