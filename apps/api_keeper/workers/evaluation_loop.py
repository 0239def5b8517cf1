import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, List, Optional

from ..core.domain.enums.agent_enums import TriggerSource


class EvaluationLoop:
    """
    Single-consumer trigger queue in front of the evaluation pass.

    Producers (timer, event poller, push subscription, admin endpoint) only
    enqueue a TriggerSource. The consumer drains whatever is queued, runs ONE
    pass for the whole batch and goes back to waiting, so a burst of signals
    never stacks up passes behind each other.
    """

    def __init__(
        self,
        run_pass: Callable[[TriggerSource], Awaitable[dict]],
        interval_sec: float = 15.0,
        queue_size: int = 100,
        logger: Optional[logging.Logger] = None,
    ):
        self._run_pass = run_pass
        self._interval = interval_sec
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._tasks: List[asyncio.Task] = []
        self.passes = 0

    def notify(self, source: TriggerSource) -> bool:
        """
        Enqueue a trigger. Returns False when the queue is full; a pass is
        already pending in that case, so nothing is lost.
        """
        try:
            self._queue.put_nowait(source)
            return True
        except asyncio.QueueFull:
            self._logger.debug("Trigger queue full, dropping %s", source.value)
            return False

    async def start(self) -> None:
        self._tasks.append(asyncio.create_task(self._consumer(), name="evaluation-consumer"))
        if self._interval > 0:
            self._tasks.append(asyncio.create_task(self._timer(), name="evaluation-timer"))
        self._logger.info("Evaluation loop started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    def add_producer(self, coro_fn: Callable[[], Awaitable[None]], name: str) -> None:
        """Run an extra producer coroutine for the lifetime of the loop."""
        self._tasks.append(asyncio.create_task(coro_fn(), name=name))

    async def _timer(self) -> None:
        while True:
            self.notify(TriggerSource.TIMER)
            await asyncio.sleep(self._interval)

    def drain(self) -> List[TriggerSource]:
        drained = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return drained

    async def _consumer(self) -> None:
        while True:
            first = await self._queue.get()
            batch = [first] + self.drain()
            await self.run_batch(batch)

    async def run_batch(self, batch: List[TriggerSource]) -> None:
        # a signal anywhere in the batch is what gets logged
        source = TriggerSource.SIGNAL if TriggerSource.SIGNAL in batch else batch[0]
        if len(batch) > 1:
            self._logger.debug("Coalesced %s triggers into one pass", len(batch))
        try:
            await self._run_pass(source)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("evaluation pass error: %s", exc)
        self.passes += 1


def periodic(
    fn: Callable[[], Awaitable[object]],
    interval_sec: float,
    logger: logging.Logger,
    label: str,
) -> Callable[[], Awaitable[None]]:
    """
    Forever-loop wrapper: call `fn` every `interval_sec`, logging and
    swallowing per-iteration errors so the producer survives them.
    """
    async def _loop() -> None:
        while True:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("%s loop error: %s", label, exc)
            await asyncio.sleep(interval_sec)

    return _loop
