import asyncio
import json
import logging
import random
from typing import Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from ....core.domain.entities.chain_event_entity import ChainEvent
from .hook_event_source import HookEventSource


class LogSubscriptionClient:
    """
    Push channel for contract logs over a node websocket (eth_subscribe "logs").

    - Subscribes to the given contract addresses.
    - Decodes each notification with the event source and hands it to the
      async callback.
    - Handles reconnect with exponential backoff + jitter. Logs missed while
      disconnected are picked up by the block poller, which is the source of
      truth for the watermark.
    """

    def __init__(
        self,
        ws_url: str,
        addresses: List[str],
        decoder: HookEventSource,
        logger: Optional[logging.Logger] = None,
    ):
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._ws_url = ws_url
        self._addresses = addresses
        self._decoder = decoder
        self._on_event: Optional[Callable[[ChainEvent], Awaitable[None]]] = None
        self._stop_event = asyncio.Event()
        self._runner_task: Optional[asyncio.Task] = None

    async def subscribe(self, on_event: Callable[[ChainEvent], Awaitable[None]]):
        if self._runner_task and not self._runner_task.done():
            self._logger.info("Log subscription already running; ignoring duplicate subscribe.")
            return
        self._on_event = on_event
        self._stop_event.clear()
        self._runner_task = asyncio.create_task(self._run_loop())
        self._logger.info("Log subscription started for %s", ", ".join(self._addresses))

    async def close(self):
        self._stop_event.set()
        if self._runner_task:
            try:
                await asyncio.wait_for(self._runner_task, timeout=5)
            except asyncio.TimeoutError:
                self._logger.warning("Timeout waiting subscription runner to stop; cancelling task.")
                self._runner_task.cancel()
            finally:
                self._runner_task = None

    async def _run_loop(self):
        backoff = 1
        backoff_max = 30

        while not self._stop_event.is_set():
            try:
                self._logger.info("Connecting WS: %s", self._ws_url)
                async with websockets.connect(
                    self._ws_url,
                    open_timeout=30,
                    close_timeout=5,
                    ping_interval=15,
                    ping_timeout=15,
                    max_queue=1000,
                ) as ws:
                    await ws.send(json.dumps({
                        "jsonrpc": "2.0",
                        "id": 1,
                        "method": "eth_subscribe",
                        "params": ["logs", {"address": self._addresses}],
                    }))
                    self._logger.info("WS connected: %s", self._ws_url)
                    backoff = 1

                    async for message in ws:
                        if self._stop_event.is_set():
                            break
                        await self._handle_message(message)

            except asyncio.CancelledError:
                raise

            except (asyncio.TimeoutError,) as exc:
                self._logger.warning("WS timeout during handshake/connection: %s. Reconnecting...", exc)

            except (ConnectionClosed, ConnectionClosedError) as exc:
                self._logger.warning("WS closed/error: %s. Reconnecting...", exc)

            except Exception as exc:
                self._logger.warning("WS error: %s. Reconnecting...", exc)

            if self._stop_event.is_set():
                break
            jitter = random.uniform(0, 0.5)
            await asyncio.sleep(min(backoff, backoff_max) + jitter)
            backoff = min(backoff * 2, backoff_max)

    async def _handle_message(self, message: str):
        try:
            payload = json.loads(message)
            if payload.get("method") != "eth_subscription":
                if "error" in payload:
                    self._logger.error("eth_subscribe rejected: %s", payload["error"])
                return
            log = (payload.get("params") or {}).get("result")
            if not log or log.get("removed"):
                return
            event = self._decoder.decode_log(log)
            if event is not None and self._on_event is not None:
                await self._on_event(event)
        except Exception as exc:
            self._logger.exception("Error handling WS message: %s", exc)
