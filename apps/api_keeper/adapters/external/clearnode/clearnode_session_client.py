import asyncio
import itertools
import json
import logging
import random
import time
from typing import Any, Dict, List, Optional

import websockets
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3
from websockets.exceptions import ConnectionClosed

from ....core.domain.entities.execution_entity import OffChainSession
from ....core.domain.exceptions import SessionError


class ClearNodeSessionClient:
    """
    JSON-RPC 2.0 over websocket client for the state-channel counter-party
    (ClearNode).

    - Every request is signed by the keeper key: keccak256 of the JSON message,
      signed as a personal message, appended to params as {signature, signer}.
    - Every request carries an explicit timeout.
    - A dropped connection fails all pending requests at once and starts a
      bounded reconnect loop (exponential backoff + jitter, capped at 30s).
    """

    PROTOCOL = "NitroRPC/0.4"
    CHALLENGE_SEC = 3600

    def __init__(
        self,
        url: str,
        private_key: str,
        request_timeout_sec: float = 5.0,
        connect_timeout_sec: float = 10.0,
        max_reconnect_attempts: int = 5,
        logger: Optional[logging.Logger] = None,
    ):
        self._url = url
        self._account = Account.from_key(private_key)
        self._request_timeout = request_timeout_sec
        self._connect_timeout = connect_timeout_sec
        self._max_reconnect = max_reconnect_attempts
        self._logger = logger or logging.getLogger(self.__class__.__name__)

        self._ws = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._sessions: Dict[str, OffChainSession] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def address(self) -> str:
        return self._account.address

    # ---------- connection ----------

    async def connect(self) -> None:
        self._closing = False
        self._logger.info("Connecting to ClearNode %s", self._url)
        self._ws = await websockets.connect(
            self._url,
            open_timeout=self._connect_timeout,
            close_timeout=5,
            ping_interval=15,
            ping_timeout=15,
        )
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        self._logger.info("Connected to ClearNode as %s", self.address)

    async def close(self) -> None:
        self._closing = True
        for task in (self._reconnect_task, self._reader_task):
            if task and not task.done():
                task.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._fail_pending(SessionError("client closed"))

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            self._logger.warning("ClearNode connection closed: %s", exc)
        except Exception as exc:
            self._logger.warning("ClearNode reader error: %s", exc)

        if self._ws is ws:
            self._ws = None
        self._fail_pending(SessionError("connection lost"))
        if not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        backoff = 1
        for attempt in range(1, self._max_reconnect + 1):
            delay = min(backoff * 2, 30) + random.uniform(0, 0.5)
            self._logger.info("ClearNode reconnect attempt %s/%s in %.1fs", attempt, self._max_reconnect, delay)
            await asyncio.sleep(delay)
            try:
                await self.connect()
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning("ClearNode reconnect failed: %s", exc)
                backoff = min(backoff * 2, 30)
        self._logger.error("ClearNode max reconnection attempts reached; off-chain path disabled")

    def _handle_message(self, message: str) -> None:
        try:
            payload = json.loads(message)
        except ValueError:
            self._logger.error("Unparseable ClearNode message: %.200s", message)
            return
        fut = self._pending.pop(payload.get("id"), None) if isinstance(payload, dict) else None
        if fut is None:
            self._logger.debug("ClearNode notification: %.200s", message)
            return
        if fut.done():
            return
        if payload.get("error"):
            err = payload["error"]
            fut.set_exception(SessionError(f"ClearNode error {err.get('code')}: {err.get('message')}"))
        else:
            fut.set_result(payload.get("result"))

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)

    # ---------- requests ----------

    def _signed_message(self, method: str, params: List[Any]) -> Dict[str, Any]:
        message = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        digest = Web3.to_hex(Web3.keccak(text=json.dumps(message, separators=(",", ":"))))
        signature = self._account.sign_message(encode_defunct(text=digest)).signature
        message["params"] = params + [{"signature": Web3.to_hex(signature), "signer": self.address}]
        return message

    async def _request(self, method: str, params: List[Any]) -> Any:
        ws = self._ws
        if ws is None:
            raise SessionError("not connected to ClearNode")
        message = self._signed_message(method, params)
        fut = asyncio.get_running_loop().create_future()
        self._pending[message["id"]] = fut
        try:
            await ws.send(json.dumps(message))
            return await asyncio.wait_for(fut, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise SessionError(f"{method} timed out after {self._request_timeout}s") from exc
        except ConnectionClosed as exc:
            raise SessionError(f"{method}: connection closed") from exc
        finally:
            self._pending.pop(message["id"], None)

    # ---------- app sessions ----------

    async def create_app_session(self, participants: List[str], allocations: List[Dict[str, Any]]) -> OffChainSession:
        definition = {
            "protocol": self.PROTOCOL,
            "participants": participants,
            "weights": [100 // len(participants)] * len(participants),
            "quorum": 100,
            "challenge": self.CHALLENGE_SEC,
            "nonce": int(time.time() * 1000),
        }
        await self._request("create_app_session", [{"definition": definition, "allocations": allocations}])
        session_id = Web3.to_hex(Web3.keccak(text=json.dumps(definition, separators=(",", ":"))))
        session = OffChainSession(session_id=session_id, participants=participants, allocations=allocations)
        self._sessions[session_id] = session
        self._logger.info("App session created %s", session_id)
        return session

    async def submit_app_state(
        self,
        session: OffChainSession,
        allocations: List[Dict[str, Any]],
        intent: str = "OPERATE",
    ) -> OffChainSession:
        current = self._sessions.get(session.session_id)
        if current is None or current.status != "open":
            raise SessionError(f"session {session.session_id} not open")
        await self._request("submit_app_state", [{
            "app_session_id": session.session_id,
            "allocations": allocations,
            "intent": intent,
            "version": current.version + 1,
        }])
        updated = current.model_copy(update={"allocations": allocations, "version": current.version + 1})
        self._sessions[session.session_id] = updated
        self._logger.info("App state updated %s version=%s intent=%s", session.session_id, updated.version, intent)
        return updated

    async def close_app_session(self, session: OffChainSession) -> None:
        current = self._sessions.get(session.session_id)
        if current is None:
            raise SessionError(f"session {session.session_id} not found")
        await self._request("close_app_session", [{
            "app_session_id": session.session_id,
            "allocations": current.allocations,
        }])
        self._sessions.pop(session.session_id, None)
        self._logger.info("App session closed %s", session.session_id)
