import logging
from typing import Dict, List, Optional

from hexbytes import HexBytes
from web3 import AsyncWeb3

from ....core.domain.entities.chain_event_entity import ChainEvent
from ....core.domain.entities.signal_entity import SignalEntity
from ...base import ChainEventSource
from .abis import HOOK_ABI, STRATEGY_AGENT_ABI
from .chain_client import ChainClient
from .utils import to_hex32, to_json_safe

AGENT_EVENTS = ("AgentCreated", "AgentExecuted", "AgentStatusChanged")
HOOK_EVENTS = ("SignalEmitted",)


class HookEventSource(ChainEventSource):
    """
    Fetches StrategyAgent and hook logs with eth_getLogs and decodes them by
    topic0. Also reads the hook's `getLatestSignal` view.
    """

    def __init__(
        self,
        client: ChainClient,
        strategy_agent_address: str,
        hook_address: str,
        logger: Optional[logging.Logger] = None,
    ):
        self._client = client
        w3 = client.w3
        self._agent = w3.eth.contract(address=AsyncWeb3.to_checksum_address(strategy_agent_address), abi=STRATEGY_AGENT_ABI)
        self._hook = w3.eth.contract(address=AsyncWeb3.to_checksum_address(hook_address), abi=HOOK_ABI)
        self._logger = logger or logging.getLogger(self.__class__.__name__)

        # topic0 -> (contract, event name)
        self._by_topic: Dict[str, tuple] = {}
        for contract, names in ((self._agent, AGENT_EVENTS), (self._hook, HOOK_EVENTS)):
            for name in names:
                self._by_topic[_topic_for(contract, name)] = (contract, name)

    @property
    def hook_address(self) -> str:
        return self._hook.address

    async def block_number(self) -> int:
        return await self._client.block_number()

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        logs = await self._client.w3.eth.get_logs({
            "address": [self._agent.address, self._hook.address],
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        events: List[ChainEvent] = []
        for log in logs:
            decoded = self.decode_log(log)
            if decoded is not None:
                events.append(decoded)
        return events

    def decode_log(self, log) -> Optional[ChainEvent]:
        """
        Decode a raw log (from eth_getLogs or an eth_subscribe notification).
        Unknown topics are ignored.
        """
        topics = log.get("topics") or []
        if not topics:
            return None
        topic0 = to_hex32(topics[0])
        match = self._by_topic.get(topic0)
        if match is None:
            return None
        contract, name = match
        try:
            ev = getattr(contract.events, name)().process_log(_normalize_log(log))
        except Exception as exc:
            self._logger.warning("failed to decode %s log: %s", name, exc)
            return None
        args = to_json_safe(dict(ev["args"]))
        return ChainEvent(
            name=name,
            block_number=int(ev["blockNumber"]),
            log_index=int(ev["logIndex"]),
            tx_hash=to_json_safe(ev["transactionHash"]),
            args=args,
        )

    async def get_latest_signal(self, pool_id: str) -> Optional[SignalEntity]:
        raw = await self._hook.functions.getLatestSignal(HexBytes(pool_id)).call()
        signal_type, magnitude, timestamp, _pool, _data = raw
        if int(timestamp) == 0:
            return None
        return SignalEntity(
            pool_id=pool_id.lower(),
            signal_type=int(signal_type),
            magnitude=int(magnitude),
            timestamp=int(timestamp),
        )


def _topic_for(contract, name: str) -> str:
    abi = next(e for e in contract.abi if e.get("type") == "event" and e.get("name") == name)
    signature = f"{name}({','.join(i['type'] for i in abi['inputs'])})"
    return AsyncWeb3.to_hex(AsyncWeb3.keccak(text=signature)).lower()


def _normalize_log(log) -> dict:
    """
    eth_subscribe notifications arrive as plain JSON (hex strings); process_log
    wants the same shape eth_getLogs returns.
    """
    out = dict(log)
    for key in ("blockNumber", "logIndex", "transactionIndex"):
        if isinstance(out.get(key), str):
            out[key] = int(out[key], 16)
    out["topics"] = [HexBytes(t) for t in out.get("topics", [])]
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    for key in ("transactionHash", "blockHash"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    return out
