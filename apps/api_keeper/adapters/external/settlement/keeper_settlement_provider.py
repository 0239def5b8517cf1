import logging
from typing import Optional

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from ....core.domain.entities.agent_entity import AgentEntity
from ....core.domain.entities.execution_entity import OffChainSession, Quote, SettlementReceipt
from ....core.domain.exceptions import QuoteUnavailableError, SessionError
from ....core.domain.policies import QuoteFreshnessPolicy
from ....core.repositories.agent_repository import AgentRepository
from ...base import Quoter, SettlementProvider
from ..clearnode.clearnode_session_client import ClearNodeSessionClient

EXECUTION_PAYLOAD_TYPES = ["uint256", "address", "address", "uint256", "uint256", "bytes"]


def build_execution_payload(agent_id: int, quote: Quote, min_amount_out: int) -> bytes:
    """
    abi.encode(agentId, tokenIn, tokenOut, amountIn, minAmountOut, routeData),
    the `executionData` argument of StrategyAgent.execute.
    """
    return encode(
        EXECUTION_PAYLOAD_TYPES,
        [
            int(agent_id),
            Web3.to_checksum_address(quote.token_in),
            Web3.to_checksum_address(quote.token_out),
            int(quote.amount_in),
            int(min_amount_out),
            bytes(HexBytes(quote.route_data or "0x")),
        ],
    )


class KeeperSettlementProvider(SettlementProvider):
    """
    Composes the keeper's collaborators into the executor's provider:

    - quoting and re-quote validation through a Quoter
    - off-chain settlement through a ClearNode app session
      (keeper allocates amountIn, owner receives amountOut)
    - on-chain settlement through the agent substrate's `execute`
    """

    def __init__(
        self,
        quoter: Quoter,
        agents: AgentRepository,
        session_client: Optional[ClearNodeSessionClient] = None,
        freshness: Optional[QuoteFreshnessPolicy] = None,
        keeper_address: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._quoter = quoter
        self._agents = agents
        self._sessions = session_client
        self._freshness = freshness or QuoteFreshnessPolicy()
        self._keeper_address = keeper_address or (session_client.address if session_client else None)
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    @property
    def keeper_address(self) -> Optional[str]:
        return self._keeper_address

    # ---------- quoting ----------

    async def quote(self, token_in: str, token_out: str, amount_in: int, slippage_bps: int) -> Quote:
        q = await self._quoter.quote(token_in, token_out, amount_in, slippage_bps)
        self._logger.info(
            "Quote %s %s -> %s %s (impact=%sbps)",
            q.amount_in, token_in, q.amount_out, token_out, q.price_impact_bps,
        )
        return q

    async def validate(self, quote: Quote) -> bool:
        try:
            fresh = await self._quoter.quote(quote.token_in, quote.token_out, quote.amount_in, quote.slippage_bps)
        except QuoteUnavailableError as exc:
            self._logger.warning("Re-quote failed: %s", exc)
            return False
        ok = self._freshness.ok(quote.amount_out, fresh.amount_out)
        if not ok:
            self._logger.warning("Quote stale: original=%s fresh=%s", quote.amount_out, fresh.amount_out)
        return ok

    # ---------- off-chain ----------

    @property
    def off_chain_available(self) -> bool:
        return self._sessions is not None and self._sessions.connected

    def _require_sessions(self) -> ClearNodeSessionClient:
        if self._sessions is None or not self._sessions.connected:
            raise SessionError("session channel not connected")
        return self._sessions

    async def open_session(self, agent: AgentEntity, quote: Quote) -> OffChainSession:
        sessions = self._require_sessions()
        keeper = sessions.address
        allocations = [
            {"participant": keeper, "asset": quote.token_in, "amount": str(quote.amount_in)},
            {"participant": agent.owner, "asset": quote.token_out, "amount": "0"},
        ]
        return await sessions.create_app_session([keeper, agent.owner], allocations)

    async def settle_off_chain(self, session: OffChainSession, quote: Quote) -> SettlementReceipt:
        sessions = self._require_sessions()
        keeper = sessions.address
        owner = next(p for p in session.participants if p != keeper)
        allocations = []
        for alloc in session.allocations:
            amount = int(alloc["amount"])
            if alloc["participant"] == keeper:
                amount -= quote.amount_in
            elif alloc["participant"] == owner:
                amount += quote.amount_out
            allocations.append({**alloc, "amount": str(amount)})

        updated = await sessions.submit_app_state(session, allocations, intent="OPERATE")
        reference = Web3.to_hex(Web3.keccak(text=f"{updated.session_id}:{updated.version}"))
        return SettlementReceipt(success=True, reference=reference, amount_out=quote.amount_out)

    async def close_session(self, session: OffChainSession) -> None:
        await self._require_sessions().close_app_session(session)

    async def commit_off_chain(self, agent_id: int, rule_index: int, executed_at: int, reference: str) -> None:
        await self._agents.commit_off_chain(agent_id, rule_index, executed_at, reference)

    # ---------- on-chain ----------

    async def simulate_on_chain(self, agent_id: int, rule_index: int, quote: Quote, min_amount_out: int) -> None:
        payload = build_execution_payload(agent_id, quote, min_amount_out)
        await self._agents.simulate_execute(agent_id, rule_index, payload)

    async def settle_on_chain(
        self, agent_id: int, rule_index: int, quote: Quote, min_amount_out: int,
    ) -> SettlementReceipt:
        payload = build_execution_payload(agent_id, quote, min_amount_out)
        return await self._agents.execute(agent_id, rule_index, payload)

    async def aclose(self) -> None:
        await self._quoter.aclose()
        if self._sessions is not None:
            await self._sessions.close()
