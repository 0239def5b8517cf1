import logging
from typing import Literal, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from ....core.domain.exceptions import TransactionPendingError, TransactionRevertedError
from .utils import to_json_safe

GasStrategy = Literal["default", "buffered", "aggressive"]


class AsyncTxService:
    """
    Transaction sender for keeper calls.

    Responsibilities:
    - Dry-run (eth_call) a contract call from the keeper address.
    - Build, sign and broadcast it with a padded gas limit.
    - Poll for the receipt of that one hash, up to `confirm_polls` times
      within `confirm_timeout_sec`. A slow tx is never re-broadcast.
    - Raise TransactionRevertedError when the mined tx has status == 0.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        private_key: str,
        confirm_timeout_sec: float = 120.0,
        confirm_polls: int = 3,
        logger: Optional[logging.Logger] = None,
    ):
        self.w3 = w3
        self.pk = private_key
        self.account = Account.from_key(private_key)
        self._confirm_timeout = confirm_timeout_sec
        self._confirm_polls = max(1, int(confirm_polls))
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def sender_address(self) -> str:
        return self.account.address

    # ---------- internal helpers ----------

    async def _next_nonce(self) -> int:
        return await self.w3.eth.get_transaction_count(self.account.address, "pending")

    async def _estimate_with_strategy(self, tx: dict, strategy: GasStrategy) -> int:
        """
        Calls estimateGas(tx) and applies a safety buffer depending on strategy.
        Falls back to a static 300k if node estimation fails.
        """
        try:
            base_estimate = int(await self.w3.eth.estimate_gas(tx))
        except ContractLogicError:
            raise
        except Exception as exc:
            self._logger.warning("estimate_gas failed, using static limit: %s", exc)
            base_estimate = 300_000

        if strategy == "default":
            return base_estimate
        if strategy == "buffered":
            return int(base_estimate * 1.25) + 10_000
        if strategy == "aggressive":
            return int(base_estimate * 1.5) + 25_000
        return base_estimate

    async def _finalize_fee_fields(self, tx: dict) -> dict:
        """
        If the caller didn't specify EIP-1559 style fields, fallback to legacy gasPrice.
        """
        if "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx:
            return tx
        if "gasPrice" not in tx:
            tx["gasPrice"] = await self.w3.eth.gas_price
        return tx

    async def _build_tx_dict(self, fn, value_wei: int) -> dict:
        base_tx = {
            "from": self.account.address,
            "nonce": await self._next_nonce(),
            "value": int(value_wei or 0),
        }
        return await fn.build_transaction(base_tx)

    async def _sign_and_send(self, tx: dict) -> str:
        signed = self.account.sign_transaction(tx)
        txh = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(txh)

    async def _wait_receipt(self, tx_hash: str) -> dict:
        """
        Poll the known hash; a slow tx is waited on, never re-sent.

        :raises TransactionPendingError: still unmined after every poll.
        """
        per_poll = self._confirm_timeout / self._confirm_polls
        for poll in range(1, self._confirm_polls + 1):
            try:
                rcpt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=per_poll)
            except TimeExhausted:
                self._logger.warning(
                    "tx %s not mined after poll %s/%s (%ss each)", tx_hash, poll, self._confirm_polls, per_poll,
                )
                continue
            return dict(rcpt)
        raise TransactionPendingError(tx_hash, f"tx {tx_hash} not mined within {self._confirm_timeout}s")

    # ---------- public API ----------

    async def simulate(self, fn) -> None:
        """
        eth_call the function from the keeper address.

        :raises ContractLogicError: the call would revert (reason in message).
        """
        await fn.call({"from": self.account.address})

    async def send(
        self,
        fn,
        *,
        value: int = 0,
        gas_limit: Optional[int] = None,
        gas_strategy: GasStrategy = "buffered",
    ) -> dict:
        """
        Broadcast a state-changing call and wait until mined.

        Returns:
            {"tx_hash", "receipt" (raw, for log decoding), "status",
             "gas_limit_used", "gas_price_wei", "gas_used"}

        Raises:
            TransactionRevertedError: mined with status == 0 (gas was paid).
            TransactionPendingError: broadcast but not mined in time.
        """
        tx = await self._build_tx_dict(fn, value_wei=value)

        if gas_limit is not None:
            final_gas_limit = int(gas_limit)
        else:
            final_gas_limit = await self._estimate_with_strategy(tx, gas_strategy)
        tx["gas"] = final_gas_limit

        tx = await self._finalize_fee_fields(tx)
        gas_price_wei = int(tx.get("gasPrice", 0))

        tx_hash = await self._sign_and_send(tx)
        self._logger.info("tx broadcast %s gas_limit=%s", tx_hash, final_gas_limit)

        rcpt = await self._wait_receipt(tx_hash)
        status = int(rcpt.get("status", 0))

        if status == 0:
            raise TransactionRevertedError(
                tx_hash=tx_hash,
                receipt=to_json_safe(rcpt),
                msg="Transaction reverted (status=0). Possibly out-of-gas or require() failed",
            )

        return {
            "tx_hash": tx_hash,
            "receipt": rcpt,
            "status": status,
            "gas_limit_used": final_gas_limit,
            "gas_price_wei": gas_price_wei,
            "gas_used": int(rcpt.get("gasUsed", 0)),
        }
