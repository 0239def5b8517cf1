import time

from eth_abi import encode
from web3 import Web3

from ....core.domain.entities.execution_entity import Quote, RouteHop
from ....core.domain.exceptions import QuoteUnavailableError
from ....core.domain.policies import BPS_DENOMINATOR
from ...base import Quoter

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class FixedFeeQuoter(Quoter):
    """
    Testnet/sandbox quoter: 1:1 price minus a flat fee (30 bps by default)
    through a single-hop route.
    """

    def __init__(self, fee_bps: int = 30, pool_fee: int = 3000, gas_estimate: int = 150_000):
        self._fee_bps = fee_bps
        self._pool_fee = pool_fee
        self._gas_estimate = gas_estimate

    async def quote(self, token_in: str, token_out: str, amount_in: int, slippage_bps: int) -> Quote:
        if amount_in <= 0:
            raise QuoteUnavailableError(f"amount_in must be > 0, got {amount_in}")
        fee = (amount_in * self._fee_bps) // BPS_DENOMINATOR
        route_data = encode(
            ["address[]", "uint24[]"],
            [[Web3.to_checksum_address(token_in), Web3.to_checksum_address(token_out)], [self._pool_fee]],
        )
        return Quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_in - fee,
            slippage_bps=slippage_bps,
            route=[RouteHop(protocol="uniswap-v4", pool=ZERO_ADDRESS, token_in=token_in, token_out=token_out, fee=self._pool_fee)],
            route_data=Web3.to_hex(route_data),
            gas_estimate=self._gas_estimate,
            quoted_at=int(time.time()),
        )
