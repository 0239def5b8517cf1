import logging
import time
from typing import Optional

import httpx

from ....core.domain.entities.execution_entity import Quote, RouteHop
from ....core.domain.exceptions import QuoteUnavailableError
from ...base import Quoter


class HttpQuoter(Quoter):
    """
    Thin async HTTP wrapper around an aggregator quote endpoint:

      GET {base_url}/quote?tokenIn=&tokenOut=&amountIn=&slippageBps=
      -> {"amountOut": "...", "route": [...], "routeData": "0x...",
          "priceImpactBps": int, "gasEstimate": int}

    Amounts travel as decimal strings. No routing logic lives here.
    """

    def __init__(self, base_url: str, timeout_sec: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._logger = logging.getLogger(self.__class__.__name__)

    async def quote(self, token_in: str, token_out: str, amount_in: int, slippage_bps: int) -> Quote:
        url = f"{self._base_url}/quote"
        params = {
            "tokenIn": token_in,
            "tokenOut": token_out,
            "amountIn": str(amount_in),
            "slippageBps": slippage_bps,
        }
        try:
            r = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            self._logger.warning("quote request failed %s: %s", url, exc)
            raise QuoteUnavailableError(f"quote request failed: {exc}") from exc

        if r.status_code != 200:
            self._logger.warning("quote non-200 %s: %s %s", url, r.status_code, r.text[:200])
            raise QuoteUnavailableError(f"quote endpoint returned {r.status_code}")

        try:
            data = r.json()
            return Quote(
                token_in=token_in,
                token_out=token_out,
                amount_in=amount_in,
                amount_out=int(data["amountOut"]),
                slippage_bps=slippage_bps,
                route=[
                    RouteHop(
                        protocol=h.get("protocol", "unknown"),
                        pool=h.get("pool", ""),
                        token_in=h.get("tokenIn", token_in),
                        token_out=h.get("tokenOut", token_out),
                        fee=int(h.get("fee", 0)),
                    )
                    for h in data.get("route", [])
                ],
                route_data=data.get("routeData", "0x"),
                price_impact_bps=int(data.get("priceImpactBps", 0)),
                gas_estimate=int(data.get("gasEstimate", 0)),
                quoted_at=int(time.time()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise QuoteUnavailableError(f"malformed quote response: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
