import logging
from typing import List, Optional, Sequence

from web3 import AsyncWeb3

from ....core.domain.exceptions import ChainUnavailableError, ConfigurationError


class ChainClient:
    """
    Owns the AsyncWeb3 connection. `connect()` walks the RPC list in order and
    keeps the first endpoint that answers with the expected chain id.
    """

    def __init__(
        self,
        rpc_urls: Sequence[str],
        chain_id: int,
        read_timeout_sec: float = 15.0,
        logger: Optional[logging.Logger] = None,
    ):
        if not rpc_urls:
            raise ConfigurationError("at least one RPC url is required")
        self._rpc_urls: List[str] = list(rpc_urls)
        self._chain_id = chain_id
        self._read_timeout = read_timeout_sec
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._w3: Optional[AsyncWeb3] = None
        self.rpc_url: Optional[str] = None

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise ChainUnavailableError("chain client used before connect()")
        return self._w3

    async def connect(self) -> AsyncWeb3:
        """
        :raises ChainUnavailableError: no endpoint reachable.
        :raises ConfigurationError: an endpoint is reachable but serves a different chain.
        """
        last_err: Optional[BaseException] = None
        for url in self._rpc_urls:
            w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self._read_timeout}))
            try:
                if not await w3.is_connected():
                    raise ChainUnavailableError(f"{url} not reachable")
                chain_id = int(await w3.eth.chain_id)
            except Exception as exc:
                self._logger.warning("RPC %s unavailable: %s", url, exc)
                last_err = exc
                continue

            if chain_id != self._chain_id:
                raise ConfigurationError(f"RPC {url} serves chain {chain_id}, expected {self._chain_id}")

            self._w3 = w3
            self.rpc_url = url
            self._logger.info("Connected to chain %s via %s", chain_id, url)
            return w3

        raise ChainUnavailableError(f"no RPC endpoint reachable: {last_err}")

    async def block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def aclose(self) -> None:
        if self._w3 is None:
            return
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
