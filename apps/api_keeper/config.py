import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from web3 import Web3

from .core.domain.exceptions import ConfigurationError

load_dotenv()

STORAGE_BACKENDS = ("memory", "mongo")


@dataclass
class Settings:
    # chain
    RPC_URL: str = ""
    RPC_FALLBACK_URLS: List[str] = field(default_factory=list)
    CHAIN_ID: int = 11155111  # Sepolia
    STRATEGY_AGENT_ADDRESS: str = ""
    HOOK_ADDRESS: str = ""
    KEEPER_PRIVATE_KEY: str = ""  # hex 0x..., keep empty when missing

    # loop
    POLL_INTERVAL_SEC: float = 15.0
    EVENT_POLL_INTERVAL_SEC: float = 12.0
    EVENT_BLOCK_RANGE: int = 100
    MAX_CONCURRENT_AGENTS: int = 8

    # executor
    MAX_RETRIES: int = 5
    RETRY_DELAY_SEC: float = 3.0
    SWAP_FRACTION_BPS: int = 1000       # 10% of the tokenIn balance
    SLIPPAGE_BPS: int = 50
    QUOTE_TOLERANCE_BPS: int = 100      # 1%
    QUOTE_TIMEOUT_SEC: float = 10.0
    SESSION_TIMEOUT_SEC: float = 5.0
    ONCHAIN_CONFIRM_TIMEOUT_SEC: float = 120.0
    READ_TIMEOUT_SEC: float = 15.0
    RELEASE_COOLDOWN_ON_FAILURE: bool = False

    # collaborators
    CLEARNODE_URL: str = "wss://clearnet-sandbox.yellow.com/ws"
    CLEARNODE_ENABLED: bool = False
    QUOTE_API_URL: str = ""             # empty = fixed-fee sandbox quoter
    SIGNAL_WS_URL: str = ""

    # storage
    STORAGE_BACKEND: str = "memory"
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "keeper_db"
    EXECUTION_HISTORY_LIMIT: int = 1000

    # api
    ADMIN_API_TOKEN: str = ""
    API_PORT: int = 3001

    # generic
    LOG_LEVEL: str = "INFO"

    @property
    def chain_enabled(self) -> bool:
        return bool(self.RPC_URL)

    @property
    def rpc_urls(self) -> List[str]:
        return [self.RPC_URL] + [u for u in self.RPC_FALLBACK_URLS if u != self.RPC_URL]

    def validate(self) -> "Settings":
        if self.STORAGE_BACKEND not in STORAGE_BACKENDS:
            raise ConfigurationError(f"STORAGE_BACKEND must be one of {STORAGE_BACKENDS}, got {self.STORAGE_BACKEND!r}")
        if self.chain_enabled:
            for key in ("STRATEGY_AGENT_ADDRESS", "HOOK_ADDRESS"):
                value = getattr(self, key)
                if not Web3.is_address(value):
                    raise ConfigurationError(f"{key} is not a valid address: {value!r}")
            if not self.KEEPER_PRIVATE_KEY:
                raise ConfigurationError("KEEPER_PRIVATE_KEY is required when RPC_URL is set")
        if self.CLEARNODE_ENABLED and not self.KEEPER_PRIVATE_KEY:
            raise ConfigurationError("KEEPER_PRIVATE_KEY is required when CLEARNODE_ENABLED")
        if self.MAX_RETRIES < 1:
            raise ConfigurationError("MAX_RETRIES must be >= 1")
        if not 0 < self.SWAP_FRACTION_BPS <= 10_000:
            raise ConfigurationError("SWAP_FRACTION_BPS must be in (0, 10000]")
        if not 0 <= self.SLIPPAGE_BPS < 10_000:
            raise ConfigurationError("SLIPPAGE_BPS must be in [0, 10000)")
        if self.EVENT_BLOCK_RANGE < 1:
            raise ConfigurationError("EVENT_BLOCK_RANGE must be >= 1")
        return self

    def public_view(self) -> dict:
        """Settings safe to expose on /api/config (no keys, no tokens, no URIs)."""
        return {
            "chain_id": self.CHAIN_ID,
            "strategy_agent_address": self.STRATEGY_AGENT_ADDRESS,
            "hook_address": self.HOOK_ADDRESS,
            "poll_interval_sec": self.POLL_INTERVAL_SEC,
            "event_poll_interval_sec": self.EVENT_POLL_INTERVAL_SEC,
            "event_block_range": self.EVENT_BLOCK_RANGE,
            "max_retries": self.MAX_RETRIES,
            "retry_delay_sec": self.RETRY_DELAY_SEC,
            "swap_fraction_bps": self.SWAP_FRACTION_BPS,
            "slippage_bps": self.SLIPPAGE_BPS,
            "quote_tolerance_bps": self.QUOTE_TOLERANCE_BPS,
            "clearnode_enabled": self.CLEARNODE_ENABLED,
            "storage_backend": self.STORAGE_BACKEND,
            "release_cooldown_on_failure": self.RELEASE_COOLDOWN_ON_FAILURE,
        }


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _num(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be {cast.__name__}, got {raw!r}") from exc


def _list(name: str) -> List[str]:
    return [u.strip() for u in os.getenv(name, "").split(",") if u.strip()]


def load_settings() -> Settings:
    return Settings(
        RPC_URL=os.getenv("RPC_URL", ""),
        RPC_FALLBACK_URLS=_list("RPC_FALLBACK_URLS"),
        CHAIN_ID=_num("CHAIN_ID", 11155111, int),
        STRATEGY_AGENT_ADDRESS=os.getenv("STRATEGY_AGENT_ADDRESS", ""),
        HOOK_ADDRESS=os.getenv("HOOK_ADDRESS", ""),
        KEEPER_PRIVATE_KEY=os.getenv("KEEPER_PRIVATE_KEY", ""),
        POLL_INTERVAL_SEC=_num("POLL_INTERVAL_SEC", 15.0, float),
        EVENT_POLL_INTERVAL_SEC=_num("EVENT_POLL_INTERVAL_SEC", 12.0, float),
        EVENT_BLOCK_RANGE=_num("EVENT_BLOCK_RANGE", 100, int),
        MAX_CONCURRENT_AGENTS=_num("MAX_CONCURRENT_AGENTS", 8, int),
        MAX_RETRIES=_num("MAX_RETRIES", 5, int),
        RETRY_DELAY_SEC=_num("RETRY_DELAY_SEC", 3.0, float),
        SWAP_FRACTION_BPS=_num("SWAP_FRACTION_BPS", 1000, int),
        SLIPPAGE_BPS=_num("SLIPPAGE_BPS", 50, int),
        QUOTE_TOLERANCE_BPS=_num("QUOTE_TOLERANCE_BPS", 100, int),
        QUOTE_TIMEOUT_SEC=_num("QUOTE_TIMEOUT_SEC", 10.0, float),
        SESSION_TIMEOUT_SEC=_num("SESSION_TIMEOUT_SEC", 5.0, float),
        ONCHAIN_CONFIRM_TIMEOUT_SEC=_num("ONCHAIN_CONFIRM_TIMEOUT_SEC", 120.0, float),
        READ_TIMEOUT_SEC=_num("READ_TIMEOUT_SEC", 15.0, float),
        RELEASE_COOLDOWN_ON_FAILURE=_bool("RELEASE_COOLDOWN_ON_FAILURE", False),
        CLEARNODE_URL=os.getenv("CLEARNODE_URL", "wss://clearnet-sandbox.yellow.com/ws"),
        CLEARNODE_ENABLED=_bool("CLEARNODE_ENABLED", False),
        QUOTE_API_URL=os.getenv("QUOTE_API_URL", ""),
        SIGNAL_WS_URL=os.getenv("SIGNAL_WS_URL", ""),
        STORAGE_BACKEND=os.getenv("STORAGE_BACKEND", "memory").lower(),
        MONGODB_URI=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
        MONGODB_DB_NAME=os.getenv("MONGODB_DB_NAME", "keeper_db"),
        EXECUTION_HISTORY_LIMIT=_num("EXECUTION_HISTORY_LIMIT", 1000, int),
        ADMIN_API_TOKEN=os.getenv("ADMIN_API_TOKEN", ""),
        API_PORT=_num("API_PORT", 3001, int),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    ).validate()


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
