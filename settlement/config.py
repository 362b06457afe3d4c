"""
Configuration
-------------
Environment-driven settings for the deposit settlement service. Values are read once at import
(a ``.env`` file is honoured) the same way the bot configuration always has been; per-chain
settings are assembled by :func:`load_chains` so they can be validated as a whole at startup.
"""

import os
import json
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv()

BPS_DENOMINATOR = 10000
WATCH_MODES = ("transactions", "balances")
NATIVE = "NATIVE"


class Config:
    DB_URL: str = os.getenv("DB_URL", "sqlite:///settlement.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "settlement.log")

    SUPPORTED_CHAINS: List[str] = json.loads(os.getenv("SUPPORTED_CHAINS", '["eth_sepolia"]'))
    RPC_API_KEY: str = os.getenv("RPC_API_KEY", "")

    # Key material
    HD_WALLET_MNEMONIC: str = os.getenv("HD_WALLET_MNEMONIC", "")
    DERIVATION_PATH_PREFIX: str = os.getenv("DERIVATION_PATH_PREFIX", "m/44'/60'/0'/0")
    TREASURY_ADDRESS: str = os.getenv("TREASURY_ADDRESS", "")
    TREASURY_PRIVATE_KEY: str = os.getenv("TREASURY_PRIVATE_KEY", "")
    TREASURY_DERIVATION_INDEX: int = int(os.getenv("TREASURY_DERIVATION_INDEX", "0"))
    FEE_WALLET: str = os.getenv("FEE_WALLET", "")
    SPONSOR_PRIVATE_KEY: str = os.getenv("SPONSOR_PRIVATE_KEY", os.getenv("GAS_WALLET_PRIVATE_KEY", ""))

    # Split
    FEE_BPS: int = int(os.getenv("FEE_BPS", "1000"))
    SPLIT_MODE: str = os.getenv("SPLIT_MODE", "direct").lower()

    # Gas
    ENABLE_GAS_SPONSORSHIP: bool = os.getenv("ENABLE_GAS_SPONSORSHIP", "false").lower() == "true"
    MIN_SWEEP_WEI: int = int(os.getenv("MIN_SWEEP_WEI", "0"))
    MAX_FEE_GWEI: float = float(os.getenv("MAX_FEE_GWEI", "0"))
    MAX_PRIORITY_FEE_GWEI: float = float(os.getenv("MAX_PRIORITY_FEE_GWEI", "0"))
    GAS_BUFFER_BPS: int = int(os.getenv("GAS_BUFFER_BPS", "2000"))
    SWEEP_ATTEMPTS: int = int(os.getenv("SWEEP_ATTEMPTS", "3"))

    # Swap
    SLIPPAGE_BPS: int = int(os.getenv("SLIPPAGE_BPS", "50"))
    SWAP_STRATEGIES: List[str] = json.loads(os.getenv("SWAP_STRATEGIES", '["v2_direct","v3_router","oneshot"]'))
    ALLOW_UNQUOTED_ROUTER_SWAPS: bool = os.getenv("ALLOW_UNQUOTED_ROUTER_SWAPS", "false").lower() == "true"

    # Pipeline
    QUEUE_CONCURRENCY: int = int(os.getenv("QUEUE_CONCURRENCY", "2"))
    WATCHER_POLL_SECONDS: float = float(os.getenv("WATCHER_POLL_SECONDS", "4"))
    WATCHER_SYNC_SECONDS: float = float(os.getenv("WATCHER_SYNC_SECONDS", "5"))
    STUCK_AFTER_SECONDS: int = int(os.getenv("STUCK_AFTER_SECONDS", "900"))

    # RPC
    RPC_TIMEOUT_SECONDS: float = float(os.getenv("RPC_TIMEOUT_SECONDS", "20"))
    RPC_RETRIES: int = int(os.getenv("RPC_RETRIES", "3"))
    RPC_BACKOFF_SECONDS: float = float(os.getenv("RPC_BACKOFF_SECONDS", "0.5"))
    RECEIPT_TIMEOUT_SECONDS: float = float(os.getenv("RECEIPT_TIMEOUT_SECONDS", "180"))

    # Operator surfaces
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    ADMIN_CHAT_ID: str = os.getenv("ADMIN_CHAT_ID", "")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    OPERATOR_TOKEN_SECRET: str = os.getenv("OPERATOR_TOKEN_SECRET", "dev_operator_secret_change")


@dataclass(frozen=True)
class ChainConfig:
    key: str
    chain_id: int
    rpc_url: str
    confirmations: int
    stable_token: str
    watch_mode: str = "transactions"
    stable_decimals: int = 6
    weth: Optional[str] = None
    v2_factory: Optional[str] = None
    v3_factory: Optional[str] = None
    swap_router: Optional[str] = None
    quoter: Optional[str] = None
    oneshot_contract: Optional[str] = None


# Known chains. Anything here can be overridden by <KEY>_* environment variables.
CHAIN_DEFAULTS: Dict[str, Dict] = {
    "eth_sepolia": {
        "chain_id": 11155111,
        "alchemy_host": "eth-sepolia",
        "confirmations": 2,
        "stable_token": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        "weth": "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14",
        "v2_factory": "0xF62c03E08ada871A0bEb309762E260a7a6a880E6",
        "v3_factory": "0x0227628f3F023bb0B980b67D528571c95c6DaC1c",
        "swap_router": "0x3bFA4769FB09eefC5a80d6E87c3B9C650f7Ae48E",
        "quoter": "0xEd1f6473345F45b75F8179591dd5bA1888cf2FB3",
    },
    "eth_mainnet": {
        "chain_id": 1,
        "alchemy_host": "eth-mainnet",
        "confirmations": 6,
        "stable_token": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "weth": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "v2_factory": "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f",
        "v3_factory": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "swap_router": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45",
        "quoter": "0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
    },
    "arbitrum_mainnet": {
        "chain_id": 42161,
        "alchemy_host": "arb-mainnet",
        "confirmations": 10,
        "stable_token": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "weth": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "v3_factory": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        "swap_router": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45",
        "quoter": "0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
    },
}


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def load_chain(key: str, environ: Optional[Mapping[str, str]] = None) -> ChainConfig:
    """Build and validate the configuration of one chain."""
    environ = os.environ if environ is None else environ
    defaults = CHAIN_DEFAULTS.get(key, {})
    prefix = key.upper()

    def opt(name: str, field: str) -> Optional[str]:
        return environ.get(f"{prefix}_{name}") or defaults.get(field)

    rpc_url = environ.get(f"{prefix}_RPC_URL", "")
    api_key = environ.get("RPC_API_KEY", Config.RPC_API_KEY)
    if not rpc_url and api_key and defaults.get("alchemy_host"):
        rpc_url = f"https://{defaults['alchemy_host']}.g.alchemy.com/v2/{api_key}"
    if not rpc_url:
        raise ConfigError(f"No RPC URL for chain {key}: set {prefix}_RPC_URL or RPC_API_KEY")

    stable = opt("STABLE_TOKEN", "stable_token")
    if not stable:
        raise ConfigError(f"No stable token address for chain {key}: set {prefix}_STABLE_TOKEN")

    chain_id = _int_env(environ, f"{prefix}_CHAIN_ID", defaults.get("chain_id", 0))
    if chain_id <= 0:
        raise ConfigError(f"No chain id for chain {key}: set {prefix}_CHAIN_ID")

    watch_mode = (environ.get(f"{prefix}_WATCH_MODE") or environ.get("WATCH_MODE") or "transactions").lower()
    if watch_mode not in WATCH_MODES:
        raise ConfigError(f"Unknown watch mode {watch_mode!r} for chain {key}")

    confirmations = _int_env(
        environ, f"{prefix}_CONFIRMATIONS",
        _int_env(environ, "DEPOSIT_CONFIRMATIONS", defaults.get("confirmations", 2)),
    )
    if confirmations < 0:
        raise ConfigError(f"Confirmations for chain {key} cannot be negative")

    return ChainConfig(
        key=key,
        chain_id=chain_id,
        rpc_url=rpc_url,
        confirmations=confirmations,
        stable_token=stable,
        watch_mode=watch_mode,
        stable_decimals=_int_env(environ, f"{prefix}_STABLE_DECIMALS", 6),
        weth=opt("WETH", "weth"),
        v2_factory=opt("V2_FACTORY", "v2_factory"),
        v3_factory=opt("V3_FACTORY", "v3_factory"),
        swap_router=opt("SWAP_ROUTER", "swap_router"),
        quoter=opt("QUOTER", "quoter"),
        oneshot_contract=opt("ONESHOT_CONTRACT", "oneshot_contract"),
    )


def load_chains(environ: Optional[Mapping[str, str]] = None) -> Dict[str, ChainConfig]:
    environ = os.environ if environ is None else environ
    raw = environ.get("SUPPORTED_CHAINS")
    keys = json.loads(raw) if raw else list(Config.SUPPORTED_CHAINS)
    if not keys:
        raise ConfigError("SUPPORTED_CHAINS is empty")
    return {key: load_chain(key, environ) for key in keys}


def split_bps(fee_bps: Optional[int] = None) -> Tuple[int, int]:
    """Return ``(treasury_bps, fee_bps)``; they always add up to 10000."""
    fee = Config.FEE_BPS if fee_bps is None else fee_bps
    if not 0 <= fee <= BPS_DENOMINATOR:
        raise ConfigError(f"FEE_BPS must be within 0..{BPS_DENOMINATOR}, got {fee}")
    return BPS_DENOMINATOR - fee, fee


def fee_caps_wei() -> Optional[Tuple[int, int]]:
    """Hard ``(maxFeePerGas, maxPriorityFeePerGas)`` ceiling, or ``None`` for dynamic estimation."""
    if Config.MAX_FEE_GWEI > 0 and Config.MAX_PRIORITY_FEE_GWEI > 0:
        return int(Config.MAX_FEE_GWEI * 10**9), int(Config.MAX_PRIORITY_FEE_GWEI * 10**9)
    return None
