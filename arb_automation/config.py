"""
Configuration: process-level settings loaded from .env / config.json, and the
per-cycle GlobalConfig snapshot read from the global_settings row.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent

CHAIN_SOLANA = "SOLANA"
CHAIN_EVM = "EVM"
SUPPORTED_CHAINS = (CHAIN_SOLANA, CHAIN_EVM)

SCAN_MODE_SOURCE_MATRIX = "SOURCE_MATRIX"
SCAN_MODE_TRIANGULAR = "TRIANGULAR"

# Venues used when a strategy does not name its own
DEFAULT_SOURCES: Dict[str, List[str]] = {
    CHAIN_EVM: ["Uniswap_V3", "QuickSwap", "SushiSwap", "Curve", "Balancer_V2"],
    CHAIN_SOLANA: ["Raydium", "Orca", "Meteora", "Phoenix"],
}

EVM_RPC_URLS: Dict[str, str] = {
    "POLYGON": "https://polygon-rpc.com",
    "ETHEREUM": "https://eth.llamarpc.com",
    "ARBITRUM": "https://arb1.arbitrum.io/rpc",
    "BSC": "https://bsc-dataseed1.binance.org",
    "POLYGON_AMOY": "https://rpc-amoy.polygon.technology",
    "SEPOLIA": "https://rpc.sepolia.org",
    "ARBITRUM_SEPOLIA": "https://sepolia-rollup.arbitrum.io/rpc",
    "BSC_TESTNET": "https://data-seed-prebsc-1-s1.binance.org:8545",
}

POLYGON_TOKENS: Dict[str, str] = {
    "WMATIC": "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",
    "USDC.e": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
    "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
    "WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
    "DAI": "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063",
}


@dataclass
class ScannerSettings:
    """Opportunity scanner pacing and sizing."""
    max_combinations: int = 5
    max_combinations_cap: int = 50
    inter_quote_delay: float = 1.5  # seconds between leg quotes
    batch_size: int = 2
    batch_pause: float = 5.0  # seconds after every batch_size combinations
    slippage_bps: int = 30
    max_slippage_bps: int = 100
    default_notional: float = 1000.0  # in token_in units (e.g. USDC)
    max_notional: float = 10000.0
    top_results: int = 20


@dataclass
class RetrySettings:
    """Quote retry schedule and cumulative rate-limit budget."""
    max_attempts: int = 3
    delays: List[float] = field(default_factory=lambda: [0.0, 0.25, 0.75])
    relax_on_no_liquidity: bool = False
    rate_limit_threshold: int = 2
    rate_limit_cooldown: float = 3.0


@dataclass
class GasModel:
    """
    Gas cost model for one chain, expressed in the notional's unit.

    cost = legs * units_per_leg * unit_price_native * native_price
    """
    units_per_leg: int
    unit_price_native: float  # native tokens per gas unit (gwei * 1e-9, or 1e-9 SOL per lamport)
    native_price: float  # price of the native token in notional units

    def cost(self, legs: int) -> float:
        return legs * self.units_per_leg * self.unit_price_native * self.native_price

    def native_cost(self, legs: int) -> float:
        return legs * self.units_per_leg * self.unit_price_native


@dataclass
class WalletThresholds:
    """Fee-payer balance thresholds in native units."""
    low: float
    critical: float
    refill_multiplier: float

    def classify(self, balance: float) -> str:
        if balance < self.critical:
            return "CRITICAL"
        if balance < self.low:
            return "LOW"
        return "HEALTHY"


@dataclass
class CycleSettings:
    interval_seconds: float = 300.0
    timeout_seconds: Optional[float] = 240.0
    lease_ttl_seconds: float = 300.0
    chains: List[str] = field(default_factory=lambda: list(SUPPORTED_CHAINS))


@dataclass
class ExecutionSettings:
    max_runs_per_cycle: int = 10
    run_max_age_seconds: float = 900.0
    confirm_timeout_seconds: float = 30.0
    default_signer_labels: Dict[str, str] = field(
        default_factory=lambda: {CHAIN_SOLANA: "SOLANA_FEE_PAYER", CHAIN_EVM: "EVM_FEE_PAYER"}
    )


@dataclass
class AppConfig:
    """Process configuration assembled by load_config()."""
    database_url: str = "sqlite+aiosqlite:///arb_automation.db"
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_fallback_rpc_url: Optional[str] = None
    jupiter_api_url: Optional[str] = None
    jupiter_api_key: Optional[str] = None
    zerox_api_key: Optional[str] = None
    quote_timeout: float = 10.0
    quote_requests_per_second: float = 2.0
    evm_rpc_urls: Dict[str, str] = field(default_factory=lambda: dict(EVM_RPC_URLS))
    scanner: ScannerSettings = field(default_factory=ScannerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    gas_models: Dict[str, GasModel] = field(default_factory=lambda: {
        CHAIN_EVM: GasModel(units_per_leg=150_000, unit_price_native=50e-9, native_price=0.40),
        CHAIN_SOLANA: GasModel(units_per_leg=15_000, unit_price_native=1e-9, native_price=150.0),
    })
    wallet_thresholds: Dict[str, WalletThresholds] = field(default_factory=lambda: {
        CHAIN_SOLANA: WalletThresholds(low=0.05, critical=0.01, refill_multiplier=2.0),
        CHAIN_EVM: WalletThresholds(low=0.01, critical=0.002, refill_multiplier=10.0),
    })
    cycle: CycleSettings = field(default_factory=CycleSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)


@dataclass(frozen=True)
class GlobalConfig:
    """
    Immutable snapshot of the global_settings row, loaded once per cycle and
    passed explicitly to every phase. Phases never mutate it; a safe-mode trip
    is returned from the execution phase instead.
    """
    auto_arbitrage_enabled: bool = False
    safe_mode_enabled: bool = False
    safe_mode_triggered_at: Optional[datetime] = None
    safe_mode_reason: Optional[str] = None
    max_global_daily_loss: float = 0.0
    max_global_trades_per_day: int = 0

    @classmethod
    def from_row(cls, row) -> "GlobalConfig":
        if row is None:
            return cls()
        return cls(
            auto_arbitrage_enabled=bool(row.auto_arbitrage_enabled),
            safe_mode_enabled=bool(row.safe_mode_enabled),
            safe_mode_triggered_at=row.safe_mode_triggered_at,
            safe_mode_reason=row.safe_mode_reason,
            max_global_daily_loss=float(row.max_global_daily_loss or 0.0),
            max_global_trades_per_day=int(row.max_global_trades_per_day or 0),
        )

    @property
    def blocked_reason(self) -> Optional[str]:
        """Why automation must not approve or execute anything, if it must not."""
        if self.safe_mode_enabled:
            return f"Safe mode enabled: {self.safe_mode_reason or 'no reason recorded'}"
        if not self.auto_arbitrage_enabled:
            return "Auto arbitrage is disabled"
        return None


def load_raw_config(root: Optional[Path] = None) -> dict:
    """Load configuration from .env and config.json."""
    root = root or PROJECT_ROOT
    env_path = root / '.env'
    if env_path.exists():
        dotenv.load_dotenv(env_path)
    else:
        logger.debug(f".env file not found at {env_path}")

    config_path = root / 'config.json'
    if config_path.exists():
        with open(config_path, 'r') as f:
            return json.load(f)
    logger.debug(f"config.json not found at {config_path}")
    return {}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _merge(dataclass_obj, overrides: Dict[str, Any]):
    for key, value in (overrides or {}).items():
        if hasattr(dataclass_obj, key):
            setattr(dataclass_obj, key, value)
        else:
            logger.warning(f"Unknown config key ignored: {type(dataclass_obj).__name__}.{key}")
    return dataclass_obj


def build_app_config(raw: Optional[dict] = None) -> AppConfig:
    """
    Build AppConfig from a config.json dict, then apply environment overrides.

    Args:
        raw: Parsed config.json contents (may be empty)

    Returns:
        AppConfig
    """
    raw = raw or {}
    config = AppConfig()

    _merge(config.scanner, raw.get("scanner"))
    _merge(config.retry, raw.get("retry"))
    _merge(config.cycle, raw.get("cycle"))
    _merge(config.execution, raw.get("execution"))
    config.evm_rpc_urls.update(raw.get("evm_rpc_urls", {}))

    for chain, gas in raw.get("gas", {}).items():
        _merge(config.gas_models[chain.upper()], gas)
    for chain, thresholds in raw.get("wallets", {}).items():
        _merge(config.wallet_thresholds[chain.upper()], thresholds)

    # Environment variables take precedence over config.json
    config.database_url = os.getenv("DATABASE_URL", config.database_url)
    config.solana_rpc_url = os.getenv("RPC_URL", config.solana_rpc_url)
    config.solana_fallback_rpc_url = os.getenv("FALLBACK_RPC_URL") or None
    config.jupiter_api_url = os.getenv("JUPITER_API_URL") or None
    config.jupiter_api_key = os.getenv("JUPITER_API_KEY") or None
    config.zerox_api_key = os.getenv("ZEROX_API_KEY") or None
    config.quote_timeout = _env_float("QUOTE_TIMEOUT", config.quote_timeout)

    scanner = config.scanner
    scanner.slippage_bps = _env_int("SLIPPAGE_BPS", scanner.slippage_bps)
    scanner.max_slippage_bps = _env_int("MAX_SLIPPAGE_BPS", scanner.max_slippage_bps)
    scanner.max_combinations = _env_int("MAX_COMBINATIONS", scanner.max_combinations)
    scanner.inter_quote_delay = _env_float("INTER_QUOTE_DELAY", scanner.inter_quote_delay)
    scanner.batch_pause = _env_float("BATCH_PAUSE", scanner.batch_pause)
    scanner.default_notional = _env_float("DEFAULT_NOTIONAL", scanner.default_notional)
    config.retry.rate_limit_threshold = _env_int("RATE_LIMIT_THRESHOLD", config.retry.rate_limit_threshold)

    evm_gas = config.gas_models[CHAIN_EVM]
    evm_gas.unit_price_native = _env_float("GAS_PRICE_GWEI", evm_gas.unit_price_native * 1e9) * 1e-9
    evm_gas.native_price = _env_float("EVM_NATIVE_PRICE", evm_gas.native_price)
    config.gas_models[CHAIN_SOLANA].native_price = _env_float(
        "SOL_PRICE_USDC", config.gas_models[CHAIN_SOLANA].native_price
    )

    config.cycle.timeout_seconds = _env_float("CYCLE_TIMEOUT", config.cycle.timeout_seconds or 0) or None

    validate_app_config(config)
    return config


def validate_app_config(config: AppConfig) -> None:
    """Clamp unsafe values; log what was changed."""
    scanner = config.scanner
    if scanner.slippage_bps > scanner.max_slippage_bps:
        logger.warning(
            f"SLIPPAGE_BPS ({scanner.slippage_bps}) exceeds MAX_SLIPPAGE_BPS ({scanner.max_slippage_bps}). "
            f"Using MAX_SLIPPAGE_BPS as limit."
        )
        scanner.slippage_bps = scanner.max_slippage_bps
    if scanner.max_combinations > scanner.max_combinations_cap:
        logger.warning(
            f"max_combinations {scanner.max_combinations} capped at {scanner.max_combinations_cap}"
        )
        scanner.max_combinations = scanner.max_combinations_cap
    if scanner.batch_size < 1:
        scanner.batch_size = 1
    if config.retry.max_attempts < 1:
        config.retry.max_attempts = 1
    for chain in config.cycle.chains:
        if chain not in SUPPORTED_CHAINS:
            raise ValueError(f"Unsupported chain in cycle.chains: {chain}")
    if config.cycle.timeout_seconds:
        config.cycle.lease_ttl_seconds = max(config.cycle.lease_ttl_seconds, config.cycle.timeout_seconds + 60)


def load_config(root: Optional[Path] = None) -> AppConfig:
    return build_app_config(load_raw_config(root))
