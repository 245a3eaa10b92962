"""
Pytest configuration and fixtures for arbitrage automation tests.
"""
import pytest
from unittest.mock import MagicMock

from sqlalchemy import update

from arb_automation.config import (
    CHAIN_EVM,
    CHAIN_SOLANA,
    POLYGON_TOKENS,
    GasModel,
    ScannerSettings,
    WalletThresholds,
)
from arb_automation.database import create_db_engine, create_session_factory, init_db
from arb_automation.models import GlobalSettings, Run, RunStatus, ScanOutcome, Strategy
from arb_automation.repository import get_global_settings
from arb_automation.retry_policy import RetryPolicy

USDC = POLYGON_TOKENS["USDC"]
WMATIC = POLYGON_TOKENS["WMATIC"]
WETH = POLYGON_TOKENS["WETH"]


@pytest.fixture
def usdc():
    return USDC


@pytest.fixture
def wmatic():
    return WMATIC


@pytest.fixture
def weth():
    return WETH


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def gas_models():
    """Flat gas: 0.5 notional units per leg on both chains."""
    return {
        CHAIN_EVM: GasModel(units_per_leg=1, unit_price_native=1.0, native_price=0.5),
        CHAIN_SOLANA: GasModel(units_per_leg=1, unit_price_native=1.0, native_price=0.5),
    }


@pytest.fixture
def fast_scanner_settings():
    """Scanner settings with every pause disabled."""
    return ScannerSettings(inter_quote_delay=0.0, batch_pause=0.0, slippage_bps=30)


@pytest.fixture
def fast_retry_policy():
    return RetryPolicy(max_attempts=3, delays=(0.0, 0.0, 0.0), rate_limit_threshold=2, rate_limit_cooldown=0.0)


@pytest.fixture
def wallet_thresholds():
    return {
        CHAIN_SOLANA: WalletThresholds(low=0.05, critical=0.01, refill_multiplier=2.0),
        CHAIN_EVM: WalletThresholds(low=0.01, critical=0.002, refill_multiplier=10.0),
    }


@pytest.fixture
def add_strategy(session_factory):
    """Insert a strategy; keyword arguments override the defaults."""
    async def _add(**overrides) -> Strategy:
        values = dict(
            name="USDC/WMATIC",
            chain=CHAIN_EVM,
            network="POLYGON",
            token_in=USDC,
            token_out=WMATIC,
            token_in_decimals=6,
            dex_a="Uniswap_V3",
            dex_b="QuickSwap",
            scan_mode="SOURCE_MATRIX",
            trade_notional=1000.0,
            is_enabled=True,
            is_auto_enabled=True,
            min_expected_profit=0.0,
            min_profit_to_gas_ratio=2.0,
            max_daily_loss=0.0,
            max_trades_per_day=10,
        )
        values.update(overrides)
        strategy = Strategy(**values)
        async with session_factory() as session:
            session.add(strategy)
            await session.commit()
        return strategy
    return _add


@pytest.fixture
def add_run(session_factory):
    """Insert a profitable SIMULATED run for a strategy."""
    async def _add(strategy: Strategy, **overrides) -> Run:
        values = dict(
            strategy_id=strategy.id,
            status=RunStatus.SIMULATED.value,
            outcome=ScanOutcome.PROFITABLE.value,
            scan_mode=strategy.scan_mode,
            token_path=[strategy.token_in, strategy.token_out, strategy.token_in],
            sources=["Uniswap_V3", "QuickSwap"],
            notional_in=1000.0,
            estimated_gas_cost=1.0,
            estimated_profit=3.0,
            purpose=strategy.purpose,
        )
        values.update(overrides)
        run = Run(**values)
        async with session_factory() as session:
            session.add(run)
            await session.commit()
        return run
    return _add


@pytest.fixture
def set_global(session_factory):
    """Update the global settings row."""
    async def _set(**values):
        async with session_factory() as session:
            await get_global_settings(session)
            await session.execute(update(GlobalSettings).where(GlobalSettings.id == 1).values(**values))
            await session.commit()
    return _set


@pytest.fixture
def evm_signer():
    signer = MagicMock()
    signer.chain = CHAIN_EVM
    signer.address = "0x1111111111111111111111111111111111111111"
    signer.sign_transaction.return_value = b"signed"
    return signer
