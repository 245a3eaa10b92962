"""
Tests for config loading, validation and the GlobalConfig snapshot.
"""
import json

import pytest

from arb_automation.config import (
    CHAIN_EVM,
    CHAIN_SOLANA,
    GasModel,
    GlobalConfig,
    WalletThresholds,
    build_app_config,
    load_raw_config,
)

ENV_VARS = (
    "DATABASE_URL", "RPC_URL", "FALLBACK_RPC_URL", "JUPITER_API_URL", "JUPITER_API_KEY",
    "ZEROX_API_KEY", "QUOTE_TIMEOUT", "SLIPPAGE_BPS", "MAX_SLIPPAGE_BPS", "MAX_COMBINATIONS",
    "INTER_QUOTE_DELAY", "BATCH_PAUSE", "DEFAULT_NOTIONAL", "RATE_LIMIT_THRESHOLD",
    "GAS_PRICE_GWEI", "EVM_NATIVE_PRICE", "SOL_PRICE_USDC", "CYCLE_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestBuildAppConfig:
    def test_defaults(self):
        config = build_app_config({})
        assert config.scanner.max_combinations == 5
        assert config.scanner.slippage_bps == 30
        assert config.retry.rate_limit_threshold == 2
        assert config.cycle.interval_seconds == 300.0
        assert config.cycle.timeout_seconds == 240.0
        assert config.execution.max_runs_per_cycle == 10
        assert config.wallet_thresholds[CHAIN_SOLANA].low == 0.05
        assert config.wallet_thresholds[CHAIN_EVM].refill_multiplier == 10.0

    def test_slippage_clamped_to_max(self, monkeypatch):
        monkeypatch.setenv("SLIPPAGE_BPS", "500")
        monkeypatch.setenv("MAX_SLIPPAGE_BPS", "100")
        config = build_app_config({})
        assert config.scanner.slippage_bps == 100

    def test_max_combinations_capped(self):
        config = build_app_config({"scanner": {"max_combinations": 80}})
        assert config.scanner.max_combinations == 50

    def test_env_overrides_config_json(self, monkeypatch):
        monkeypatch.setenv("MAX_COMBINATIONS", "7")
        config = build_app_config({"scanner": {"max_combinations": 3}})
        assert config.scanner.max_combinations == 7

    def test_sections_merged(self):
        config = build_app_config({
            "gas": {"solana": {"native_price": 200.0}},
            "wallets": {"evm": {"low": 0.5}},
            "execution": {"max_runs_per_cycle": 3},
            "evm_rpc_urls": {"POLYGON": "https://example-rpc"},
        })
        assert config.gas_models[CHAIN_SOLANA].native_price == 200.0
        assert config.wallet_thresholds[CHAIN_EVM].low == 0.5
        assert config.execution.max_runs_per_cycle == 3
        assert config.evm_rpc_urls["POLYGON"] == "https://example-rpc"

    def test_lease_outlives_cycle_timeout(self, monkeypatch):
        monkeypatch.setenv("CYCLE_TIMEOUT", "600")
        config = build_app_config({})
        assert config.cycle.lease_ttl_seconds >= 660

    def test_unsupported_chain_rejected(self):
        with pytest.raises(ValueError):
            build_app_config({"cycle": {"chains": ["COSMOS"]}})


class TestLoadRawConfig:
    def test_reads_config_json(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"scanner": {"batch_size": 4}}))
        assert load_raw_config(tmp_path) == {"scanner": {"batch_size": 4}}

    def test_missing_files(self, tmp_path):
        assert load_raw_config(tmp_path) == {}


class TestGasModel:
    def test_cost_scales_with_legs(self):
        model = GasModel(units_per_leg=150_000, unit_price_native=50e-9, native_price=0.40)
        assert model.native_cost(2) == pytest.approx(0.015)
        assert model.cost(2) == pytest.approx(0.006)
        assert model.cost(3) == pytest.approx(0.009)


class TestWalletThresholds:
    def test_classify(self):
        thresholds = WalletThresholds(low=0.05, critical=0.01, refill_multiplier=2.0)
        assert thresholds.classify(0.005) == "CRITICAL"
        assert thresholds.classify(0.03) == "LOW"
        assert thresholds.classify(0.05) == "HEALTHY"


class TestGlobalConfig:
    def test_defaults_block_automation(self):
        assert GlobalConfig().blocked_reason == "Auto arbitrage is disabled"

    def test_safe_mode_reason_wins(self):
        config = GlobalConfig(auto_arbitrage_enabled=True, safe_mode_enabled=True, safe_mode_reason="loss")
        assert config.blocked_reason == "Safe mode enabled: loss"

    def test_enabled(self):
        assert GlobalConfig(auto_arbitrage_enabled=True).blocked_reason is None

    def test_frozen(self):
        config = GlobalConfig(auto_arbitrage_enabled=True)
        with pytest.raises(Exception):
            config.safe_mode_enabled = True
