"""
Tests for risk_manager.py
"""
import pytest

from arb_automation.config import CHAIN_EVM, GlobalConfig
from arb_automation.errors import RiskRejected
from arb_automation.models import Run, Strategy
from arb_automation.risk_manager import CounterSnapshot, RiskManager, reason_key

ENABLED = GlobalConfig(auto_arbitrage_enabled=True)


def _strategy(**overrides) -> Strategy:
    values = dict(
        id="strategy-1",
        name="USDC/WMATIC",
        chain=CHAIN_EVM,
        is_auto_enabled=True,
        is_for_fee_payer_refill=False,
        is_for_ops_refill=False,
        min_expected_profit=0.0,
        min_profit_to_gas_ratio=2.0,
        max_daily_loss=0.0,
        max_trades_per_day=5,
        max_trade_value=None,
    )
    values.update(overrides)
    return Strategy(**values)


def _run(profit: float = 3.0, gas: float = 1.0, notional: float = 1000.0) -> Run:
    return Run(id="run-1", strategy_id="strategy-1", estimated_profit=profit,
               estimated_gas_cost=gas, notional_in=notional)


def _reason(config, run, strategy, snapshot=None):
    approved, reason = RiskManager(config).can_approve(run, strategy, snapshot or CounterSnapshot())
    assert not approved
    return reason_key(reason)


class TestCounterSnapshot:
    def test_defaults_to_zero(self):
        snapshot = CounterSnapshot()
        assert snapshot.trades_for("x") == 0
        assert snapshot.loss_for("x") == 0.0

    def test_lookup(self):
        snapshot = CounterSnapshot(per_strategy={"s": (3, 12.5)})
        assert snapshot.trades_for("s") == 3
        assert snapshot.loss_for("s") == 12.5


class TestRiskManager:
    def test_ratio_three_approved(self):
        approved, reason = RiskManager(ENABLED).can_approve(_run(3.0, 1.0), _strategy(), CounterSnapshot())
        assert approved
        assert reason is None

    def test_ratio_one_and_a_half_rejected(self):
        assert _reason(ENABLED, _run(1.5, 1.0), _strategy()) == "profit_to_gas_ratio"

    def test_safe_mode_blocks(self):
        config = GlobalConfig(auto_arbitrage_enabled=True, safe_mode_enabled=True, safe_mode_reason="loss")
        approved, reason = RiskManager(config).can_approve(_run(), _strategy(), CounterSnapshot())
        assert not approved
        assert reason.startswith("Safe mode enabled")

    def test_auto_disabled_globally(self):
        approved, reason = RiskManager(GlobalConfig()).can_approve(_run(), _strategy(), CounterSnapshot())
        assert not approved
        assert reason == "Auto arbitrage is disabled"

    def test_missing_strategy(self):
        assert _reason(ENABLED, _run(), None) == "strategy_not_found"

    def test_strategy_auto_disabled(self):
        assert _reason(ENABLED, _run(), _strategy(is_auto_enabled=False)) == "auto_disabled"

    def test_below_min_profit(self):
        assert _reason(ENABLED, _run(3.0), _strategy(min_expected_profit=5.0)) == "min_profit"

    def test_zero_gas_cost_rejected(self):
        assert _reason(ENABLED, _run(3.0, 0.0), _strategy()) == "zero_gas_cost"

    def test_max_trade_value(self):
        assert _reason(ENABLED, _run(notional=1000.0), _strategy(max_trade_value=500.0)) == "max_trade_value"

    def test_max_trades_per_day_reached(self):
        snapshot = CounterSnapshot(per_strategy={"strategy-1": (5, 0.0)})
        assert _reason(ENABLED, _run(), _strategy(max_trades_per_day=5), snapshot) == "max_trades_per_day"

    def test_below_max_trades_per_day(self):
        snapshot = CounterSnapshot(per_strategy={"strategy-1": (4, 0.0)})
        approved, _ = RiskManager(ENABLED).can_approve(_run(), _strategy(max_trades_per_day=5), snapshot)
        assert approved

    def test_daily_loss_limit(self):
        snapshot = CounterSnapshot(per_strategy={"strategy-1": (1, 100.0)})
        assert _reason(ENABLED, _run(), _strategy(max_daily_loss=100.0), snapshot) == "max_daily_loss"

    def test_zero_daily_loss_means_unlimited(self):
        snapshot = CounterSnapshot(per_strategy={"strategy-1": (1, 10_000.0)})
        approved, _ = RiskManager(ENABLED).can_approve(_run(), _strategy(max_daily_loss=0.0), snapshot)
        assert approved

    def test_refill_strategy_needs_pending_request(self):
        strategy = _strategy(is_for_fee_payer_refill=True)
        assert _reason(ENABLED, _run(), strategy) == "no_pending_refill"
        snapshot = CounterSnapshot(chains_with_pending_refill={CHAIN_EVM})
        approved, _ = RiskManager(ENABLED).can_approve(_run(), strategy, snapshot)
        assert approved

    def test_global_trade_limit(self):
        config = GlobalConfig(auto_arbitrage_enabled=True, max_global_trades_per_day=20)
        assert _reason(config, _run(), _strategy(), CounterSnapshot(global_trades=20)) == "global_trades"

    def test_global_loss_limit(self):
        config = GlobalConfig(auto_arbitrage_enabled=True, max_global_daily_loss=1000.0)
        assert _reason(config, _run(), _strategy(), CounterSnapshot(global_loss=1000.0)) == "global_loss"

    def test_check_raises_risk_rejected(self):
        with pytest.raises(RiskRejected) as exc_info:
            RiskManager(ENABLED).check(_run(1.5, 1.0), _strategy(), CounterSnapshot())
        assert exc_info.value.reason.startswith("profit_to_gas_ratio:")


class TestReasonKey:
    def test_code_before_colon(self):
        assert reason_key("min_profit: profit 1 below minimum 2") == "min_profit"

    def test_no_colon(self):
        assert reason_key("zero_gas_cost") == "zero_gas_cost"
