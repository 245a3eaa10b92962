"""
Risk admission rules.
Pure checks over a run, its strategy, the cycle config and a counter snapshot.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from .config import GlobalConfig
from .errors import RiskRejected
from .models import Purpose, Run, Strategy
from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """
    Daily risk counters read once at the start of a decision pass.

    Approvals within one pass do not see each other's projected counter use.
    """
    per_strategy: Dict[str, Tuple[int, float]] = field(default_factory=dict)  # id -> (trades, loss)
    global_trades: int = 0
    global_loss: float = 0.0
    chains_with_pending_refill: Set[str] = field(default_factory=set)

    def trades_for(self, strategy_id: str) -> int:
        return self.per_strategy.get(strategy_id, (0, 0.0))[0]

    def loss_for(self, strategy_id: str) -> float:
        return self.per_strategy.get(strategy_id, (0, 0.0))[1]


class RiskManager:
    """Per-strategy and global limits for auto-execution."""

    def __init__(self, config: GlobalConfig):
        self.config = config

    def global_block_reason(self) -> Optional[str]:
        return self.config.blocked_reason

    def can_approve(
        self,
        run: Run,
        strategy: Optional[Strategy],
        snapshot: CounterSnapshot,
    ) -> Tuple[bool, Optional[str]]:
        """
        Check whether a simulated run may be auto-executed.

        Returns:
            (approved, rejection_reason)
        """
        try:
            self.check(run, strategy, snapshot)
        except RiskRejected as e:
            return False, e.reason
        return True, None

    def check(self, run: Run, strategy: Optional[Strategy], snapshot: CounterSnapshot) -> None:
        """Raises RiskRejected with a coded reason on the first failed limit."""
        blocked = self.global_block_reason()
        if blocked:
            raise RiskRejected(blocked)

        if strategy is None:
            raise RiskRejected("strategy_not_found: strategy missing for run")
        if not strategy.is_auto_enabled:
            raise RiskRejected("auto_disabled: strategy auto-execution disabled")

        profit = run.estimated_profit or 0.0
        gas_cost = run.estimated_gas_cost or 0.0

        if profit < strategy.min_expected_profit:
            raise RiskRejected(f"min_profit: profit {profit:.6f} below minimum {strategy.min_expected_profit:.6f}")

        # Zero gas cost cannot be priced against the ratio
        if gas_cost <= 0:
            raise RiskRejected("zero_gas_cost: estimated gas cost is zero")
        ratio = profit / gas_cost
        if ratio < strategy.min_profit_to_gas_ratio:
            raise RiskRejected(f"profit_to_gas_ratio: ratio {ratio:.2f} below minimum {strategy.min_profit_to_gas_ratio:.2f}")

        if strategy.max_trade_value is not None and run.notional_in > strategy.max_trade_value:
            raise RiskRejected(f"max_trade_value: notional {run.notional_in:.2f} exceeds max trade value {strategy.max_trade_value:.2f}")

        trades = snapshot.trades_for(strategy.id)
        if trades >= strategy.max_trades_per_day:
            raise RiskRejected(f"max_trades_per_day: daily trade limit reached ({trades}/{strategy.max_trades_per_day})")

        loss = snapshot.loss_for(strategy.id)
        if strategy.max_daily_loss > 0 and loss >= strategy.max_daily_loss:
            raise RiskRejected(f"max_daily_loss: daily loss limit reached ({loss:.2f}/{strategy.max_daily_loss:.2f})")

        if strategy.purpose == Purpose.FEE_PAYER_REFILL.value and strategy.chain not in snapshot.chains_with_pending_refill:
            raise RiskRejected("no_pending_refill: no pending fee-payer refill request")

        max_global_trades = self.config.max_global_trades_per_day
        if max_global_trades > 0 and snapshot.global_trades >= max_global_trades:
            raise RiskRejected(f"global_trades: global daily trade limit reached ({snapshot.global_trades}/{max_global_trades})")

        max_global_loss = self.config.max_global_daily_loss
        if max_global_loss > 0 and snapshot.global_loss >= max_global_loss:
            raise RiskRejected(f"global_loss: global daily loss limit reached ({snapshot.global_loss:.2f}/{max_global_loss:.2f})")


def reason_key(reason: str) -> str:
    """Rejection code of a reason string (the part before the first colon)."""
    return reason.split(":", 1)[0].strip()
