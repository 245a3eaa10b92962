"""
Decision engine: marks simulated runs approved (or not) for auto-execution.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import repository
from .config import GlobalConfig
from .models import Run, RunStatus
from .results import DecisionResult
from .risk_manager import CounterSnapshot, RiskManager, reason_key
from .utils import get_terminal_colors, utc_today

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


async def load_counter_snapshot(session) -> CounterSnapshot:
    """Today's (UTC) per-strategy and global counters plus chains awaiting a refill."""
    today = utc_today()
    global_trades, global_loss = await repository.global_totals(session, today)
    return CounterSnapshot(
        per_strategy=await repository.counters_for_day(session, today),
        global_trades=global_trades,
        global_loss=global_loss,
        chains_with_pending_refill=await repository.chains_with_pending_refill(session),
    )


class DecisionEngine:
    """
    Pure filter over simulated runs.

    Never changes profit estimates and never touches chain state; the only
    write is the approved_for_auto_execution flag.
    """

    def __init__(self, session_factory: async_sessionmaker, run_max_age_seconds: float = 900.0):
        self.session_factory = session_factory
        self.run_max_age_seconds = run_max_age_seconds

    async def decide(self, config: GlobalConfig, runs: Optional[List[Run]] = None) -> DecisionResult:
        """
        Evaluate runs against per-strategy and global limits.

        Args:
            config: Cycle config snapshot
            runs: Runs to evaluate; defaults to every pending SIMULATED run

        Returns:
            DecisionResult with approved_count
        """
        result = DecisionResult()

        blocked = config.blocked_reason
        if blocked:
            result.skipped_reason = blocked
            logger.info(f"{colors['YELLOW']}Decision skipped:{colors['RESET']} {blocked}")
            return result

        risk = RiskManager(config)
        async with self.session_factory() as session:
            if runs is None:
                runs = await repository.pending_runs(session, self.run_max_age_seconds)
            candidates = [
                run for run in sorted(runs, key=lambda r: (r.created_at, r.id))
                if run.status == RunStatus.SIMULATED.value
                and not run.error_message
                and (run.estimated_profit or 0) > 0
            ]
            if not candidates:
                logger.info(f"{colors['DIM']}No simulated runs to evaluate{colors['RESET']}")
                return result

            strategies = await repository.strategies_by_id(session, {run.strategy_id for run in candidates})
            snapshot = await load_counter_snapshot(session)

            approvals: Dict[str, bool] = {}
            for run in candidates:
                approved, reason = risk.can_approve(run, strategies.get(run.strategy_id), snapshot)
                approvals[run.id] = approved
                result.evaluated += 1
                if approved:
                    result.approved_count += 1
                    result.approved_run_ids.append(run.id)
                    logger.info(
                        f"{colors['GREEN']}Approved{colors['RESET']} run {run.id[:8]} "
                        f"(profit {colors['YELLOW']}{run.estimated_profit:.6f}{colors['RESET']}, "
                        f"gas {run.estimated_gas_cost:.6f})"
                    )
                else:
                    result.rejected_count += 1
                    key = reason_key(reason)
                    result.rejection_reasons[key] = result.rejection_reasons.get(key, 0) + 1
                    logger.debug(f"Rejected run {run.id[:8]}: {reason}")

            await repository.set_run_approvals(session, approvals)
            await session.commit()

        logger.info(
            f"Decision: {colors['GREEN']}{result.approved_count}{colors['RESET']} approved, "
            f"{result.rejected_count} rejected of {result.evaluated} evaluated"
        )
        return result
