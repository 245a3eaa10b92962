"""
Execution engine: settles approved runs on-chain and trips safe mode on loss breaches.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import repository
from .config import ExecutionSettings, GlobalConfig
from .decision_engine import load_counter_snapshot
from .errors import ArbitrageError
from .executors import ChainExecutor, TradeOutcome
from .key_store import KeyStore
from .models import Purpose, Run, RunStatus, Strategy
from .results import ExecutionResult, RunOutcome, SafeModeTrip
from .risk_manager import RiskManager
from .utils import get_terminal_colors, utc_today, utcnow

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

REFILL_PURPOSES = (Purpose.FEE_PAYER_REFILL.value, Purpose.OPS_REFILL.value)


class ExecutionEngine:
    """
    Executes approved SIMULATED runs one at a time.

    Each run is re-checked against current counters before it trades. Every
    attempted run ends EXECUTED or FAILED and bumps its daily counter. A loss
    breach persists safe mode, halts the batch and revokes the approvals of
    the runs left in it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        executors: Dict[str, ChainExecutor],
        key_store: KeyStore,
        settings: Optional[ExecutionSettings] = None,
    ):
        self.session_factory = session_factory
        self.executors = executors
        self.key_store = key_store
        self.settings = settings or ExecutionSettings()
        self._strategy_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, strategy_id: str) -> asyncio.Lock:
        if strategy_id not in self._strategy_locks:
            self._strategy_locks[strategy_id] = asyncio.Lock()
        return self._strategy_locks[strategy_id]

    async def execute(self, config: GlobalConfig, runs: Optional[List[Run]] = None) -> ExecutionResult:
        """
        Args:
            config: Cycle config snapshot (never mutated)
            runs: Runs to execute; defaults to approved runs from the database

        Returns:
            ExecutionResult; safe_mode_trip is set when this batch tripped safe mode
        """
        result = ExecutionResult()

        blocked = config.blocked_reason
        if blocked:
            result.skipped_reason = blocked
            logger.info(f"{colors['YELLOW']}Execution skipped:{colors['RESET']} {blocked}")
            return result

        async with self.session_factory() as session:
            if runs is None:
                runs = await repository.approved_runs(
                    session, self.settings.run_max_age_seconds, self.settings.max_runs_per_cycle
                )
            runs = [r for r in runs if r.approved_for_auto_execution][: self.settings.max_runs_per_cycle]
            strategies = await repository.strategies_by_id(session, {r.strategy_id for r in runs})

        if not runs:
            logger.info(f"{colors['DIM']}No approved runs to execute{colors['RESET']}")
            return result

        for index, run in enumerate(runs):
            strategy = strategies.get(run.strategy_id)
            async with self._lock_for(run.strategy_id):
                proceed, revoked_reason = await self._revalidate(config, run, strategy)
                if revoked_reason is not None:
                    result.revoked_count += 1
                    logger.warning(
                        f"{colors['YELLOW']}Approval revoked{colors['RESET']} for run {run.id[:8]}: {revoked_reason}"
                    )
                if not proceed:
                    continue

                outcome = await self._execute_one(run, strategy)
                if outcome is None:
                    continue
                result.attempted += 1
                result.outcomes.append(outcome)
                if outcome.success:
                    result.executed_count += 1
                    result.total_pnl += outcome.actual_profit or 0.0
                else:
                    result.failed_count += 1

                trip = await self._check_safe_mode(config, strategy, outcome)

            if trip is not None:
                await repository.persist_safe_mode_trip(self.session_factory, trip)
                result.safe_mode_trip = trip
                result.halted = True
                logger.error(f"{colors['RED']}SAFE MODE TRIPPED:{colors['RESET']} {trip.reason}")
                async with self.session_factory() as session:
                    revoked = await repository.revoke_approvals(session, [r.id for r in runs[index + 1:]])
                    await session.commit()
                result.revoked_count += revoked
                if revoked:
                    logger.warning(f"Revoked approval of {revoked} queued run(s)")
                break

        logger.info(
            f"Execution: {colors['GREEN']}{result.executed_count}{colors['RESET']} executed, "
            f"{colors['RED']}{result.failed_count}{colors['RESET']} failed, "
            f"PnL {colors['YELLOW']}{result.total_pnl:+.6f}{colors['RESET']}"
        )
        return result

    async def _revalidate(
        self,
        config: GlobalConfig,
        run: Run,
        strategy: Optional[Strategy],
    ) -> Tuple[bool, Optional[str]]:
        """
        Re-read the run and apply the risk checks to today's current counters.

        A run that no longer passes loses its approval and stays SIMULATED.

        Returns:
            (proceed, revoked_reason)
        """
        async with self.session_factory() as session:
            fresh = await session.get(Run, run.id)
            if fresh is None or fresh.is_terminal or fresh.auto_executed:
                logger.debug(f"Run {run.id[:8]} already settled, skipping")
                return False, None
            if not fresh.approved_for_auto_execution:
                logger.debug(f"Run {run.id[:8]} is no longer approved, skipping")
                return False, None

            approved, reason = RiskManager(config).can_approve(fresh, strategy, await load_counter_snapshot(session))
            if approved:
                return True, None
            await repository.revoke_approvals(session, [run.id])
            await session.commit()
        return False, reason

    async def _execute_one(self, run: Run, strategy: Strategy) -> Optional[RunOutcome]:
        """Execute and settle one run. Returns None if the run was settled concurrently."""
        trade = await self._trade(run, strategy)
        status = RunStatus.EXECUTED.value if trade.success else RunStatus.FAILED.value

        async with self.session_factory() as session:
            settled = await repository.settle_run(
                session,
                run.id,
                status,
                actual_profit=trade.actual_profit if trade.success else None,
                error_message=None if trade.success else trade.error,
                tx_signature=trade.tx_reference,
            )
            if settled and trade.success and strategy.purpose in REFILL_PURPOSES:
                request_id = await repository.fulfil_refill_request(session, strategy.chain, run.id)
                if request_id:
                    logger.info(f"Refill request {request_id[:8]} fulfilled by run {run.id[:8]}")
            await session.commit()

        if not settled:
            logger.warning(f"Run {run.id[:8]} was settled concurrently, result discarded")
            return None

        await repository.increment_daily_counter(
            self.session_factory,
            run.strategy_id,
            strategy.chain,
            utc_today(),
            trade.actual_profit if trade.success else None,
        )

        if trade.success:
            logger.info(
                f"{colors['GREEN']}Executed{colors['RESET']} run {run.id[:8]}: "
                f"actual profit {colors['YELLOW']}{trade.actual_profit:+.6f}{colors['RESET']} "
                f"(estimated {run.estimated_profit:.6f}) tx={trade.tx_reference}"
            )
        else:
            logger.warning(f"{colors['RED']}Run {run.id[:8]} failed:{colors['RESET']} {trade.error}")

        return RunOutcome(
            run_id=run.id,
            strategy_id=run.strategy_id,
            success=trade.success,
            tx_reference=trade.tx_reference,
            actual_profit=trade.actual_profit if trade.success else None,
            error=trade.error,
        )

    async def _trade(self, run: Run, strategy: Strategy) -> TradeOutcome:
        executor = self.executors.get(strategy.chain)
        if executor is None:
            return TradeOutcome(success=False, error=f"No executor configured for chain {strategy.chain}")

        label = strategy.signer_label or self.settings.default_signer_labels.get(strategy.chain)
        try:
            signer = self.key_store.signer_for(label, strategy.chain)
        except KeyError as e:
            return TradeOutcome(success=False, error=f"Signer unavailable: {e.args[0] if e.args else label}")

        try:
            return await executor.execute(run, strategy, signer)
        except ArbitrageError as e:
            tx_reference = getattr(e, "tx_reference", None)
            return TradeOutcome(success=False, tx_reference=tx_reference, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error executing run {run.id[:8]}")
            return TradeOutcome(success=False, error=str(e) or type(e).__name__)

    async def _check_safe_mode(
        self,
        config: GlobalConfig,
        strategy: Strategy,
        outcome: RunOutcome,
    ) -> Optional[SafeModeTrip]:
        loss = -outcome.actual_profit if outcome.success and (outcome.actual_profit or 0) < 0 else 0.0
        if loss > 0 and strategy.max_daily_loss > 0 and loss > strategy.max_daily_loss:
            return SafeModeTrip(
                reason=(
                    f"Run {outcome.run_id[:8]} loss {loss:.2f} exceeded strategy "
                    f"'{strategy.name}' max daily loss {strategy.max_daily_loss:.2f}"
                ),
                triggered_at=utcnow(),
            )

        limit = config.max_global_daily_loss
        if limit > 0:
            async with self.session_factory() as session:
                _, global_loss = await repository.global_totals(session, utc_today())
            if global_loss > limit:
                return SafeModeTrip(
                    reason=f"Global daily loss {global_loss:.2f} exceeded limit {limit:.2f}",
                    triggered_at=utcnow(),
                )
        return None


async def clear_safe_mode(session_factory: async_sessionmaker, operator_note: Optional[str] = None) -> bool:
    """Operator surface for leaving safe mode; nothing else clears it."""
    return await repository.clear_safe_mode(session_factory, operator_note)
