"""
Persistence helpers shared by the phases.

Each function takes either an open AsyncSession (caller owns the transaction)
or the session factory (function owns a short transaction of its own).
"""
import logging
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import GlobalConfig
from .models import (
    AutomationCycleLog,
    CycleLease,
    DailyRiskCounter,
    FeePayerWallet,
    GlobalSettings,
    RefillStatus,
    Run,
    RunStatus,
    Strategy,
    WalletRefillRequest,
)
from .results import SafeModeTrip
from .utils import utcnow

logger = logging.getLogger(__name__)

GLOBAL_SETTINGS_ID = 1


# ==================== GLOBAL SETTINGS ====================


async def get_global_settings(session: AsyncSession) -> GlobalSettings:
    """Return the singleton settings row, creating it with defaults if missing."""
    row = await session.get(GlobalSettings, GLOBAL_SETTINGS_ID)
    if row is None:
        row = GlobalSettings(id=GLOBAL_SETTINGS_ID)
        session.add(row)
        await session.flush()
    return row


async def load_global_config(session_factory: async_sessionmaker) -> GlobalConfig:
    async with session_factory() as session:
        row = await get_global_settings(session)
        await session.commit()
        return GlobalConfig.from_row(row)


async def persist_safe_mode_trip(session_factory: async_sessionmaker, trip: SafeModeTrip) -> None:
    """Write a safe-mode trip. An already-tripped row keeps its original reason."""
    async with session_factory() as session:
        row = await get_global_settings(session)
        if row.safe_mode_enabled:
            logger.info(f"Safe mode already enabled since {row.safe_mode_triggered_at}, keeping original reason")
        else:
            row.safe_mode_enabled = True
            row.safe_mode_triggered_at = trip.triggered_at
            row.safe_mode_reason = trip.reason
        await session.commit()


async def clear_safe_mode(session_factory: async_sessionmaker, note: Optional[str] = None) -> bool:
    """
    Operator action: clear safe mode.

    Returns:
        True if safe mode was enabled and is now cleared
    """
    async with session_factory() as session:
        row = await get_global_settings(session)
        was_enabled = bool(row.safe_mode_enabled)
        row.safe_mode_enabled = False
        row.safe_mode_triggered_at = None
        row.safe_mode_reason = None
        await session.commit()
    if was_enabled:
        logger.warning(f"Safe mode cleared by operator{': ' + note if note else ''}")
    return was_enabled


# ==================== STRATEGIES & RUNS ====================


async def enabled_strategies(session: AsyncSession, chain: str) -> List[Strategy]:
    result = await session.execute(
        select(Strategy)
        .where(Strategy.chain == chain, Strategy.is_enabled.is_(True))
        .order_by(Strategy.created_at)
    )
    return list(result.scalars().all())


async def strategies_by_id(session: AsyncSession, ids: Iterable[str]) -> Dict[str, Strategy]:
    ids = set(ids)
    if not ids:
        return {}
    result = await session.execute(select(Strategy).where(Strategy.id.in_(ids)))
    return {s.id: s for s in result.scalars().all()}


async def pending_runs(session: AsyncSession, max_age_seconds: float) -> List[Run]:
    """SIMULATED, error-free, positive-profit runs awaiting a decision, oldest first."""
    cutoff = utcnow() - timedelta(seconds=max_age_seconds)
    result = await session.execute(
        select(Run)
        .where(
            Run.status == RunStatus.SIMULATED.value,
            Run.error_message.is_(None),
            Run.estimated_profit > 0,
            Run.auto_executed.is_(False),
            Run.created_at >= cutoff,
        )
        .order_by(Run.created_at, Run.id)
    )
    return list(result.scalars().all())


async def approved_runs(session: AsyncSession, max_age_seconds: float, limit: int) -> List[Run]:
    cutoff = utcnow() - timedelta(seconds=max_age_seconds)
    result = await session.execute(
        select(Run)
        .where(
            Run.status == RunStatus.SIMULATED.value,
            Run.approved_for_auto_execution.is_(True),
            Run.auto_executed.is_(False),
            Run.created_at >= cutoff,
        )
        .order_by(Run.created_at, Run.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def set_run_approvals(session: AsyncSession, approvals: Dict[str, bool]) -> None:
    """Toggle approval flags; only SIMULATED runs are touched."""
    for approved in (True, False):
        ids = [run_id for run_id, flag in approvals.items() if flag is approved]
        if ids:
            await session.execute(
                update(Run)
                .where(Run.id.in_(ids), Run.status == RunStatus.SIMULATED.value)
                .values(approved_for_auto_execution=approved)
            )


async def revoke_approvals(session: AsyncSession, run_ids: Iterable[str]) -> int:
    """Clear the approval flag on the given runs that are still SIMULATED."""
    ids = list(run_ids)
    if not ids:
        return 0
    result = await session.execute(
        update(Run)
        .where(
            Run.id.in_(ids),
            Run.status == RunStatus.SIMULATED.value,
            Run.approved_for_auto_execution.is_(True),
        )
        .values(approved_for_auto_execution=False)
    )
    return result.rowcount


async def settle_run(
    session: AsyncSession,
    run_id: str,
    status: str,
    actual_profit: Optional[float] = None,
    error_message: Optional[str] = None,
    tx_signature: Optional[str] = None,
) -> bool:
    """
    Move a SIMULATED run to EXECUTED or FAILED.

    The WHERE clause on status keeps terminal runs immutable.

    Returns:
        True if the run was settled, False if it was already terminal or missing
    """
    if status not in (RunStatus.EXECUTED.value, RunStatus.FAILED.value):
        raise ValueError(f"settle_run requires a terminal status, got {status}")
    result = await session.execute(
        update(Run)
        .where(Run.id == run_id, Run.status == RunStatus.SIMULATED.value)
        .values(
            status=status,
            actual_profit=actual_profit,
            error_message=error_message,
            tx_signature=tx_signature,
            auto_executed=True,
            finished_at=utcnow(),
        )
    )
    return result.rowcount == 1


# ==================== DAILY RISK COUNTERS ====================


async def increment_daily_counter(
    session_factory: async_sessionmaker,
    strategy_id: str,
    chain: str,
    day: date,
    pnl: Optional[float],
) -> None:
    """
    Atomically add one trade (and its PnL, if settled) to the day's counter.

    Uses `col = col + x` so concurrent writers never lose updates; a missing
    row is inserted, and an insert race falls back to the increment.
    """
    pnl_delta = pnl or 0.0
    loss_delta = abs(pnl) if pnl is not None and pnl < 0 else 0.0
    stmt = (
        update(DailyRiskCounter)
        .where(
            DailyRiskCounter.strategy_id == strategy_id,
            DailyRiskCounter.date == day,
            DailyRiskCounter.chain == chain,
        )
        .values(
            total_trades=DailyRiskCounter.total_trades + 1,
            total_pnl=DailyRiskCounter.total_pnl + pnl_delta,
            total_loss=DailyRiskCounter.total_loss + loss_delta,
        )
    )
    async with session_factory() as session:
        result = await session.execute(stmt)
        if result.rowcount == 0:
            session.add(DailyRiskCounter(
                strategy_id=strategy_id,
                date=day,
                chain=chain,
                total_trades=1,
                total_pnl=pnl_delta,
                total_loss=loss_delta,
            ))
            try:
                await session.commit()
                return
            except IntegrityError:
                await session.rollback()
                await session.execute(stmt)
        await session.commit()


async def counters_for_day(session: AsyncSession, day: date) -> Dict[str, Tuple[int, float]]:
    """strategy_id -> (total_trades, total_loss), summed across chains."""
    result = await session.execute(
        select(
            DailyRiskCounter.strategy_id,
            func.sum(DailyRiskCounter.total_trades),
            func.sum(DailyRiskCounter.total_loss),
        )
        .where(DailyRiskCounter.date == day)
        .group_by(DailyRiskCounter.strategy_id)
    )
    return {row[0]: (int(row[1] or 0), float(row[2] or 0.0)) for row in result.all()}


async def global_totals(session: AsyncSession, day: date) -> Tuple[int, float]:
    """(total_trades, total_loss) across every strategy for the day."""
    result = await session.execute(
        select(func.sum(DailyRiskCounter.total_trades), func.sum(DailyRiskCounter.total_loss))
        .where(DailyRiskCounter.date == day)
    )
    trades, loss = result.one()
    return int(trades or 0), float(loss or 0.0)


# ==================== WALLETS & REFILL REQUESTS ====================


async def active_wallets(session: AsyncSession) -> List[FeePayerWallet]:
    result = await session.execute(
        select(FeePayerWallet).where(FeePayerWallet.is_active.is_(True)).order_by(FeePayerWallet.chain, FeePayerWallet.label)
    )
    return list(result.scalars().all())


async def chains_with_pending_refill(session: AsyncSession) -> Set[str]:
    result = await session.execute(
        select(WalletRefillRequest.chain)
        .where(WalletRefillRequest.status == RefillStatus.PENDING.value)
        .distinct()
    )
    return set(result.scalars().all())


async def pending_request_exists(session: AsyncSession, wallet_address: str) -> bool:
    result = await session.execute(
        select(WalletRefillRequest.id)
        .where(
            WalletRefillRequest.wallet_address == wallet_address,
            WalletRefillRequest.status == RefillStatus.PENDING.value,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def fulfil_refill_request(session: AsyncSession, chain: str, run_id: str) -> Optional[str]:
    """Mark the oldest PENDING refill request on the chain as COMPLETED by this run."""
    result = await session.execute(
        select(WalletRefillRequest)
        .where(
            WalletRefillRequest.chain == chain,
            WalletRefillRequest.status == RefillStatus.PENDING.value,
        )
        .order_by(WalletRefillRequest.created_at)
        .limit(1)
    )
    request = result.scalar_one_or_none()
    if request is None:
        return None
    request.status = RefillStatus.COMPLETED.value
    request.fulfilled_at = utcnow()
    request.fulfilled_by_run_id = run_id
    return request.id


# ==================== CYCLE LEASE & LOG ====================


async def acquire_lease(
    session_factory: async_sessionmaker,
    name: str,
    holder: str,
    ttl_seconds: float,
) -> bool:
    """
    Try to take the named lease.

    An expired lease is taken over with a conditional UPDATE; a free lease is
    taken with an INSERT. Exactly one contender wins either way.
    """
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)
    async with session_factory() as session:
        result = await session.execute(
            update(CycleLease)
            .where(CycleLease.name == name, CycleLease.expires_at < now)
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
        )
        if result.rowcount == 1:
            await session.commit()
            logger.warning(f"Took over expired lease '{name}'")
            return True

        existing = await session.get(CycleLease, name)
        if existing is not None:
            await session.rollback()
            return False

        session.add(CycleLease(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True


async def release_lease(session_factory: async_sessionmaker, name: str, holder: str) -> None:
    async with session_factory() as session:
        await session.execute(delete(CycleLease).where(CycleLease.name == name, CycleLease.holder == holder))
        await session.commit()


async def create_cycle_log(session_factory: async_sessionmaker, **values) -> str:
    async with session_factory() as session:
        log = AutomationCycleLog(**values)
        session.add(log)
        await session.commit()
        return log.id


async def update_cycle_log(session_factory: async_sessionmaker, log_id: str, **values) -> None:
    async with session_factory() as session:
        await session.execute(update(AutomationCycleLog).where(AutomationCycleLog.id == log_id).values(**values))
        await session.commit()
