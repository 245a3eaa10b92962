"""
Tests for repository.py
"""
from datetime import date

import pytest
from sqlalchemy import select

from arb_automation.config import CHAIN_EVM, CHAIN_SOLANA
from arb_automation.models import CycleLease, DailyRiskCounter, Run, RunStatus
from arb_automation.repository import (
    acquire_lease,
    clear_safe_mode,
    counters_for_day,
    global_totals,
    increment_daily_counter,
    load_global_config,
    persist_safe_mode_trip,
    release_lease,
    set_run_approvals,
    settle_run,
)
from arb_automation.results import SafeModeTrip
from arb_automation.utils import utcnow

TODAY = date(2026, 3, 14)


class TestDailyCounters:
    @pytest.mark.asyncio
    async def test_insert_then_increment(self, session_factory):
        await increment_daily_counter(session_factory, "s1", CHAIN_EVM, TODAY, 4.0)
        await increment_daily_counter(session_factory, "s1", CHAIN_EVM, TODAY, -1.5)
        await increment_daily_counter(session_factory, "s1", CHAIN_EVM, TODAY, None)

        async with session_factory() as session:
            rows = (await session.execute(select(DailyRiskCounter))).scalars().all()
        assert len(rows) == 1
        assert rows[0].total_trades == 3
        assert rows[0].total_pnl == pytest.approx(2.5)
        assert rows[0].total_loss == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_totals_sum_across_chains_and_strategies(self, session_factory):
        await increment_daily_counter(session_factory, "s1", CHAIN_EVM, TODAY, -2.0)
        await increment_daily_counter(session_factory, "s1", CHAIN_SOLANA, TODAY, -3.0)
        await increment_daily_counter(session_factory, "s2", CHAIN_EVM, TODAY, 1.0)
        await increment_daily_counter(session_factory, "s2", CHAIN_EVM, date(2026, 3, 13), -50.0)

        async with session_factory() as session:
            per_strategy = await counters_for_day(session, TODAY)
            totals = await global_totals(session, TODAY)

        assert per_strategy == {"s1": (2, 5.0), "s2": (1, 0.0)}
        assert totals == (3, 5.0)

    @pytest.mark.asyncio
    async def test_empty_day(self, session_factory):
        async with session_factory() as session:
            assert await global_totals(session, TODAY) == (0, 0.0)
            assert await counters_for_day(session, TODAY) == {}


class TestRunSettlement:
    @pytest.mark.asyncio
    async def test_settle_once(self, session_factory, add_strategy, add_run):
        run = await add_run(await add_strategy())

        async with session_factory() as session:
            assert await settle_run(session, run.id, RunStatus.EXECUTED.value, actual_profit=1.2, tx_signature="0x1")
            assert not await settle_run(session, run.id, RunStatus.FAILED.value, error_message="late")
            await session.commit()

        async with session_factory() as session:
            stored = await session.get(Run, run.id)
        assert stored.status == RunStatus.EXECUTED.value
        assert stored.actual_profit == pytest.approx(1.2)
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_settle_requires_terminal_status(self, session_factory, add_strategy, add_run):
        run = await add_run(await add_strategy())
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await settle_run(session, run.id, RunStatus.SIMULATED.value)

    @pytest.mark.asyncio
    async def test_approvals_only_touch_simulated(self, session_factory, add_strategy, add_run):
        strategy = await add_strategy()
        open_run = await add_run(strategy)
        done_run = await add_run(strategy, status=RunStatus.FAILED.value)

        async with session_factory() as session:
            await set_run_approvals(session, {open_run.id: True, done_run.id: True})
            await session.commit()

        async with session_factory() as session:
            assert (await session.get(Run, open_run.id)).approved_for_auto_execution is True
            assert (await session.get(Run, done_run.id)).approved_for_auto_execution is False

    def test_transition_from_terminal_raises(self):
        run = Run(id="r1", status=RunStatus.EXECUTED.value)
        with pytest.raises(ValueError):
            run.transition_to(RunStatus.FAILED.value)

    def test_transition_to_terminal(self):
        run = Run(id="r2", status=RunStatus.SIMULATED.value)
        run.transition_to(RunStatus.FAILED.value)
        assert run.is_terminal


class TestSafeMode:
    @pytest.mark.asyncio
    async def test_first_trip_reason_is_kept(self, session_factory):
        await persist_safe_mode_trip(session_factory, SafeModeTrip(reason="first", triggered_at=utcnow()))
        await persist_safe_mode_trip(session_factory, SafeModeTrip(reason="second", triggered_at=utcnow()))

        config = await load_global_config(session_factory)
        assert config.safe_mode_enabled is True
        assert config.safe_mode_reason == "first"

    @pytest.mark.asyncio
    async def test_clear(self, session_factory):
        await persist_safe_mode_trip(session_factory, SafeModeTrip(reason="loss", triggered_at=utcnow()))

        assert await clear_safe_mode(session_factory, "checked") is True
        assert await clear_safe_mode(session_factory) is False
        assert (await load_global_config(session_factory)).safe_mode_enabled is False


class TestLease:
    @pytest.mark.asyncio
    async def test_single_holder(self, session_factory):
        assert await acquire_lease(session_factory, "cycle", "a", 300)
        assert not await acquire_lease(session_factory, "cycle", "b", 300)

        async with session_factory() as session:
            assert (await session.get(CycleLease, "cycle")).holder == "a"

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, session_factory):
        assert await acquire_lease(session_factory, "cycle", "a", -1)
        assert await acquire_lease(session_factory, "cycle", "b", 300)

        async with session_factory() as session:
            assert (await session.get(CycleLease, "cycle")).holder == "b"

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, session_factory):
        assert await acquire_lease(session_factory, "cycle", "a", 300)

        await release_lease(session_factory, "cycle", "b")
        assert not await acquire_lease(session_factory, "cycle", "c", 300)

        await release_lease(session_factory, "cycle", "a")
        assert await acquire_lease(session_factory, "cycle", "c", 300)
