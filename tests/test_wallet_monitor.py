"""
Tests for wallet_monitor.py
"""
import pytest
from sqlalchemy import select

from arb_automation.config import CHAIN_EVM, CHAIN_SOLANA
from arb_automation.models import FeePayerWallet, RefillStatus, WalletHealth, WalletRefillRequest
from arb_automation.wallet_monitor import REASON_CRITICAL, REASON_LOW, WalletHealthMonitor

BALANCES = {
    "SolHealthy1111": 1.0,
    "SolLow11111111": 0.03,
    "0xcritical": 0.001,
}


async def _fetch(network, address):
    if address not in BALANCES:
        raise ConnectionError(f"rpc unavailable for {address}")
    return BALANCES[address]


@pytest.fixture
async def wallets(session_factory):
    async with session_factory() as session:
        session.add_all([
            FeePayerWallet(label="SOL_MAIN", chain=CHAIN_SOLANA, address="SolHealthy1111"),
            FeePayerWallet(label="SOL_BACKUP", chain=CHAIN_SOLANA, address="SolLow11111111"),
            FeePayerWallet(label="POLYGON_FEES", chain=CHAIN_EVM, network="POLYGON", address="0xcritical"),
            FeePayerWallet(label="BROKEN", chain=CHAIN_EVM, network="POLYGON", address="0xunreachable"),
            FeePayerWallet(label="RETIRED", chain=CHAIN_SOLANA, address="SolRetired", is_active=False),
        ])
        await session.commit()


@pytest.fixture
def monitor(session_factory, wallet_thresholds):
    return WalletHealthMonitor(
        session_factory,
        balance_fetchers={CHAIN_SOLANA: _fetch, CHAIN_EVM: _fetch},
        thresholds=wallet_thresholds,
    )


async def _requests(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(WalletRefillRequest).order_by(WalletRefillRequest.wallet_address))
        return result.scalars().all()


class TestWalletHealthMonitor:
    @pytest.mark.asyncio
    async def test_classifies_and_requests_refills(self, session_factory, wallets, monitor):
        result = await monitor.check()

        assert result.checked == {CHAIN_SOLANA: 2, CHAIN_EVM: 1}
        assert result.healthy == 1
        assert result.low == 1
        assert result.critical == 1
        assert result.requests_created == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("BROKEN:")

        requests = {r.wallet_address: r for r in await _requests(session_factory)}
        assert set(requests) == {"0xcritical", "SolLow11111111"}

        low = requests["SolLow11111111"]
        assert low.reason == REASON_LOW
        assert low.status == RefillStatus.PENDING.value
        assert low.required_amount == pytest.approx(0.05 * 2 - 0.03)

        critical = requests["0xcritical"]
        assert critical.reason == REASON_CRITICAL
        assert critical.required_amount == pytest.approx(0.01 * 10 - 0.001)

    @pytest.mark.asyncio
    async def test_updates_wallet_rows(self, session_factory, wallets, monitor):
        await monitor.check()

        async with session_factory() as session:
            rows = {w.label: w for w in (await session.execute(select(FeePayerWallet))).scalars().all()}
        assert rows["SOL_MAIN"].health == WalletHealth.HEALTHY.value
        assert rows["SOL_MAIN"].balance == 1.0
        assert rows["SOL_MAIN"].balance_updated_at is not None
        assert rows["SOL_BACKUP"].health == WalletHealth.LOW.value
        assert rows["POLYGON_FEES"].health == WalletHealth.CRITICAL.value
        # Failed fetch leaves the wallet untouched
        assert rows["BROKEN"].health == WalletHealth.UNKNOWN.value
        assert rows["BROKEN"].balance is None
        assert rows["RETIRED"].balance is None

    @pytest.mark.asyncio
    async def test_no_duplicate_pending_requests(self, session_factory, wallets, monitor):
        await monitor.check()
        second = await monitor.check()

        assert second.requests_created == 0
        assert len(await _requests(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_new_request_after_fulfilment(self, session_factory, wallets, monitor):
        await monitor.check()
        async with session_factory() as session:
            for request in (await session.execute(select(WalletRefillRequest))).scalars().all():
                request.status = RefillStatus.COMPLETED.value
            await session.commit()

        result = await monitor.check()

        assert result.requests_created == 2

    @pytest.mark.asyncio
    async def test_chain_without_fetcher(self, session_factory, wallets, wallet_thresholds):
        monitor = WalletHealthMonitor(session_factory, {CHAIN_SOLANA: _fetch}, wallet_thresholds)
        result = await monitor.check()
        assert result.checked == {CHAIN_SOLANA: 2}
        assert len(result.errors) == 2
