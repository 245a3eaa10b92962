"""
Fee-payer wallet health: refresh balances, classify, and raise refill requests.
"""
import logging
from typing import Awaitable, Callable, Dict

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import repository
from .config import WalletThresholds
from .models import FeePayerWallet, WalletHealth, WalletRefillRequest
from .results import WalletCheckResult
from .utils import get_terminal_colors, short_address, utcnow

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

BalanceFetcher = Callable[[str, str], Awaitable[float]]

REASON_LOW = "FEE_PAYER_LOW_BALANCE"
REASON_CRITICAL = "FEE_PAYER_CRITICAL_BALANCE"


class WalletHealthMonitor:
    """Checks every active fee-payer wallet once per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        balance_fetchers: Dict[str, BalanceFetcher],
        thresholds: Dict[str, WalletThresholds],
    ):
        """
        Args:
            session_factory: Async session factory
            balance_fetchers: chain -> async fetcher(network, address) returning native balance
            thresholds: chain -> low/critical thresholds
        """
        self.session_factory = session_factory
        self.balance_fetchers = balance_fetchers
        self.thresholds = thresholds

    async def check(self) -> WalletCheckResult:
        result = WalletCheckResult()

        async with self.session_factory() as session:
            wallets = await repository.active_wallets(session)
            for wallet in wallets:
                await self._check_wallet(session, wallet, result)
            await session.commit()

        logger.info(
            f"Wallets: {colors['GREEN']}{result.healthy} healthy{colors['RESET']}, "
            f"{colors['YELLOW']}{result.low} low{colors['RESET']}, "
            f"{colors['RED']}{result.critical} critical{colors['RESET']}, "
            f"{result.requests_created} refill request(s) created"
        )
        return result

    async def _check_wallet(self, session, wallet: FeePayerWallet, result: WalletCheckResult) -> None:
        fetcher = self.balance_fetchers.get(wallet.chain)
        thresholds = self.thresholds.get(wallet.chain)
        if fetcher is None or thresholds is None:
            result.errors.append(f"{wallet.label}: no balance source configured for chain {wallet.chain}")
            return

        try:
            balance = await fetcher(wallet.network, wallet.address)
        except Exception as e:
            logger.warning(f"Balance fetch failed for {wallet.label} ({short_address(wallet.address)}): {e}")
            result.errors.append(f"{wallet.label}: {e}")
            return

        result.checked[wallet.chain] = result.checked.get(wallet.chain, 0) + 1
        health = thresholds.classify(balance)
        wallet.balance = balance
        wallet.balance_updated_at = utcnow()
        wallet.health = health

        if health == WalletHealth.HEALTHY.value:
            result.healthy += 1
            return
        if health == WalletHealth.CRITICAL.value:
            result.critical += 1
        else:
            result.low += 1

        if await repository.pending_request_exists(session, wallet.address):
            logger.debug(f"Refill already pending for {wallet.label}")
            return

        required = max(thresholds.low * thresholds.refill_multiplier - balance, 0.0)
        session.add(WalletRefillRequest(
            wallet_type="FEE_PAYER",
            wallet_address=wallet.address,
            chain=wallet.chain,
            network=wallet.network,
            reason=REASON_CRITICAL if health == WalletHealth.CRITICAL.value else REASON_LOW,
            current_balance=balance,
            required_amount=required,
        ))
        await session.flush()
        result.requests_created += 1
        logger.warning(
            f"{colors['YELLOW']}Refill requested{colors['RESET']} for {wallet.label} "
            f"({short_address(wallet.address)}): balance {balance:.6f}, needs {required:.6f}"
        )
