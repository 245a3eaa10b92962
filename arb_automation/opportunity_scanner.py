"""
Opportunity scanner.

For every enabled strategy of a chain, quotes the strategy's token path across
combinations of DEX venues, prices each round trip net of slippage and gas,
and persists every attempted combination as a SIMULATED run.
"""
import asyncio
import itertools
import logging
import random
import time
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import repository
from .config import (
    DEFAULT_SOURCES,
    SCAN_MODE_SOURCE_MATRIX,
    SCAN_MODE_TRIANGULAR,
    GasModel,
    GlobalConfig,
    ScannerSettings,
)
from .errors import InvalidAmount, QuoteError
from .models import Run, RunStatus, ScanOutcome, Strategy
from .quote_provider import QuoteProvider, validate_amount
from .results import LegQuote, OpportunityResult, ScanResult
from .retry_policy import RateLimitBreaker, RetryPolicy
from .utils import format_path, get_terminal_colors, utcnow

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


def enumerate_combinations(
    venues: Sequence[str],
    mode: str,
    max_combinations: int,
    rng: Optional[random.Random] = None,
    hard_cap: int = 50,
) -> List[Tuple[str, ...]]:
    """
    Build the venue combinations to quote, shuffled and capped.

    Source matrix: ordered pairs (A, B) with A != B.
    Triangular: every (A, B, C); a venue may repeat on different legs.
    """
    venues = list(dict.fromkeys(venues))  # dedupe, keep order
    if mode == SCAN_MODE_SOURCE_MATRIX:
        combos = list(itertools.permutations(venues, 2))
    elif mode == SCAN_MODE_TRIANGULAR:
        combos = list(itertools.product(venues, repeat=3))
    else:
        raise ValueError(f"Unknown scan mode: {mode}")

    (rng or random).shuffle(combos)
    cap = max(0, min(max_combinations, hard_cap))
    return combos[:cap]


def token_path_for(strategy: Strategy) -> List[str]:
    if strategy.scan_mode == SCAN_MODE_TRIANGULAR:
        if not strategy.token_c:
            raise ValueError("triangular strategy has no token_c")
        return [strategy.token_in, strategy.token_out, strategy.token_c, strategy.token_in]
    return [strategy.token_in, strategy.token_out, strategy.token_in]


class OpportunityScanner:
    """Scans strategies for round-trip price discrepancies."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        providers: Dict[str, QuoteProvider],
        settings: ScannerSettings,
        retry_policy: RetryPolicy,
        gas_models: Dict[str, GasModel],
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize scanner.

        Args:
            session_factory: Async session factory for persisting runs
            providers: Quote provider per chain (SOLANA, EVM)
            settings: Pacing, sizing and slippage settings
            retry_policy: Retry and rate-limit policy applied to every quote
            gas_models: Gas cost model per chain
            rng: Random source for shuffling combinations
        """
        self.session_factory = session_factory
        self.providers = providers
        self.settings = settings
        self.retry_policy = retry_policy
        self.gas_models = gas_models
        self.rng = rng or random.Random()
        self._quotes_issued = 0

    def notional_for(self, strategy: Strategy) -> float:
        notional = strategy.trade_notional or self.settings.default_notional
        if strategy.max_trade_value is not None and strategy.max_trade_value > 0:
            notional = min(notional, strategy.max_trade_value)
        return min(notional, self.settings.max_notional)

    async def scan_chain(
        self,
        chain: str,
        config: Optional[GlobalConfig] = None,
        cycle_id: Optional[str] = None,
    ) -> ScanResult:
        """
        Scan every enabled strategy on one chain.

        One cumulative rate-limit breaker covers the whole chain scan; once it
        trips, remaining combinations and strategies are skipped.

        Args:
            chain: SOLANA or EVM
            config: Cycle config snapshot (scanning runs even when auto is off)
            cycle_id: Cycle log id stamped on created runs

        Returns:
            ScanResult
        """
        if chain not in self.providers:
            raise ValueError(f"No quote provider configured for chain {chain}")

        start = time.monotonic()
        result = ScanResult(chain=chain)
        breaker = self.retry_policy.new_breaker()
        self._quotes_issued = 0

        async with self.session_factory() as session:
            strategies = await repository.enabled_strategies(session, chain)

        logger.info(
            f"{colors['DIM']}Scanning{colors['RESET']} {colors['CYAN']}{chain}{colors['RESET']}: "
            f"{colors['GREEN']}{len(strategies)}{colors['RESET']} enabled strateg{'y' if len(strategies) == 1 else 'ies'}"
        )

        opportunities: List[OpportunityResult] = []
        for strategy in strategies:
            if breaker.tripped:
                break
            try:
                found = await self.scan_strategy(strategy, breaker, cycle_id)
            except (ValueError, InvalidAmount) as e:
                logger.warning(f"Strategy {strategy.name} skipped: {e}")
                result.errors.append(f"{strategy.name}: {e}")
                continue
            result.strategies_scanned += 1
            opportunities.extend(found)

        for opportunity in opportunities:
            if opportunity.status == ScanOutcome.PROFITABLE.value:
                result.profitable += 1
            elif opportunity.status == ScanOutcome.NOT_PROFITABLE.value:
                result.not_profitable += 1
            else:
                result.failed += 1

        result.combinations_attempted = len(opportunities)
        result.runs_created = sum(1 for o in opportunities if o.run_id)
        result.rate_limit_count = breaker.count
        result.aborted_due_to_rate_limit = breaker.tripped
        result.top = sorted(
            opportunities,
            key=lambda o: o.net_profit if o.net_profit is not None else float('-inf'),
            reverse=True,
        )[:self.settings.top_results]
        result.duration_ms = int((time.monotonic() - start) * 1000)

        if result.aborted_due_to_rate_limit:
            logger.warning(
                f"{colors['RED']}{chain} scan aborted:{colors['RESET']} cumulative rate limit "
                f"{breaker.count}/{breaker.threshold} reached"
            )
        logger.info(
            f"{colors['CYAN']}{chain}{colors['RESET']} scan done: "
            f"{colors['GREEN']}{result.combinations_attempted}{colors['RESET']} combinations, "
            f"{colors['YELLOW']}{result.profitable}{colors['RESET']} profitable, "
            f"{result.not_profitable} not profitable, {result.failed} failed "
            f"({result.duration_ms} ms)"
        )
        return result

    async def scan_strategy(
        self,
        strategy: Strategy,
        breaker: RateLimitBreaker,
        cycle_id: Optional[str] = None,
    ) -> List[OpportunityResult]:
        """
        Evaluate and persist every combination for one strategy.

        Raises:
            ValueError: strategy is misconfigured (no path, too few venues)
            InvalidAmount: notional is below the dust threshold
        """
        provider = self.providers[strategy.chain]
        path = token_path_for(strategy)
        venues = strategy.venues or DEFAULT_SOURCES.get(strategy.chain, [])
        if strategy.scan_mode == SCAN_MODE_SOURCE_MATRIX and len(set(venues)) < 2:
            raise ValueError("source-matrix scan needs at least two venues")

        notional = self.notional_for(strategy)
        amount = int(round(notional * 10 ** strategy.token_in_decimals))
        validate_amount(amount)

        combos = enumerate_combinations(
            venues,
            strategy.scan_mode,
            self.settings.max_combinations,
            self.rng,
            self.settings.max_combinations_cap,
        )

        results: List[OpportunityResult] = []
        for index, combo in enumerate(combos):
            if breaker.tripped:
                logger.warning(
                    f"Rate-limit breaker tripped, skipping {len(combos) - index} remaining "
                    f"combination(s) for {strategy.name}"
                )
                break
            if index > 0 and index % self.settings.batch_size == 0 and self.settings.batch_pause > 0:
                logger.debug(f"{colors['DIM']}Batch pause {self.settings.batch_pause:.1f}s{colors['RESET']}")
                await asyncio.sleep(self.settings.batch_pause)

            started_at = utcnow()
            opportunity = await self.evaluate_combination(strategy, provider, path, combo, notional, amount, breaker)
            opportunity.run_id = await self._persist(strategy, opportunity, started_at, cycle_id)
            results.append(opportunity)

        return results

    async def evaluate_combination(
        self,
        strategy: Strategy,
        provider: QuoteProvider,
        path: List[str],
        combo: Sequence[str],
        notional: float,
        amount: int,
        breaker: RateLimitBreaker,
    ) -> OpportunityResult:
        """Quote each leg in order and price the round trip."""
        gas_model = self.gas_models[strategy.chain]
        decimals = 10 ** strategy.token_in_decimals
        legs_total = len(path) - 1
        slippage_buffer = notional * self.settings.slippage_bps / 10000
        gas_estimate = gas_model.cost(legs_total)

        opportunity = OpportunityResult(
            strategy_id=strategy.id,
            mode=strategy.scan_mode,
            token_path=list(path),
            sources=list(combo),
            notional_in=notional,
            status=ScanOutcome.FAILED.value,
            slippage_buffer=slippage_buffer,
            gas_estimate=gas_estimate,
        )

        leg_amount = amount
        for leg_no, (sell_token, buy_token, source) in enumerate(zip(path[:-1], path[1:], combo), start=1):
            if self._quotes_issued > 0 and self.settings.inter_quote_delay > 0:
                await asyncio.sleep(self.settings.inter_quote_delay)
            self._quotes_issued += 1

            async def fetch(src, sell_token=sell_token, buy_token=buy_token, leg_amount=leg_amount):
                return await provider.get_quote(strategy.network, sell_token, buy_token, leg_amount, src)

            try:
                quote = await self.retry_policy.call(fetch, source, breaker)
            except QuoteError as e:
                opportunity.reason = f"Leg{leg_no} quote failed on {source}: {e}"
                logger.debug(f"{strategy.name} {format_path(path, combo)}: {opportunity.reason}")
                return opportunity

            opportunity.leg_quotes.append(LegQuote(
                leg=leg_no,
                source=source,
                sell_token=sell_token,
                buy_token=buy_token,
                sell_amount=leg_amount,
                buy_amount=quote.buy_amount,
                sources=list(quote.sources),
                relaxed=quote.relaxed,
            ))
            leg_amount = quote.buy_amount

        final_out = leg_amount / decimals
        gross = final_out - notional
        net = gross - slippage_buffer - gas_estimate

        opportunity.final_amount_out = final_out
        opportunity.gross_profit = gross
        opportunity.net_profit = net
        opportunity.profit_bps = net / notional * 10000 if notional else 0.0
        opportunity.status = ScanOutcome.PROFITABLE.value if net > 0 else ScanOutcome.NOT_PROFITABLE.value

        color = colors['GREEN'] if net > 0 else colors['DIM']
        logger.debug(
            f"{color}{strategy.name}{colors['RESET']} {format_path(path, combo)}: "
            f"net {colors['YELLOW']}{net:.6f}{colors['RESET']} ({opportunity.profit_bps:.1f} bps)"
        )
        return opportunity

    async def _persist(
        self,
        strategy: Strategy,
        opportunity: OpportunityResult,
        started_at,
        cycle_id: Optional[str],
    ) -> str:
        run = Run(
            strategy_id=strategy.id,
            cycle_id=cycle_id,
            status=RunStatus.SIMULATED.value,
            outcome=opportunity.status,
            scan_mode=opportunity.mode,
            token_path=opportunity.token_path,
            sources=opportunity.sources,
            leg_quotes=[vars(leg).copy() for leg in opportunity.leg_quotes],
            notional_in=opportunity.notional_in,
            final_amount_out=opportunity.final_amount_out,
            gross_profit=opportunity.gross_profit,
            slippage_buffer=opportunity.slippage_buffer,
            estimated_gas_cost=opportunity.gas_estimate,
            estimated_profit=opportunity.net_profit if opportunity.net_profit is not None else 0.0,
            profit_bps=opportunity.profit_bps,
            purpose=strategy.purpose,
            error_message=opportunity.reason,
            started_at=started_at,
        )
        async with self.session_factory() as session:
            session.add(run)
            await session.commit()
            return run.id
