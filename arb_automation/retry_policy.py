"""
Retry policy for quote calls and the cumulative rate-limit breaker.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from .config import RetrySettings
from .errors import InvalidAmount, NoLiquidity, QuoteError, RateLimited, RemoteTransient
from .quote_provider import Quote

logger = logging.getLogger(__name__)


class RateLimitBreaker:
    """
    Counts rate-limited responses across a whole scan.

    The count is cumulative and is never reset by a later success.
    """

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.count = 0

    def record(self) -> None:
        self.count += 1

    @property
    def tripped(self) -> bool:
        return self.threshold > 0 and self.count >= self.threshold


@dataclass
class RetryPolicy:
    """
    How a single quote is retried.

    Attributes:
        max_attempts: Total attempts per quote (first call included)
        delays: Sleep before each attempt; the last entry repeats if attempts outnumber it
        relax_on_no_liquidity: On NoLiquidity with a venue constraint, try once more unconstrained
        rate_limit_threshold: Cumulative rate-limit budget per scan
        rate_limit_cooldown: Extra sleep after a rate-limited response
    """
    max_attempts: int = 3
    delays: Sequence[float] = field(default_factory=lambda: (0.0, 0.25, 0.75))
    relax_on_no_liquidity: bool = False
    rate_limit_threshold: int = 2
    rate_limit_cooldown: float = 3.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            delays=tuple(settings.delays),
            relax_on_no_liquidity=settings.relax_on_no_liquidity,
            rate_limit_threshold=settings.rate_limit_threshold,
            rate_limit_cooldown=settings.rate_limit_cooldown,
        )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    def new_breaker(self) -> RateLimitBreaker:
        return RateLimitBreaker(self.rate_limit_threshold)

    def delay_for(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt, len(self.delays) - 1)]

    async def call(
        self,
        fetch: Callable[[Optional[str]], Awaitable[Quote]],
        source: Optional[str],
        breaker: RateLimitBreaker,
    ) -> Quote:
        """
        Run fetch(source) under this policy.

        Args:
            fetch: Coroutine factory taking the venue constraint
            source: Venue constraint for the first attempts
            breaker: Scan-wide rate-limit breaker

        Returns:
            Quote (with relaxed=True if it came from the unconstrained fallback)

        Raises:
            The last QuoteError once attempts are exhausted, NoLiquidity and
            InvalidAmount immediately, RateLimited as soon as the breaker trips
        """
        last_error: Optional[QuoteError] = None
        constraint = source
        relaxed = False

        attempt = 0
        while attempt < self.max_attempts:
            delay = self.delay_for(attempt)
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
            try:
                quote = await fetch(constraint)
            except InvalidAmount:
                raise
            except RateLimited as e:
                breaker.record()
                last_error = e
                logger.warning(
                    f"Rate limited ({breaker.count}/{breaker.threshold} cumulative) "
                    f"on attempt {attempt}/{self.max_attempts}"
                )
                if breaker.tripped:
                    raise
                await asyncio.sleep(self.rate_limit_cooldown)
            except RemoteTransient as e:
                last_error = e
                logger.debug(f"Transient quote failure on attempt {attempt}/{self.max_attempts}: {e}")
            except NoLiquidity:
                if self.relax_on_no_liquidity and constraint is not None and not relaxed:
                    # The unconstrained call gets its own attempt
                    logger.debug(f"No liquidity on {source}, retrying without venue constraint")
                    relaxed = True
                    constraint = None
                    attempt -= 1
                    continue
                raise
            else:
                quote.relaxed = relaxed
                return quote

        if last_error is None:
            raise RemoteTransient(f"No quote after {self.max_attempts} attempt(s)")
        raise last_error
