"""
Quote Provider Adapter contract and the pieces shared by the Jupiter and 0x adapters.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import InvalidAmount, NoLiquidity, QuoteError, RateLimited, RemoteTransient

logger = logging.getLogger(__name__)

# Amounts at or below this many base units are treated as dust and never quoted
DUST_THRESHOLD_BASE_UNITS = 1000


class RateLimiter:
    """
    Minimum-interval pacer for one provider.

    Each adapter owns its own limiter, so rate limits are tracked per chain.
    """

    def __init__(self, requests_per_second: float = 1.0):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second (0 disables pacing)
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._last_request_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made."""
        async with self._lock:
            current_time = time.monotonic()
            time_since_last = current_time - self._last_request_time

            if time_since_last < self.min_interval:
                await asyncio.sleep(self.min_interval - time_since_last)

            self._last_request_time = time.monotonic()


@dataclass
class Quote:
    """Normalized swap quote."""
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    sources: List[str] = field(default_factory=list)
    gas: Optional[int] = None
    gas_price: Optional[int] = None
    relaxed: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def validate_amount(sell_amount: int) -> None:
    """Reject non-positive and dust amounts before any remote call."""
    if sell_amount is None or sell_amount <= 0:
        raise InvalidAmount(f"Sell amount must be positive, got {sell_amount}")
    if sell_amount <= DUST_THRESHOLD_BASE_UNITS:
        raise InvalidAmount(
            f"Sell amount {sell_amount} is at or below dust threshold {DUST_THRESHOLD_BASE_UNITS}"
        )


def classify_http_error(exc: Exception, provider: str) -> QuoteError:
    """
    Map an httpx failure to the quote error taxonomy.

    429 is RateLimited, other 4xx is NoLiquidity (non-retryable), 5xx and
    transport failures (including timeouts) are RemoteTransient.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:300] if exc.response.text else ""
        if status == 429:
            return RateLimited(f"{provider} rate limited (429)", status_code=status)
        if 400 <= status < 500:
            return NoLiquidity(f"{provider} rejected request ({status}): {body}", status_code=status)
        return RemoteTransient(f"{provider} server error ({status}): {body}", status_code=status)
    if isinstance(exc, httpx.TimeoutException):
        return RemoteTransient(f"{provider} request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return RemoteTransient(f"{provider} connection error: {exc}")
    return QuoteError(f"{provider} unexpected error: {exc}")


class QuoteProvider(ABC):
    """
    Fetches a swap quote for a token pair, optionally constrained to one venue.

    Implementations make exactly one HTTP attempt per call; retry belongs to
    the caller's RetryPolicy.
    """

    name = "provider"

    @abstractmethod
    async def get_quote(
        self,
        network: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        source: Optional[str] = None,
    ) -> Quote:
        """
        Args:
            network: Network identifier (e.g. MAINNET, POLYGON)
            sell_token: Token address/mint to sell
            buy_token: Token address/mint to buy
            sell_amount: Amount in the sell token's smallest unit
            source: Venue constraint; None lets the router pick

        Returns:
            Quote

        Raises:
            InvalidAmount, NoLiquidity, RemoteTransient, RateLimited
        """

    async def close(self):
        pass
