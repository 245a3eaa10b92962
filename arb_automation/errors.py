"""
Error taxonomy for quoting, execution and risk admission.
"""
from typing import Optional


class ArbitrageError(Exception):
    """Base exception for the arbitrage automation core."""


class QuoteError(ArbitrageError):
    """Raised when a quote cannot be obtained."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidAmount(QuoteError):
    """Amount rejected before any remote call (non-positive or below dust)."""


class NoLiquidity(QuoteError):
    """Non-retryable quote failure: no route, or the provider rejected the request (4xx)."""


class RemoteTransient(QuoteError):
    """Retryable failure: network error, timeout or 5xx."""

    retryable = True


class RateLimited(RemoteTransient):
    """Provider throttled the request (429). Counted by the rate-limit breaker."""


class ExecutionError(ArbitrageError):
    """Raised when an on-chain trade could not be completed."""

    def __init__(self, message: str, tx_reference: Optional[str] = None):
        super().__init__(message)
        self.tx_reference = tx_reference


class InsufficientBalance(ExecutionError):
    """The signing wallet cannot cover the trade or its fees."""


class RiskRejected(ArbitrageError):
    """Decision veto. Carried as a value, not raised out of the decision phase."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
