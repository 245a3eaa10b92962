"""
Jupiter API client for Solana quotes and swap transactions.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import NoLiquidity
from .quote_provider import Quote, QuoteProvider, RateLimiter, classify_http_error, validate_amount

logger = logging.getLogger(__name__)


@dataclass
class JupiterSwapResponse:
    """Swap transaction response from Jupiter API."""
    swap_transaction: str  # base64 VersionedTransaction
    last_valid_block_height: int
    priority_fee_lamports: Optional[int] = None


class JupiterClient(QuoteProvider):
    """Quote provider backed by the Jupiter aggregator."""

    name = "jupiter"

    PUBLIC_ENDPOINT = "https://lite-api.jup.ag"
    AUTH_ENDPOINT = "https://api.jup.ag"

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        requests_per_second: float = 1.0,
        slippage_bps: int = 30,
    ):
        """
        Initialize Jupiter API client.

        Args:
            api_url: Explicit API base URL. Defaults to the authenticated endpoint when
                an API key is given, the public one otherwise.
            api_key: Jupiter API key, sent in the x-api-key header.
            timeout: Request timeout in seconds.
            requests_per_second: Pacing for this provider.
            slippage_bps: Slippage passed to the router.
        """
        if api_url:
            self.api_url = api_url.rstrip('/')
        else:
            self.api_url = self.AUTH_ENDPOINT if api_key else self.PUBLIC_ENDPOINT
        # Strip any legacy version suffix; paths below carry their own
        for suffix in ('/v6', '/v1'):
            if self.api_url.endswith(suffix):
                self.api_url = self.api_url[:-len(suffix)]

        self.api_key = api_key
        self.slippage_bps = slippage_bps
        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)

        headers = {}
        if api_key:
            # Jupiter expects the key in x-api-key, not Authorization
            headers["x-api-key"] = api_key
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def get_quote(
        self,
        network: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        source: Optional[str] = None,
    ) -> Quote:
        validate_amount(sell_amount)

        params: Dict[str, Any] = {
            "inputMint": sell_token,
            "outputMint": buy_token,
            "amount": str(sell_amount),
            "slippageBps": self.slippage_bps,
        }
        if source:
            params["dexes"] = source

        await self.rate_limiter.acquire()
        start_time = time.time()
        try:
            response = await self.client.get(f"{self.api_url}/swap/v1/quote", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise classify_http_error(e, self.name) from e
        except ValueError as e:
            raise NoLiquidity(f"jupiter returned malformed quote: {e}") from e

        out_amount = int(data.get("outAmount") or 0)
        if out_amount <= 0:
            raise NoLiquidity(f"jupiter returned no output for {sell_token[:8]}... -> {buy_token[:8]}...")

        labels = []
        for hop in data.get("routePlan", []) or []:
            label = (hop.get("swapInfo") or {}).get("label") if isinstance(hop, dict) else None
            if label and label not in labels:
                labels.append(label)

        logger.debug(
            f"Jupiter quote {sell_token[:8]}... -> {buy_token[:8]}... "
            f"in={sell_amount} out={out_amount} via {','.join(labels) or '?'} "
            f"({time.time() - start_time:.2f}s)"
        )
        return Quote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=int(data.get("inAmount", sell_amount)),
            buy_amount=out_amount,
            sources=labels,
            raw=data,
        )

    async def get_swap_transaction(
        self,
        quote: Quote,
        user_public_key: str,
        priority_fee_lamports: int = 0,
    ) -> JupiterSwapResponse:
        """
        Build a swap transaction for a quote previously returned by get_quote().

        Args:
            quote: Quote carrying the raw Jupiter quoteResponse
            user_public_key: Signer public key (base58)
            priority_fee_lamports: Max priority fee, 0 for none

        Returns:
            JupiterSwapResponse

        Raises:
            QuoteError subclasses, classified as for quotes
        """
        payload: Dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        if priority_fee_lamports > 0:
            payload["prioritizationFeeLamports"] = {
                "priorityLevelWithMaxLamports": {"maxLamports": priority_fee_lamports, "priorityLevel": "high"}
            }

        await self.rate_limiter.acquire()
        try:
            response = await self.client.post(f"{self.api_url}/swap/v1/swap", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise classify_http_error(e, self.name) from e

        swap_transaction = data.get("swapTransaction")
        if not swap_transaction:
            raise NoLiquidity("jupiter swap response carried no transaction")

        return JupiterSwapResponse(
            swap_transaction=swap_transaction,
            last_valid_block_height=int(data.get("lastValidBlockHeight", 0)),
            priority_fee_lamports=data.get("prioritizationFeeLamports", priority_fee_lamports),
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
