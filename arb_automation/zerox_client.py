"""
0x Swap API v2 client for EVM quotes and executable swap transactions.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import NoLiquidity, QuoteError
from .quote_provider import Quote, QuoteProvider, RateLimiter, classify_http_error, validate_amount

logger = logging.getLogger(__name__)

ZEROX_API_BASE_URL = "https://api.0x.org"

CHAIN_IDS: Dict[str, int] = {
    "POLYGON": 137,
    "ETHEREUM": 1,
    "ARBITRUM": 42161,
    "BSC": 56,
    "POLYGON_AMOY": 80002,
    "SEPOLIA": 11155111,
    "ARBITRUM_SEPOLIA": 421614,
    "BSC_TESTNET": 97,
}


@dataclass
class ZeroExSwapTransaction:
    """Executable transaction returned by the allowance-holder quote endpoint."""
    to: str
    data: str
    value: int
    gas: Optional[int]
    gas_price: Optional[int]
    buy_amount: int
    allowance_spender: Optional[str] = None


def chain_id_for(network: str) -> int:
    chain_id = CHAIN_IDS.get((network or "").upper())
    if chain_id is None:
        raise QuoteError(f"Unsupported network: {network}")
    return chain_id


def _fill_sources(data: Dict[str, Any]) -> List[str]:
    sources: List[str] = []
    for fill in (data.get("route") or {}).get("fills", []) or []:
        name = fill.get("source")
        if name and name not in sources:
            sources.append(name)
    return sources


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class ZeroExClient(QuoteProvider):
    """Quote provider backed by the 0x Swap API (v2, allowance-holder flow)."""

    name = "0x"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = ZEROX_API_BASE_URL,
        timeout: float = 10.0,
        requests_per_second: float = 1.0,
        slippage_bps: int = 30,
    ):
        self.base_url = base_url.rstrip('/')
        self.slippage_bps = slippage_bps
        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)

        headers = {"0x-version": "v2"}
        if api_key:
            headers["0x-api-key"] = api_key
        else:
            logger.warning("ZEROX_API_KEY not set; 0x v2 requests will be rejected")
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    def _params(
        self,
        network: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        source: Optional[str],
        taker: Optional[str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "chainId": chain_id_for(network),
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "slippageBps": self.slippage_bps,
        }
        if taker:
            params["taker"] = taker
        if source:
            params["includedSources"] = source
        return params

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        await self.rate_limiter.acquire()
        try:
            response = await self.client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise classify_http_error(e, self.name) from e
        except ValueError as e:
            raise NoLiquidity(f"0x returned malformed response: {e}") from e

        if data.get("liquidityAvailable") is False:
            raise NoLiquidity(
                f"0x reports no liquidity for {params['sellToken'][:10]} -> {params['buyToken'][:10]}"
            )
        return data

    async def get_quote(
        self,
        network: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        source: Optional[str] = None,
        taker: Optional[str] = None,
    ) -> Quote:
        validate_amount(sell_amount)
        params = self._params(network, sell_token, buy_token, sell_amount, source, taker)
        data = await self._get("/swap/allowance-holder/price", params)

        buy_amount = _int_or_none(data.get("buyAmount")) or 0
        if buy_amount <= 0:
            raise NoLiquidity(f"0x returned no buy amount for {sell_token[:10]} -> {buy_token[:10]}")

        transaction = data.get("transaction") or {}
        gas = _int_or_none(data.get("gas")) or _int_or_none(transaction.get("gas"))
        gas_price = _int_or_none(data.get("gasPrice")) or _int_or_none(transaction.get("gasPrice"))
        sources = _fill_sources(data)

        logger.debug(
            f"0x quote {sell_token[:10]} -> {buy_token[:10]} sell={sell_amount} "
            f"buy={buy_amount} gas={gas} via {','.join(sources) or source or '?'}"
        )
        return Quote(
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=sell_amount,
            buy_amount=buy_amount,
            sources=sources,
            gas=gas,
            gas_price=gas_price,
            raw=data,
        )

    async def get_swap_transaction(
        self,
        network: str,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        taker: str,
        source: Optional[str] = None,
    ) -> ZeroExSwapTransaction:
        """
        Fetch an executable swap transaction for the taker.

        Raises:
            QuoteError subclasses, classified as for quotes
        """
        validate_amount(sell_amount)
        params = self._params(network, sell_token, buy_token, sell_amount, source, taker)
        data = await self._get("/swap/allowance-holder/quote", params)

        transaction = data.get("transaction")
        if not transaction or not transaction.get("to"):
            raise NoLiquidity("0x quote response carried no transaction")

        allowance = (data.get("issues") or {}).get("allowance") or {}
        return ZeroExSwapTransaction(
            to=transaction["to"],
            data=transaction.get("data", "0x"),
            value=_int_or_none(transaction.get("value")) or 0,
            gas=_int_or_none(transaction.get("gas")) or _int_or_none(data.get("gas")),
            gas_price=_int_or_none(transaction.get("gasPrice")) or _int_or_none(data.get("gasPrice")),
            buy_amount=_int_or_none(data.get("buyAmount")) or 0,
            allowance_spender=allowance.get("spender"),
        )

    async def close(self):
        await self.client.aclose()
