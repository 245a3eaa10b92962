"""
Tests for jupiter_client.py
"""
import pytest
from unittest.mock import AsyncMock, patch
import httpx

from arb_automation.errors import InvalidAmount, NoLiquidity, RateLimited, RemoteTransient
from arb_automation.jupiter_client import JupiterClient, JupiterSwapResponse
from arb_automation.quote_provider import Quote

SOL = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _response(status: int, payload=None, method: str = "GET") -> httpx.Response:
    request = httpx.Request(method, "https://lite-api.jup.ag/swap/v1/quote")
    return httpx.Response(status, json=payload if payload is not None else {}, request=request)


QUOTE_PAYLOAD = {
    "inputMint": USDC_MINT,
    "outputMint": SOL,
    "inAmount": "1000000000",
    "outAmount": "6500000000",
    "routePlan": [
        {"swapInfo": {"label": "Raydium"}},
        {"swapInfo": {"label": "Raydium"}},
        {"swapInfo": {"label": "Orca"}},
    ],
}


class TestJupiterClient:
    """Tests for JupiterClient class."""

    @pytest.fixture
    def client(self):
        return JupiterClient(api_url=None, api_key=None, timeout=10.0, requests_per_second=0)

    def test_public_endpoint_without_key(self, client):
        assert client.api_url == JupiterClient.PUBLIC_ENDPOINT
        assert "x-api-key" not in client.client.headers

    def test_auth_endpoint_with_key(self):
        client = JupiterClient(api_key="test_key", requests_per_second=0)
        assert client.api_url == JupiterClient.AUTH_ENDPOINT
        assert client.client.headers["x-api-key"] == "test_key"

    def test_legacy_version_suffix_stripped(self):
        client = JupiterClient(api_url="https://quote-api.jup.ag/v6", requests_per_second=0)
        assert client.api_url == "https://quote-api.jup.ag"

    @pytest.mark.asyncio
    async def test_get_quote_success(self, client):
        mock_get = AsyncMock(return_value=_response(200, QUOTE_PAYLOAD))
        with patch.object(client.client, 'get', mock_get):
            quote = await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000, "Raydium")

        assert quote.buy_amount == 6_500_000_000
        assert quote.sell_amount == 1_000_000_000
        assert quote.sources == ["Raydium", "Orca"]
        assert quote.raw == QUOTE_PAYLOAD

        url = mock_get.call_args.args[0]
        params = mock_get.call_args.kwargs["params"]
        assert url.endswith("/swap/v1/quote")
        assert params["dexes"] == "Raydium"
        assert params["amount"] == "1000000000"
        assert params["slippageBps"] == 30

    @pytest.mark.asyncio
    async def test_get_quote_without_venue(self, client):
        mock_get = AsyncMock(return_value=_response(200, QUOTE_PAYLOAD))
        with patch.object(client.client, 'get', mock_get):
            await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000)
        assert "dexes" not in mock_get.call_args.kwargs["params"]

    @pytest.mark.asyncio
    async def test_dust_amount_never_calls_api(self, client):
        mock_get = AsyncMock()
        with patch.object(client.client, 'get', mock_get):
            with pytest.raises(InvalidAmount):
                await client.get_quote("MAINNET", USDC_MINT, SOL, 10)
        mock_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_429_raises_rate_limited(self, client):
        with patch.object(client.client, 'get', AsyncMock(return_value=_response(429))):
            with pytest.raises(RateLimited):
                await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000)

    @pytest.mark.asyncio
    async def test_400_raises_no_liquidity(self, client):
        with patch.object(client.client, 'get', AsyncMock(return_value=_response(400, {"error": "no route"}))):
            with pytest.raises(NoLiquidity):
                await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000)

    @pytest.mark.asyncio
    async def test_timeout_raises_transient(self, client):
        with patch.object(client.client, 'get', AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(RemoteTransient):
                await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000)

    @pytest.mark.asyncio
    async def test_zero_output_is_no_liquidity(self, client):
        payload = dict(QUOTE_PAYLOAD, outAmount="0")
        with patch.object(client.client, 'get', AsyncMock(return_value=_response(200, payload))):
            with pytest.raises(NoLiquidity):
                await client.get_quote("MAINNET", USDC_MINT, SOL, 1_000_000_000)

    @pytest.mark.asyncio
    async def test_get_swap_transaction(self, client):
        quote = Quote(sell_token=USDC_MINT, buy_token=SOL, sell_amount=1_000_000_000,
                      buy_amount=6_500_000_000, raw=QUOTE_PAYLOAD)
        payload = {"swapTransaction": "AQID", "lastValidBlockHeight": 1234, "prioritizationFeeLamports": 5000}
        mock_post = AsyncMock(return_value=_response(200, payload, method="POST"))
        with patch.object(client.client, 'post', mock_post):
            swap = await client.get_swap_transaction(quote, "Wallet111", priority_fee_lamports=10_000)

        assert isinstance(swap, JupiterSwapResponse)
        assert swap.swap_transaction == "AQID"
        assert swap.last_valid_block_height == 1234
        body = mock_post.call_args.kwargs["json"]
        assert body["quoteResponse"] == QUOTE_PAYLOAD
        assert body["userPublicKey"] == "Wallet111"
        assert body["prioritizationFeeLamports"]["priorityLevelWithMaxLamports"]["maxLamports"] == 10_000

    @pytest.mark.asyncio
    async def test_swap_without_transaction(self, client):
        quote = Quote(sell_token=USDC_MINT, buy_token=SOL, sell_amount=1_000_000_000, buy_amount=1)
        with patch.object(client.client, 'post', AsyncMock(return_value=_response(200, {}, method="POST"))):
            with pytest.raises(NoLiquidity):
                await client.get_swap_transaction(quote, "Wallet111")
