"""
Tests for evm_client.py
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from arb_automation.evm_client import EvmClient, EvmClientError

OWNER = "0x1111111111111111111111111111111111111111"
ROUTER = "0x0000000000001ff3684f28c67538d4d072c22734"


@pytest.fixture
def client():
    return EvmClient({"polygon": "https://polygon-rpc.com"})


@pytest.fixture
def w3(client, monkeypatch):
    fake = MagicMock()
    fake.eth.get_balance = AsyncMock(return_value=2 * 10 ** 18)
    fake.eth.get_transaction_count = AsyncMock(return_value=7)
    fake.eth.estimate_gas = AsyncMock(return_value=180_000)
    monkeypatch.setattr(client, "web3_for", lambda network: fake)
    return fake


class TestEvmClient:
    def test_unknown_network(self, client):
        with pytest.raises(EvmClientError, match="BSC"):
            client.web3_for("bsc")

    def test_connection_is_cached(self, client):
        assert client.web3_for("POLYGON") is client.web3_for("polygon")

    @pytest.mark.asyncio
    async def test_native_balance_in_whole_tokens(self, client, w3):
        assert await client.get_native_balance("POLYGON", OWNER) == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_balance_error_wrapped(self, client, w3):
        w3.eth.get_balance.side_effect = ValueError("execution reverted")
        with pytest.raises(EvmClientError, match="get_balance failed on POLYGON"):
            await client.get_native_balance_wei("POLYGON", OWNER)

    @pytest.mark.asyncio
    async def test_prepare_fills_missing_fields(self, client, w3):
        tx = {"to": ROUTER, "data": "0xabcd", "value": 0, "chainId": 137, "gasPrice": 30 * 10 ** 9}

        prepared = await client.prepare_transaction("POLYGON", tx, OWNER)

        assert prepared["nonce"] == 7
        assert prepared["gas"] == 180_000
        assert prepared["to"] == "0x0000000000001fF3684f28c67538d4D072C22734"
        assert "from" not in prepared
        assert "nonce" not in tx
