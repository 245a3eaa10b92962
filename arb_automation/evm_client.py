"""
EVM RPC client: native and ERC-20 balances, allowances, and raw transaction submission.
"""
import logging
from typing import Any, Dict, Optional

from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = 10 ** 18

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

MAX_UINT256 = 2 ** 256 - 1


class EvmClientError(Exception):
    """Raised when an EVM RPC call fails."""


class EvmClient:
    """One AsyncWeb3 connection per network, created lazily."""

    def __init__(self, rpc_urls: Dict[str, str], request_timeout: float = 30.0):
        """
        Args:
            rpc_urls: RPC endpoint per network (POLYGON, ETHEREUM, ...)
            request_timeout: HTTP timeout per RPC request
        """
        self.rpc_urls = {network.upper(): url for network, url in rpc_urls.items()}
        self.request_timeout = request_timeout
        self._connections: Dict[str, AsyncWeb3] = {}

    def web3_for(self, network: str) -> AsyncWeb3:
        network = network.upper()
        if network not in self._connections:
            url = self.rpc_urls.get(network)
            if not url:
                raise EvmClientError(f"No RPC URL configured for network {network}")
            self._connections[network] = AsyncWeb3(
                AsyncHTTPProvider(url, request_kwargs={"timeout": self.request_timeout})
            )
        return self._connections[network]

    async def get_native_balance_wei(self, network: str, address: str) -> int:
        w3 = self.web3_for(network)
        try:
            return await w3.eth.get_balance(AsyncWeb3.to_checksum_address(address))
        except Exception as e:
            raise EvmClientError(f"get_balance failed on {network} for {address}: {e}") from e

    async def get_native_balance(self, network: str, address: str) -> float:
        """Native balance in whole tokens (POL, ETH, BNB)."""
        return await self.get_native_balance_wei(network, address) / WEI_PER_NATIVE

    def _token(self, network: str, token: str):
        w3 = self.web3_for(network)
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)

    async def get_token_balance(self, network: str, token: str, owner: str) -> int:
        try:
            return await self._token(network, token).functions.balanceOf(
                AsyncWeb3.to_checksum_address(owner)
            ).call()
        except Exception as e:
            raise EvmClientError(f"balanceOf failed on {network} for {owner}: {e}") from e

    async def get_allowance(self, network: str, token: str, owner: str, spender: str) -> int:
        return await self._token(network, token).functions.allowance(
            AsyncWeb3.to_checksum_address(owner),
            AsyncWeb3.to_checksum_address(spender),
        ).call()

    async def build_approve_tx(self, network: str, token: str, owner: str, spender: str) -> Dict[str, Any]:
        """Unsigned approve(spender, MAX) transaction for the owner."""
        return await self._token(network, token).functions.approve(
            AsyncWeb3.to_checksum_address(spender), MAX_UINT256
        ).build_transaction({"from": AsyncWeb3.to_checksum_address(owner)})

    async def prepare_transaction(self, network: str, tx: Dict[str, Any], sender: str) -> Dict[str, Any]:
        """Fill chainId, nonce, gas and gasPrice where the caller left them out."""
        w3 = self.web3_for(network)
        sender = AsyncWeb3.to_checksum_address(sender)
        prepared = dict(tx)
        prepared.setdefault("from", sender)
        prepared["to"] = AsyncWeb3.to_checksum_address(prepared["to"])
        if "chainId" not in prepared:
            prepared["chainId"] = await w3.eth.chain_id
        if "nonce" not in prepared:
            prepared["nonce"] = await w3.eth.get_transaction_count(sender, "pending")
        if not prepared.get("gasPrice") and "maxFeePerGas" not in prepared:
            prepared["gasPrice"] = await w3.eth.gas_price
        if not prepared.get("gas"):
            prepared["gas"] = await w3.eth.estimate_gas(prepared)
        prepared.pop("from", None)
        return prepared

    async def send_raw_transaction(self, network: str, raw_transaction: bytes) -> str:
        w3 = self.web3_for(network)
        tx_hash = await w3.eth.send_raw_transaction(raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

    async def wait_for_receipt(self, network: str, tx_hash: str, timeout: float = 120.0) -> Optional[Dict[str, Any]]:
        w3 = self.web3_for(network)
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except Exception as e:
            logger.error(f"Receipt for {tx_hash} not available after {timeout:.0f}s: {e}")
            return None
        return dict(receipt)

    async def close(self):
        for network, w3 in self._connections.items():
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.debug(f"Error closing {network} provider: {e}")
        self._connections.clear()
