"""
Solana RPC access for the executors and the wallet monitor.

One AsyncClient is active at a time. Rate-limit, timeout and connection
errors move the client to the fallback endpoint once; it stays there.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import httpx
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts

from .utils import get_terminal_colors

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
SEND_RETRY_DELAY = 0.5

_FAILOVER_TYPES = (httpx.TransportError, asyncio.TimeoutError, ConnectionError)
_FAILOVER_MARKERS = ("429", "rate limit", "quota", "timeout", "timed out", "connection", "network")

T = TypeVar("T")


def _host(url: str) -> str:
    return url.split('//')[-1].split('/')[0]


class SolanaClient:
    """Solana JSON-RPC with a one-way primary -> fallback failover."""

    def __init__(self, rpc_url: str, fallback_rpc_url: Optional[str] = None):
        self.rpc_url_primary = rpc_url
        self.rpc_url_fallback = fallback_rpc_url
        self._active_rpc_url = rpc_url
        self.client = AsyncClient(rpc_url)

    @property
    def on_fallback(self) -> bool:
        return self._active_rpc_url != self.rpc_url_primary

    def _is_failover_error(self, error: Exception) -> bool:
        if isinstance(error, _FAILOVER_TYPES):
            return True
        text = f"{type(error).__name__} {error}".lower()
        return any(marker in text for marker in _FAILOVER_MARKERS)

    async def _fail_over(self, error: Exception) -> bool:
        if not self.rpc_url_fallback or self.on_fallback:
            return False
        logger.warning(
            f"{colors['YELLOW']}RPC failover{colors['RESET']} "
            f"{_host(self.rpc_url_primary)} -> {_host(self.rpc_url_fallback)}: {error}"
        )
        try:
            await self.client.close()
        except Exception as e:
            logger.debug(f"Error closing primary RPC client: {e}")
        self._active_rpc_url = self.rpc_url_fallback
        self.client = AsyncClient(self.rpc_url_fallback)
        return True

    async def _call(self, request: Callable[[AsyncClient], Awaitable[T]]) -> T:
        """Run request on the active client; repeat it once on the fallback if that applies."""
        try:
            return await request(self.client)
        except Exception as e:
            if not (self._is_failover_error(e) and await self._fail_over(e)):
                raise
        return await request(self.client)

    async def get_balance(self, pubkey: Union[str, Pubkey]) -> Optional[int]:
        """Balance in lamports, or None if the RPC call failed."""
        if isinstance(pubkey, str):
            pubkey = Pubkey.from_string(pubkey)
        try:
            resp = await self._call(lambda c: c.get_balance(pubkey, commitment=Confirmed))
        except Exception as e:
            logger.error(f"Error getting balance for {pubkey}: {e}")
            return None
        return resp.value

    async def get_balance_sol(self, address: str) -> float:
        """
        Native balance in SOL.

        Raises:
            ConnectionError: if the balance could not be fetched
        """
        lamports = await self.get_balance(address)
        if lamports is None:
            raise ConnectionError(f"Could not fetch SOL balance for {address}")
        return lamports / LAMPORTS_PER_SOL

    async def simulate_versioned_transaction(
        self,
        tx: VersionedTransaction,
        commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        """
        Returns:
            {"err", "logs", "units_consumed"}, or None if the request itself failed
        """
        try:
            resp = await self._call(lambda c: c.simulate_transaction(tx, commitment=commitment))
        except Exception as e:
            logger.error(f"Simulation request failed: {e}")
            return None
        value = resp.value
        if value.err:
            logger.warning(f"Simulation error: {value.err}")
        return {"err": value.err, "logs": value.logs or [], "units_consumed": value.units_consumed}

    async def send_versioned_transaction(
        self,
        tx: VersionedTransaction,
        skip_preflight: bool = True,
        max_retries: int = 3
    ) -> Optional[str]:
        """
        Broadcast a signed transaction. Callers simulate before sending, so
        preflight is off by default.

        Returns:
            Base58 signature, or None if every attempt failed
        """
        opts = TxOpts(skip_preflight=skip_preflight, max_retries=0)
        for attempt in range(1, max_retries + 1):
            try:
                resp = await self._call(lambda c: c.send_transaction(tx, opts=opts))
            except Exception as e:
                logger.warning(f"Send attempt {attempt}/{max_retries} failed: {e}")
            else:
                if resp.value:
                    return str(resp.value)
                logger.warning(f"Send attempt {attempt}/{max_retries} returned no signature")
            if attempt < max_retries:
                await asyncio.sleep(SEND_RETRY_DELAY)
        logger.error(f"Transaction not sent after {max_retries} attempts")
        return None

    async def confirm_transaction(
        self,
        signature: str,
        commitment: str = "confirmed",
        timeout: float = 30.0
    ) -> bool:
        """True once the signature reaches the commitment level within timeout."""
        try:
            resp = await asyncio.wait_for(
                self.client.confirm_transaction(Signature.from_string(signature), commitment=commitment),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Transaction {signature[:16]}... not confirmed within {timeout:.0f}s")
            return False
        except Exception as e:
            logger.error(f"Confirmation of {signature[:16]}... failed: {e}")
            return False
        statuses = resp.value
        return bool(statuses) and statuses[0] is not None and statuses[0].confirmation_status is not None

    async def close(self):
        await self.client.close()
