"""
Chain executors: turn an approved run into on-chain swaps and report the realised outcome.
"""
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from solders.transaction import VersionedTransaction

from .config import GasModel
from .errors import ExecutionError, InsufficientBalance, RemoteTransient
from .evm_client import WEI_PER_NATIVE, EvmClient, EvmClientError
from .jupiter_client import JupiterClient
from .models import Run, Strategy
from .solana_client import SolanaClient
from .utils import format_path, get_terminal_colors
from .zerox_client import ZeroExClient

colors = get_terminal_colors()
logger = logging.getLogger(__name__)


@dataclass
class TradeOutcome:
    success: bool
    tx_reference: Optional[str] = None
    actual_profit: Optional[float] = None
    error: Optional[str] = None


def _legs(run: Run) -> List[Tuple[str, str, Optional[str]]]:
    path = run.token_path or []
    if len(path) < 3:
        raise ExecutionError(f"Run {run.id} has no executable token path")
    sources = list(run.sources or [])
    sources += [None] * (len(path) - 1 - len(sources))
    return list(zip(path[:-1], path[1:], sources))


class ChainExecutor(ABC):
    """Executes one run for one chain family."""

    @abstractmethod
    async def execute(self, run: Run, strategy: Strategy, signer) -> TradeOutcome:
        """
        Raises:
            InsufficientBalance: wallet cannot cover the trade or fees
            ExecutionError: a leg failed to build, send or confirm
            QuoteError: re-quote at execution time failed
        """


class SolanaExecutor(ChainExecutor):
    """Executes each leg as its own Jupiter swap transaction."""

    def __init__(
        self,
        jupiter: JupiterClient,
        solana: SolanaClient,
        gas_model: GasModel,
        confirm_timeout: float = 30.0,
        priority_fee_lamports: int = 10_000,
    ):
        self.jupiter = jupiter
        self.solana = solana
        self.gas_model = gas_model
        self.confirm_timeout = confirm_timeout
        self.priority_fee_lamports = priority_fee_lamports

    async def execute(self, run: Run, strategy: Strategy, signer) -> TradeOutcome:
        legs = _legs(run)
        try:
            balance_sol = await self.solana.get_balance_sol(signer.address)
        except ConnectionError as e:
            raise RemoteTransient(str(e)) from e

        fees_needed = self.gas_model.native_cost(len(legs))
        if balance_sol < fees_needed:
            raise InsufficientBalance(
                f"Fee payer {signer.address} has {balance_sol:.6f} SOL, needs {fees_needed:.6f} SOL for fees"
            )

        decimals = 10 ** strategy.token_in_decimals
        amount = int(round(run.notional_in * decimals))
        signatures: List[str] = []

        logger.info(
            f"{colors['CYAN']}Executing Solana run{colors['RESET']} {run.id[:8]}: "
            f"{format_path(run.token_path, run.sources)}"
        )
        for leg_no, (sell_token, buy_token, source) in enumerate(legs, start=1):
            quote = await self.jupiter.get_quote(strategy.network, sell_token, buy_token, amount, source)
            swap = await self.jupiter.get_swap_transaction(
                quote, signer.address, priority_fee_lamports=self.priority_fee_lamports
            )
            unsigned = VersionedTransaction.from_bytes(base64.b64decode(swap.swap_transaction))
            signed = signer.sign_versioned(unsigned)

            sim_result = await self.solana.simulate_versioned_transaction(signed)
            if sim_result is None:
                raise ExecutionError(f"Leg{leg_no} simulation failed (no result from RPC)", ",".join(signatures) or None)
            if sim_result.get("err"):
                err = str(sim_result["err"])
                if "InsufficientFunds" in err or "insufficient" in err.lower():
                    raise InsufficientBalance(f"Leg{leg_no} simulation: {err}", ",".join(signatures) or None)
                raise ExecutionError(f"Leg{leg_no} simulation failed: {err}", ",".join(signatures) or None)

            sig = await self.solana.send_versioned_transaction(signed)
            if sig is None:
                raise ExecutionError(f"Leg{leg_no} send failed", ",".join(signatures) or None)
            signatures.append(sig)

            confirmed = await self.solana.confirm_transaction(sig, timeout=self.confirm_timeout)
            if not confirmed:
                raise ExecutionError(f"Leg{leg_no} transaction not confirmed", ",".join(signatures))
            amount = quote.buy_amount

        actual_profit = amount / decimals - run.notional_in - self.gas_model.cost(len(legs))
        return TradeOutcome(success=True, tx_reference=",".join(signatures), actual_profit=actual_profit)


class EvmExecutor(ChainExecutor):
    """Executes each leg through the 0x allowance-holder flow."""

    def __init__(
        self,
        zerox: ZeroExClient,
        evm: EvmClient,
        gas_model: GasModel,
        confirm_timeout: float = 120.0,
    ):
        self.zerox = zerox
        self.evm = evm
        self.gas_model = gas_model
        self.confirm_timeout = confirm_timeout

    async def _send(self, network: str, tx: Dict[str, Any], signer, what: str) -> Tuple[str, float]:
        """Sign, broadcast and wait; returns (tx_hash, native spent on gas)."""
        prepared = await self.evm.prepare_transaction(network, tx, signer.address)
        raw = signer.sign_transaction(prepared)
        tx_hash = await self.evm.send_raw_transaction(network, raw)
        receipt = await self.evm.wait_for_receipt(network, tx_hash, timeout=self.confirm_timeout)
        if receipt is None:
            raise ExecutionError(f"{what} not confirmed", tx_hash)
        if receipt.get("status") != 1:
            raise ExecutionError(f"{what} reverted", tx_hash)
        gas_used = int(receipt.get("gasUsed") or 0)
        gas_price = int(receipt.get("effectiveGasPrice") or prepared.get("gasPrice") or 0)
        return tx_hash, gas_used * gas_price / WEI_PER_NATIVE

    async def execute(self, run: Run, strategy: Strategy, signer) -> TradeOutcome:
        legs = _legs(run)
        network = strategy.network
        token_in = legs[0][0]
        decimals = 10 ** strategy.token_in_decimals
        amount = int(round(run.notional_in * decimals))

        try:
            native = await self.evm.get_native_balance(network, signer.address)
            token_before = await self.evm.get_token_balance(network, token_in, signer.address)
        except EvmClientError as e:
            raise RemoteTransient(str(e)) from e

        gas_needed = self.gas_model.native_cost(len(legs))
        if native < gas_needed:
            raise InsufficientBalance(
                f"Wallet {signer.address} has {native:.6f} native, needs {gas_needed:.6f} for gas"
            )
        if token_before < amount:
            raise InsufficientBalance(
                f"Wallet {signer.address} holds {token_before / decimals:.6f} of {token_in[:10]}, "
                f"needs {run.notional_in:.6f}"
            )

        logger.info(
            f"{colors['CYAN']}Executing EVM run{colors['RESET']} {run.id[:8]} on {network}: "
            f"{format_path(run.token_path, run.sources)}"
        )
        tx_hashes: List[str] = []
        native_spent = 0.0
        try:
            for leg_no, (sell_token, buy_token, source) in enumerate(legs, start=1):
                swap = await self.zerox.get_swap_transaction(
                    network, sell_token, buy_token, amount, signer.address, source
                )
                if swap.allowance_spender:
                    allowance = await self.evm.get_allowance(network, sell_token, signer.address, swap.allowance_spender)
                    if allowance < amount:
                        approve_tx = await self.evm.build_approve_tx(
                            network, sell_token, signer.address, swap.allowance_spender
                        )
                        approve_hash, spent = await self._send(network, approve_tx, signer, f"Leg{leg_no} approval")
                        tx_hashes.append(approve_hash)
                        native_spent += spent

                buy_before = None
                if leg_no < len(legs):
                    buy_before = await self.evm.get_token_balance(network, buy_token, signer.address)

                tx = {"to": swap.to, "data": swap.data, "value": swap.value}
                if swap.gas:
                    tx["gas"] = swap.gas
                if swap.gas_price:
                    tx["gasPrice"] = swap.gas_price
                tx_hash, spent = await self._send(network, tx, signer, f"Leg{leg_no} swap")
                tx_hashes.append(tx_hash)
                native_spent += spent

                if buy_before is not None:
                    received = await self.evm.get_token_balance(network, buy_token, signer.address) - buy_before
                    if received <= 0:
                        raise ExecutionError(f"Leg{leg_no} received nothing", tx_hash)
                    amount = received

            token_after = await self.evm.get_token_balance(network, token_in, signer.address)
        except EvmClientError as e:
            raise ExecutionError(str(e), ",".join(tx_hashes) or None) from e
        except ExecutionError as e:
            if tx_hashes and not e.tx_reference:
                e.tx_reference = ",".join(tx_hashes)
            raise

        realised = (token_after - token_before) / decimals
        actual_profit = realised - native_spent * self.gas_model.native_price
        return TradeOutcome(success=True, tx_reference=",".join(tx_hashes), actual_profit=actual_profit)
