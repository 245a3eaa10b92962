"""
Fee-payer key store.

Loads signing material for labelled wallets and hands out signers. Callers ask
for "a signer for wallet X" and never see raw key bytes.
"""
import logging
import os
import re
from typing import Any, Dict, Mapping, Optional, Union

import base58
from eth_account import Account
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from .config import CHAIN_EVM, CHAIN_SOLANA

logger = logging.getLogger(__name__)

ENV_PREFIX = "FEE_PAYER_KEY_"
_HEX_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class SolanaSigner:
    """Signs Solana versioned transactions for one keypair."""

    chain = CHAIN_SOLANA

    def __init__(self, label: str, keypair: Keypair):
        self.label = label
        self._keypair = keypair

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    def sign_versioned(self, tx: VersionedTransaction) -> VersionedTransaction:
        """Return a copy of tx signed by this wallet."""
        return VersionedTransaction(tx.message, [self._keypair])

    def __repr__(self):
        return f"SolanaSigner(label={self.label!r}, address={self.address})"


class EvmSigner:
    """Signs EVM transactions for one private key."""

    chain = CHAIN_EVM

    def __init__(self, label: str, account):
        self.label = label
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        """Sign a transaction dict and return the raw bytes ready to broadcast."""
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)

    def __repr__(self):
        return f"EvmSigner(label={self.label!r}, address={self.address})"


Signer = Union[SolanaSigner, EvmSigner]


def parse_signer(label: str, secret: str) -> Signer:
    """
    Build a signer from a secret string.

    A 64-char hex string (optionally 0x-prefixed) is an EVM private key;
    anything else is decoded as a base58 Solana keypair.

    Raises:
        ValueError: if the secret is neither
    """
    secret = secret.strip()
    if _HEX_KEY.match(secret):
        key = secret if secret.startswith("0x") else "0x" + secret
        return EvmSigner(label, Account.from_key(key))
    try:
        return SolanaSigner(label, Keypair.from_bytes(base58.b58decode(secret)))
    except Exception as e:
        raise ValueError(f"Key for {label} is neither an EVM hex key nor a base58 Solana keypair") from e


class KeyStore:
    """Label -> signer lookup."""

    def __init__(self, signers: Optional[Dict[str, Signer]] = None):
        self._signers: Dict[str, Signer] = {k.upper(): v for k, v in (signers or {}).items()}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX) -> "KeyStore":
        """Load every <prefix><LABEL> variable; malformed keys are logged and skipped."""
        environ = os.environ if environ is None else environ
        signers: Dict[str, Signer] = {}
        for name, value in environ.items():
            if not name.startswith(prefix) or not value:
                continue
            label = name[len(prefix):].upper()
            try:
                signers[label] = parse_signer(label, value)
            except ValueError as e:
                logger.error(str(e))
                continue
            logger.info(f"Loaded {signers[label].chain} signer {label} ({signers[label].address})")
        return cls(signers)

    @property
    def labels(self):
        return sorted(self._signers)

    def signer_for(self, label: str, chain: Optional[str] = None) -> Signer:
        """
        Args:
            label: Wallet label
            chain: If given, the signer must belong to this chain

        Raises:
            KeyError: unknown label, or label bound to another chain
        """
        signer = self._signers.get((label or "").upper())
        if signer is None:
            raise KeyError(f"No signer configured for wallet {label}")
        if chain and signer.chain != chain:
            raise KeyError(f"Wallet {label} is a {signer.chain} signer, not {chain}")
        return signer
