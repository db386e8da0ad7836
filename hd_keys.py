"""
Per-user key derivation from the vault's master seed.

Paths (BIP-44, external chain):
- Bitcoin:  m/44'/0'/0'/0/{user_index}   -> P2WPKH (bech32) address
- Ethereum: m/44'/60'/0'/0/{user_index}  -> EIP-55 checksummed address
  (shared by ETH, USDC and USDT)

Nothing derived here is cached. Every call decrypts the seed exactly once,
derives, and drops the seed buffer before returning.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from bip_utils import Bip32Slip10Secp256k1, P2WPKHAddrEncoder
from bip_utils.bip.bip32 import Bip32KeyError, Bip32PathError
from eth_account import Account

from custody_errors import DerivationFailure
from custody_types import Chain, Network
from seed_vault import SeedVault, _wipe

logger = logging.getLogger(__name__)

COIN_TYPES: dict[str, int] = {"bitcoin": 0, "ethereum": 60}

# Non-hardened child indexes only; user ids map 1:1 onto the last path level.
MAX_USER_INDEX = 2**31 - 1

_PATH_RE = re.compile(r"^m/44'/(0|60)'/0'/0/(\d+)$")


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    derivation_path: str


def derivation_path(chain: Chain, user_index: int) -> str:
    if chain not in COIN_TYPES:
        raise DerivationFailure(f"Unsupported chain: {chain!r}")
    if isinstance(user_index, bool) or not isinstance(user_index, int):
        raise DerivationFailure("User index must be an integer.")
    if not 0 <= user_index <= MAX_USER_INDEX:
        raise DerivationFailure(f"User index out of range: {user_index}")
    return f"m/44'/{COIN_TYPES[chain]}'/0'/0/{user_index}"


def parse_derivation_path(path: str) -> tuple[Chain, int]:
    """Inverse of ``derivation_path``; rejects anything outside the fixed scheme."""
    match = _PATH_RE.match(path or "")
    if not match:
        raise DerivationFailure(f"Unsupported derivation path: {path!r}")
    chain: Chain = "bitcoin" if match.group(1) == "0" else "ethereum"
    index = int(match.group(2))
    if index > MAX_USER_INDEX:
        raise DerivationFailure(f"User index out of range: {index}")
    return chain, index


def p2wpkh_address(compressed_pubkey: bytes, network: Network) -> str:
    hrp = "bc" if network == "mainnet" else "tb"
    return P2WPKHAddrEncoder.EncodeKey(compressed_pubkey, hrp=hrp)


class KeyDeriver:
    """Derives addresses and signing keys on demand from a SeedVault."""

    def __init__(self, vault: SeedVault, network: Network) -> None:
        self._vault = vault
        self.network = network

    def _derive_node(self, path: str):
        parse_derivation_path(path)
        with self._vault.unlock() as seed:
            try:
                node = Bip32Slip10Secp256k1.FromSeedAndPath(bytes(seed), path)
            except (Bip32KeyError, Bip32PathError, ValueError) as exc:
                raise DerivationFailure(f"Failed to derive key at {path}") from exc
        if node.IsPublicOnly():
            raise DerivationFailure(f"Failed to derive private key at {path}")
        return node

    def derive_address(self, chain: Chain, user_index: int) -> DerivedAddress:
        path = derivation_path(chain, user_index)
        node = self._derive_node(path)

        if chain == "bitcoin":
            pubkey = node.PublicKey().RawCompressed().ToBytes()
            address = p2wpkh_address(pubkey, self.network)
        else:
            key = bytearray(node.PrivateKey().Raw().ToBytes())
            try:
                address = Account.from_key(bytes(key)).address
            finally:
                _wipe(key)

        if not address:
            raise DerivationFailure(f"Failed to generate {chain} address")
        return DerivedAddress(address=address, derivation_path=path)

    def derive_private_key(self, path: str) -> bytes:
        """
        Raw 32-byte private key for ``path``. Re-derived on every call.

        WARNING: callers must not store, log or transmit the result; prefer
        ``signing_key`` which wipes its buffer.
        """
        node = self._derive_node(path)
        raw = node.PrivateKey().Raw().ToBytes()
        if len(raw) != 32 or not any(raw):
            raise DerivationFailure(f"Failed to derive private key at {path}")
        return raw

    @contextmanager
    def signing_key(self, path: str) -> Iterator[bytearray]:
        key = bytearray(self.derive_private_key(path))
        try:
            yield key
        finally:
            _wipe(key)
