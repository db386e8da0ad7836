"""
Ethereum chain adapter: native ETH plus ERC-20 (USDC, USDT).

Reads go through a JSON-RPC node via web3.py. Sends are legacy (gasPrice)
transactions signed locally with eth_account using the key derived on demand
for the wallet's path, submitted raw, and awaited until a receipt exists.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from custody_errors import (
    BalanceFetchFailed,
    BroadcastFailed,
    ChainQueryFailed,
    ConfigurationError,
    DerivationFailure,
    GasPriceUnavailable,
    InvalidAddress,
    InvalidAmount,
    ReceiptUnavailable,
)
from custody_types import Network, SendResult, from_smallest_unit, to_smallest_unit
from hd_keys import DerivedAddress, KeyDeriver, parse_derivation_path

logger = logging.getLogger(__name__)

ETH_TRANSFER_GAS = 21000
GAS_BUFFER_PERCENT = 120

_HEX_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")

# Minimal ERC-20 ABI: only what balance reads and transfers need.
ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class EthBalance:
    wei: int
    eth: Decimal


@dataclass(frozen=True)
class TokenBalance:
    raw: int
    decimals: int
    formatted: Decimal


@dataclass(frozen=True)
class GasPrice:
    wei: int
    gwei: Decimal


@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    gas_cost_eth: Decimal


def apply_gas_buffer(gas_estimate: int) -> int:
    """Pad a node gas estimate by 20% (integer arithmetic, rounds down)."""
    return int(gas_estimate) * GAS_BUFFER_PERCENT // 100


class EthereumAdapter:
    """Chain adapter for ETH and ERC-20 tokens sharing one address per user."""

    chain = "ethereum"

    def __init__(
        self,
        keys: KeyDeriver,
        network: Network,
        web3: Web3,
        receipt_timeout: int = 120,
    ) -> None:
        self._keys = keys
        self.network = network
        self.w3 = web3
        self.receipt_timeout = receipt_timeout
        logger.info(
            "Ethereum adapter initialized - Network: %s",
            "SEPOLIA" if network == "testnet" else "MAINNET",
        )

    @classmethod
    def from_config(cls, cfg, keys: KeyDeriver) -> EthereumAdapter:
        if not cfg.eth_rpc_url:
            raise ConfigurationError(
                "No Ethereum RPC configured. Set ETH_RPC_URL or ETH_TESTNET_RPC_URL."
            )
        web3 = Web3(
            Web3.HTTPProvider(cfg.eth_rpc_url, request_kwargs={"timeout": cfg.http_timeout})
        )
        return cls(keys=keys, network=cfg.network, web3=web3, receipt_timeout=cfg.eth_receipt_timeout)

    def _erc20(self, contract_address: str):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=ERC20_ABI
        )

    # ---- Addresses ----

    def generate_address(self, user_index: int) -> DerivedAddress:
        return self._keys.derive_address("ethereum", user_index)

    def validate_address(self, address: str) -> bool:
        """Hex address check; mixed-case input must carry a valid EIP-55 checksum."""
        if not isinstance(address, str) or not _HEX_ADDRESS_RE.fullmatch(address):
            return False
        body = address[2:]
        if body == body.lower() or body == body.upper():
            return True
        return bool(Web3.is_checksum_address(address))

    # ---- Balances ----

    def get_eth_balance(self, address: str) -> EthBalance:
        try:
            wei = int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get ETH balance for %s: %s", address, exc)
            raise BalanceFetchFailed("Failed to fetch ETH balance") from exc
        return EthBalance(wei=wei, eth=from_smallest_unit(wei, 18))

    def get_erc20_balance(self, address: str, contract_address: str) -> TokenBalance:
        try:
            contract = self._erc20(contract_address)
            raw = int(contract.functions.balanceOf(Web3.to_checksum_address(address)).call())
            decimals = int(contract.functions.decimals().call())
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to get token balance for %s on %s: %s", address, contract_address, exc
            )
            raise BalanceFetchFailed("Failed to fetch token balance") from exc
        return TokenBalance(raw=raw, decimals=decimals, formatted=from_smallest_unit(raw, decimals))

    # ---- Gas / chain state ----

    def _require_gas_price(self) -> int:
        try:
            gas_price = self.w3.eth.gas_price
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get gas price: %s", exc)
            raise GasPriceUnavailable("Failed to get gas price") from exc
        if not gas_price or int(gas_price) <= 0:
            raise GasPriceUnavailable("Failed to get gas price")
        return int(gas_price)

    def get_gas_price(self) -> GasPrice:
        wei = self._require_gas_price()
        return GasPrice(wei=wei, gwei=from_smallest_unit(wei, 9))

    def estimate_eth_gas(self) -> GasEstimate:
        """Cost of a plain ETH transfer at the current gas price."""
        gas_price = self._require_gas_price()
        return GasEstimate(
            gas_limit=ETH_TRANSFER_GAS,
            gas_cost_eth=from_smallest_unit(ETH_TRANSFER_GAS * gas_price, 18),
        )

    def get_block_number(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get block number: %s", exc)
            raise ChainQueryFailed("Failed to fetch block number") from exc

    def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get transaction %s: %s", tx_hash, exc)
            raise ChainQueryFailed("Failed to fetch transaction") from exc
        return dict(tx)

    def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get transaction receipt %s: %s", tx_hash, exc)
            raise ChainQueryFailed("Failed to fetch transaction receipt") from exc
        return dict(receipt)

    def get_confirmations(self, tx_hash: str) -> int:
        """Confirmation count; 0 when unmined, unknown, or the node errors."""
        try:
            tx = self.get_transaction(tx_hash)
            if not tx or tx.get("blockNumber") is None:
                return 0
            return self.get_block_number() - int(tx["blockNumber"]) + 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get confirmations for %s: %s", tx_hash, exc)
            return 0

    def health_check(self) -> bool:
        try:
            self.get_block_number()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Ethereum health check failed: %s", exc)
            return False

    # ---- Sending ----

    def _submit_and_wait(self, raw_transaction: bytes, label: str) -> SendResult:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send %s transaction: %s", label, exc)
            raise BroadcastFailed(f"Failed to broadcast {label} transaction") from exc

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("%s transaction sent: %s", label, tx_hash_hex)

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as exc:
            raise ReceiptUnavailable(
                f"Transaction receipt not available for {tx_hash_hex}"
            ) from exc
        if not receipt:
            raise ReceiptUnavailable(f"Transaction receipt not available for {tx_hash_hex}")

        if receipt.get("status") == 0:
            logger.warning("%s transaction %s reverted on chain", label, tx_hash_hex)
        return SendResult(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            fee=int(receipt["gasUsed"]),
        )

    def _sender_address(self, derivation_path: str) -> str:
        chain, index = parse_derivation_path(derivation_path)
        if chain != "ethereum":
            raise DerivationFailure(f"Not an Ethereum derivation path: {derivation_path}")
        return self._keys.derive_address(chain, index).address

    def _sign(self, derivation_path: str, sender: str, tx: dict[str, Any]) -> bytes:
        """Derive the key only for the signature itself; it is wiped on exit."""
        with self._keys.signing_key(derivation_path) as key:
            account = Account.from_key(bytes(key))
            if account.address != sender:
                raise DerivationFailure(f"Key at {derivation_path} does not control {sender}")
            return bytes(account.sign_transaction(tx).raw_transaction)

    def _nonce_and_chain(self, address: str) -> tuple[int, int]:
        try:
            # Pending count so back-to-back sends from one wallet don't reuse a nonce.
            nonce = int(self.w3.eth.get_transaction_count(address, "pending"))
            chain_id = int(self.w3.eth.chain_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to read nonce/chain id for %s: %s", address, exc)
            raise BroadcastFailed("Failed to prepare transaction") from exc
        return nonce, chain_id

    def send_eth(self, derivation_path: str, to_address: str, amount_eth: Decimal) -> SendResult:
        """Send ETH with a fixed 21000 gas limit at the node's current gas price."""
        value_wei = to_smallest_unit(Decimal(amount_eth), 18)
        if value_wei <= 0:
            raise InvalidAmount("Amount must be at least 1 wei.")
        if not self.validate_address(to_address):
            raise InvalidAddress(f"Invalid Ethereum address: {to_address}")

        sender = self._sender_address(derivation_path)
        gas_price = self._require_gas_price()
        nonce, chain_id = self._nonce_and_chain(sender)
        tx = {
            "to": Web3.to_checksum_address(to_address),
            "value": value_wei,
            "gas": ETH_TRANSFER_GAS,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": chain_id,
        }
        raw = self._sign(derivation_path, sender, tx)
        return self._submit_and_wait(raw, "ETH")

    def send_erc20(
        self,
        derivation_path: str,
        to_address: str,
        amount: Decimal,
        contract_address: str,
        decimals: int = 6,
        label: str = "ERC-20",
    ) -> SendResult:
        """
        Transfer ``amount`` (human units) of an ERC-20 token.

        Gas limit is the node's estimate of ``transfer`` plus a 20% buffer.
        """
        units = to_smallest_unit(Decimal(amount), decimals)
        if units <= 0:
            raise InvalidAmount("Amount is below the token's smallest unit.")
        if not self.validate_address(to_address):
            raise InvalidAddress(f"Invalid Ethereum address: {to_address}")

        contract = self._erc20(contract_address)
        transfer = contract.functions.transfer(Web3.to_checksum_address(to_address), units)

        sender = self._sender_address(derivation_path)
        try:
            gas_estimate = int(transfer.estimate_gas({"from": sender}))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to estimate %s transfer gas: %s", label, exc)
            raise BroadcastFailed(f"Failed to estimate gas for {label} transfer") from exc
        gas_price = self._require_gas_price()
        nonce, chain_id = self._nonce_and_chain(sender)
        tx = transfer.build_transaction(
            {
                "from": sender,
                "gas": apply_gas_buffer(gas_estimate),
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": chain_id,
            }
        )
        raw = self._sign(derivation_path, sender, tx)
        return self._submit_and_wait(raw, label)
