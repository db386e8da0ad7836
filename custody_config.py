from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from custody_errors import ConfigurationError
from custody_types import Network

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

SEED_PLACEHOLDER = "will-be-generated-on-first-wallet-creation"

BLOCKSTREAM_MAINNET = "https://blockstream.info/api"
BLOCKSTREAM_TESTNET = "https://blockstream.info/testnet/api"

USDC_MAINNET = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDT_MAINNET = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
USDC_SEPOLIA = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
USDT_SEPOLIA = "0xaA8E23Fb1079EA71e0a56F48a2aA51851D8433D0"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {name}={raw!r}. Expected an integer.") from exc
    if value < minimum:
        raise ConfigurationError(f"Invalid {name}={raw!r}. Must be >= {minimum}.")
    return value


@dataclass
class CustodyConfig:
    """
    Configuration for the custodial wallet core.

    Values are sourced from environment variables or a .env file.

    Seed material:
    - ENCRYPTED_MASTER_SEED: base64(IV || authTag || ciphertext) of the BIP-39 seed.
      The placeholder "will-be-generated-on-first-wallet-creation" counts as unset.
    - MASTER_SEED_PASSWORD: password fed to scrypt to obtain the AES-256-GCM key.
    - MASTER_SEED_SALT: scrypt salt (defaults to the legacy "salt").

    Network:
    - TESTNET_MODE: true (default) for Bitcoin testnet + Sepolia, false for mainnet.
    - BLOCKSTREAM_API_URL / BLOCKSTREAM_TESTNET_URL: Esplora-compatible explorer.
    - ETH_RPC_URL / ETH_TESTNET_RPC_URL: Ethereum JSON-RPC node.
    - USDC_CONTRACT_ADDRESS / USDT_CONTRACT_ADDRESS: mainnet ERC-20 contracts.

    Tuning:
    - BTC_FEE_RATE_SAT_PER_VBYTE: flat fee rate (default 10).
    - ETH_RECEIPT_TIMEOUT_SECONDS: how long a send waits for its receipt (default 120).
    - CUSTODY_HTTP_TIMEOUT_SECONDS: explorer / RPC request timeout (default 10).
    - CUSTODY_LOG_LEVEL: logging level for the MCP server (default INFO).
    """

    network: Network
    encrypted_master_seed: str | None
    master_seed_password: str | None
    master_seed_salt: str
    btc_api_url: str
    btc_fee_rate_sat_per_vb: int
    eth_rpc_url: str | None
    usdc_contract: str
    usdt_contract: str
    eth_receipt_timeout: int = 120
    http_timeout: int = 10
    log_level: str = "INFO"

    @property
    def is_testnet(self) -> bool:
        return self.network == "testnet"

    def token_contract(self, token: str) -> str:
        contracts = {"USDC": self.usdc_contract, "USDT": self.usdt_contract}
        try:
            return contracts[token]
        except KeyError:
            raise ConfigurationError(f"No ERC-20 contract configured for {token}.") from None

    @classmethod
    def from_env(cls) -> CustodyConfig:
        testnet = _env_bool("TESTNET_MODE", True)
        network: Network = "testnet" if testnet else "mainnet"

        encrypted_seed = (os.getenv("ENCRYPTED_MASTER_SEED") or "").strip() or None
        if encrypted_seed == SEED_PLACEHOLDER:
            encrypted_seed = None
        password = os.getenv("MASTER_SEED_PASSWORD") or None
        salt = os.getenv("MASTER_SEED_SALT") or "salt"

        if testnet:
            btc_api_url = os.getenv("BLOCKSTREAM_TESTNET_URL", BLOCKSTREAM_TESTNET)
            eth_rpc_url = os.getenv("ETH_TESTNET_RPC_URL")
            usdc = USDC_SEPOLIA
            usdt = USDT_SEPOLIA
        else:
            btc_api_url = os.getenv("BLOCKSTREAM_API_URL", BLOCKSTREAM_MAINNET)
            eth_rpc_url = os.getenv("ETH_RPC_URL")
            usdc = os.getenv("USDC_CONTRACT_ADDRESS", USDC_MAINNET)
            usdt = os.getenv("USDT_CONTRACT_ADDRESS", USDT_MAINNET)

        return cls(
            network=network,
            encrypted_master_seed=encrypted_seed,
            master_seed_password=password,
            master_seed_salt=salt,
            btc_api_url=btc_api_url.rstrip("/"),
            btc_fee_rate_sat_per_vb=_env_int("BTC_FEE_RATE_SAT_PER_VBYTE", 10),
            eth_rpc_url=eth_rpc_url or None,
            usdc_contract=usdc,
            usdt_contract=usdt,
            eth_receipt_timeout=_env_int("ETH_RECEIPT_TIMEOUT_SECONDS", 120),
            http_timeout=_env_int("CUSTODY_HTTP_TIMEOUT_SECONDS", 10),
            log_level=(os.getenv("CUSTODY_LOG_LEVEL") or "INFO").upper(),
        )
