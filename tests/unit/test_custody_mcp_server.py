import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import custody_mcp_server as server  # noqa: E402
from btc_wallet import BtcBalance  # noqa: E402
from custody_errors import GasPriceUnavailable  # noqa: E402
from custody_transactions import TransactionOrchestrator, WalletService  # noqa: E402
from custody_types import SendResult  # noqa: E402
from eth_wallet import EthBalance, GasEstimate, GasPrice, TokenBalance  # noqa: E402
from hd_keys import DerivedAddress, derivation_path  # noqa: E402

BTC_TO = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class DummyCfg:
    network = "testnet"


class DummyVault:
    def health_check(self):
        return True


class StubBitcoin:
    chain = "bitcoin"

    def generate_address(self, user_index):
        return DerivedAddress(f"tb1qstub{user_index}", derivation_path("bitcoin", user_index))

    def validate_address(self, address):
        return address.startswith("tb1")

    def get_balance(self, address):
        return BtcBalance(confirmed=20_000_000, unconfirmed=0, total=20_000_000)

    def send_transaction(self, from_address, path, to_address, amount_sats):
        return SendResult(tx_hash="ab" * 32, fee=2180)

    def get_confirmations(self, tx_hash):
        return 4

    def health_check(self):
        return True


class StubEthereum:
    chain = "ethereum"

    def __init__(self):
        self.gas_price_wei = 30 * 10**9

    def generate_address(self, user_index):
        return DerivedAddress("0x" + f"{user_index:040x}", derivation_path("ethereum", user_index))

    def validate_address(self, address):
        return address.startswith("0x") and len(address) == 42

    def get_eth_balance(self, address):
        return EthBalance(wei=10**18, eth=Decimal("1"))

    def get_erc20_balance(self, address, contract):
        return TokenBalance(raw=5_000_000, decimals=6, formatted=Decimal("5"))

    def get_gas_price(self):
        if not self.gas_price_wei:
            raise GasPriceUnavailable("Failed to get gas price")
        return GasPrice(wei=self.gas_price_wei, gwei=Decimal(self.gas_price_wei) / 10**9)

    def estimate_eth_gas(self):
        return GasEstimate(gas_limit=21000, gas_cost_eth=Decimal("0.00063"))

    def get_confirmations(self, tx_hash):
        return 0

    def health_check(self):
        return False


@pytest.fixture
def services(monkeypatch):
    bitcoin = StubBitcoin()
    ethereum = StubEthereum()
    wallets = WalletService(bitcoin, ethereum, {"USDC": "0xUSDC", "USDT": "0xUSDT"})
    stub = server.CustodyServices(
        config=DummyCfg(),
        vault=DummyVault(),
        bitcoin=bitcoin,
        ethereum=ethereum,
        wallets=wallets,
        transactions=TransactionOrchestrator(wallets),
    )
    monkeypatch.setattr(server, "_get_services", lambda: stub)
    return stub


def _parse(response):
    return json.loads(response[0].text)


def _call(name, arguments):
    return _parse(asyncio.run(server.call_tool(name, arguments)))


# ---------------------------------------------------------------------------
# Tool listing / dispatch
# ---------------------------------------------------------------------------


def test_list_tools_includes_all_custody_tools():
    tools = asyncio.run(server.list_tools())
    names = {tool.name for tool in tools}

    assert names == {
        "custody_create_wallets",
        "custody_get_wallets",
        "custody_get_balances",
        "custody_send",
        "custody_get_transactions",
        "custody_get_transaction",
        "custody_get_confirmations",
        "custody_validate_address",
        "custody_get_gas_price",
        "custody_health",
    }


def test_unknown_tool():
    payload = _call("custody_nope", {})
    assert payload["success"] is False
    assert "Unknown tool" in payload["error"]


def test_non_object_arguments():
    payload = _parse(asyncio.run(server.call_tool("custody_send", ["x"])))
    assert payload["success"] is False
    assert "Expected an object" in payload["error"]


# ---------------------------------------------------------------------------
# Wallets / balances
# ---------------------------------------------------------------------------


def test_create_and_get_wallets(services):
    created = _call("custody_create_wallets", {"user_id": "5"})
    assert created["success"] is True
    assert [w["chain"] for w in created["wallets"]] == ["bitcoin", "ethereum"]
    assert created["wallets"][0]["derivation_path"] == "m/44'/0'/0'/0/5"

    listed = _call("custody_get_wallets", {"user_id": "5"})
    assert [w["address"] for w in listed["wallets"]] == [
        w["address"] for w in created["wallets"]
    ]

    again = _call("custody_create_wallets", {"user_id": "5"})
    assert again["success"] is False
    assert again["kind"] == "WalletAlreadyExists"


def test_create_wallets_missing_user_id(services):
    payload = _call("custody_create_wallets", {})
    assert payload["success"] is False
    assert payload["error"] == "Missing user_id."


def test_get_balances(services):
    payload = _call("custody_get_balances", {"user_id": "8"})
    assert payload["success"] is True
    assert payload["network"] == "testnet"
    assert {b["token"]: b["balance"] for b in payload["balances"]} == {
        "BTC": "0.2",
        "ETH": "1",
        "USDC": "5",
        "USDT": "5",
    }


def test_get_balances_for_one_token(services):
    payload = _call("custody_get_balances", {"user_id": "8", "token": "eth"})
    assert [b["token"] for b in payload["balances"]] == ["ETH"]


def test_unexpected_error_is_not_leaked(services, monkeypatch):
    def boom(user_id):
        raise RuntimeError("db password=hunter2")

    monkeypatch.setattr(services.wallets, "get_balances", boom)
    payload = _call("custody_get_balances", {"user_id": "8"})

    assert payload["success"] is False
    assert payload["kind"] == "InternalError"
    assert "hunter2" not in payload["error"]


# ---------------------------------------------------------------------------
# Sending / history
# ---------------------------------------------------------------------------


def test_send_and_history(services):
    _call("custody_create_wallets", {"user_id": "2"})

    sent = _call(
        "custody_send",
        {"user_id": "2", "token": "BTC", "to_address": BTC_TO, "amount": "0.01"},
    )
    assert sent["success"] is True
    tx = sent["transaction"]
    assert tx["status"] == "pending"
    assert tx["tx_hash"] == "ab" * 32
    assert tx["amount"] == "0.01"

    history = _call("custody_get_transactions", {"user_id": "2"})
    assert [t["id"] for t in history["transactions"]] == [tx["id"]]

    one = _call("custody_get_transaction", {"user_id": "2", "transaction_id": tx["id"]})
    assert one["transaction"]["tx_hash"] == tx["tx_hash"]


def test_send_invalid_amount(services):
    _call("custody_create_wallets", {"user_id": "2"})
    payload = _call(
        "custody_send",
        {"user_id": "2", "token": "ETH", "to_address": "0x" + "1" * 40, "amount": "-1"},
    )
    assert payload["success"] is False
    assert payload["kind"] == "InvalidAmount"


def test_send_missing_fields(services):
    payload = _call("custody_send", {"user_id": "2", "token": "BTC", "amount": "1"})
    assert payload["error"] == "Missing to_address."
    payload = _call("custody_send", {"user_id": "2", "token": "BTC", "to_address": BTC_TO})
    assert payload["error"] == "Missing amount."


def test_send_insufficient_balance(services):
    _call("custody_create_wallets", {"user_id": "2"})
    payload = _call(
        "custody_send",
        {"user_id": "2", "token": "BTC", "to_address": BTC_TO, "amount": "5"},
    )
    assert payload["kind"] == "InsufficientBalance"
    assert _call("custody_get_transactions", {"user_id": "2"})["transactions"] == []


def test_get_transaction_not_found(services):
    payload = _call("custody_get_transaction", {"user_id": "2", "transaction_id": "missing"})
    assert payload["success"] is False
    assert payload["kind"] == "TransactionNotFound"


# ---------------------------------------------------------------------------
# Chain lookups / health
# ---------------------------------------------------------------------------


def test_get_confirmations(services):
    payload = _call("custody_get_confirmations", {"chain": "Bitcoin", "tx_hash": "abc"})
    assert payload["confirmations"] == 4
    assert payload["chain"] == "bitcoin"


def test_validate_address(services):
    assert _call("custody_validate_address", {"token": "btc", "address": BTC_TO})["valid"] is True
    payload = _call("custody_validate_address", {"token": "USDC", "address": BTC_TO})
    assert payload["valid"] is False
    assert payload["token"] == "USDC"


def test_get_gas_price(services):
    payload = _call("custody_get_gas_price", {})
    assert payload["gas_price_wei"] == str(30 * 10**9)
    assert payload["eth_transfer_gas_limit"] == 21000
    assert payload["eth_transfer_cost_eth"] == "0.00063"


def test_get_gas_price_unavailable(services):
    services.ethereum.gas_price_wei = 0
    payload = _call("custody_get_gas_price", {})
    assert payload["success"] is False
    assert payload["kind"] == "GasPriceUnavailable"


def test_health(services):
    payload = _call("custody_health", {})
    assert payload["success"] is True
    assert payload["seed_vault"] is True
    assert payload["bitcoin"] is True
    assert payload["ethereum"] is False
    assert payload["healthy"] is False
