import sys
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from eth_account import Account  # noqa: E402
from web3 import Web3  # noqa: E402
from web3.exceptions import TimeExhausted, TransactionNotFound  # noqa: E402

from custody_errors import (  # noqa: E402
    BalanceFetchFailed,
    BroadcastFailed,
    DerivationFailure,
    GasPriceUnavailable,
    InvalidAddress,
    InvalidAmount,
    ReceiptUnavailable,
)
from eth_wallet import ERC20_ABI, EthereumAdapter, apply_gas_buffer  # noqa: E402

RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
USDC = Web3.to_checksum_address("0x1c7d4b196cb0c7b01d743fbc6116a902379c7238")
SENDER = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
SENDER_PATH = "m/44'/60'/0'/0/0"


# ---------------------------------------------------------------------------
# Fake node
# ---------------------------------------------------------------------------


class _Call:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def call(self):
        if self.error:
            raise self.error
        return self.result


class FakeTransfer:
    def __init__(self, contract, to, amount):
        self.contract = contract
        self.to = to
        self.amount = amount

    def estimate_gas(self, params):
        self.contract.estimate_params = params
        return self.contract.gas_estimate

    def build_transaction(self, params):
        self.contract.built = dict(params)
        return {
            "to": self.contract.address,
            "data": "0xa9059cbb" + "00" * 64,
            "value": 0,
            **params,
        }


class FakeFunctions:
    def __init__(self, contract):
        self._contract = contract

    def balanceOf(self, owner):
        return _Call(self._contract.balance, self._contract.error)

    def decimals(self):
        return _Call(self._contract.decimals, self._contract.error)

    def transfer(self, to, amount):
        self._contract.transfers.append((to, amount))
        return FakeTransfer(self._contract, to, amount)


class FakeContract:
    def __init__(self, address, balance=0, decimals=6, gas_estimate=50000, error=None):
        self.address = address
        self.balance = balance
        self.decimals = decimals
        self.gas_estimate = gas_estimate
        self.error = error
        self.transfers = []
        self.estimate_params = None
        self.built = None
        self.functions = FakeFunctions(self)


class FakeEth:
    def __init__(self):
        self.gas_price = 20 * 10**9
        self.block_number = 1000
        self.chain_id = 11155111
        self.balances = {}
        self.transactions = {}
        self.receipts = {}
        self.contracts = {}
        self.raw_sent = []
        self.nonce_calls = []
        self.receipt = {"transactionHash": b"\x11" * 32, "gasUsed": 21000, "status": 1}
        self.receipt_error = None
        self.send_error = None

    def get_balance(self, address):
        if address not in self.balances:
            raise ConnectionError("rpc down")
        return self.balances[address]

    def get_transaction_count(self, address, block_identifier):
        self.nonce_calls.append((address, block_identifier))
        return 7

    def contract(self, address, abi):
        assert abi is ERC20_ABI
        return self.contracts[address]

    def send_raw_transaction(self, raw):
        if self.send_error:
            raise self.send_error
        self.raw_sent.append(bytes(raw))
        return b"\x11" * 32

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        if self.receipt_error:
            raise self.receipt_error
        return self.receipt

    def get_transaction(self, tx_hash):
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return self.transactions[tx_hash]

    def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Receipt {tx_hash} not found")
        return self.receipts[tx_hash]


class FakeWeb3:
    def __init__(self):
        self.eth = FakeEth()


@pytest.fixture
def node():
    return FakeWeb3()


@pytest.fixture
def adapter(testnet_keys, node):
    return EthereumAdapter(testnet_keys, "testnet", web3=node, receipt_timeout=5)


# ---------------------------------------------------------------------------
# Pure helpers / addresses
# ---------------------------------------------------------------------------


def test_apply_gas_buffer():
    assert apply_gas_buffer(50000) == 60000
    assert apply_gas_buffer(21001) == 25201


def test_validate_address(adapter):
    assert adapter.validate_address(RECIPIENT)
    assert adapter.validate_address(RECIPIENT.lower())
    assert adapter.validate_address("0x" + RECIPIENT[2:].upper())
    assert not adapter.validate_address(RECIPIENT.replace("a", "A", 1))
    assert not adapter.validate_address(SENDER.replace("Ef", "ef", 1))
    assert not adapter.validate_address(RECIPIENT + "\n")
    assert not adapter.validate_address(RECIPIENT[2:])
    assert not adapter.validate_address(None)
    assert not adapter.validate_address("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx")
    assert not adapter.validate_address("0x1234")
    assert not adapter.validate_address("")


def test_generate_address(adapter):
    derived = adapter.generate_address(0)
    assert derived.address == SENDER
    assert derived.derivation_path == SENDER_PATH


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_get_eth_balance(adapter, node):
    node.eth.balances[SENDER] = 1_500_000_000_000_000_000
    balance = adapter.get_eth_balance(SENDER.lower())
    assert balance.wei == 1_500_000_000_000_000_000
    assert balance.eth == Decimal("1.5")


def test_get_eth_balance_wraps_errors(adapter):
    with pytest.raises(BalanceFetchFailed):
        adapter.get_eth_balance(RECIPIENT)


def test_get_erc20_balance(adapter, node):
    node.eth.contracts[USDC] = FakeContract(USDC, balance=2_500_000, decimals=6)
    balance = adapter.get_erc20_balance(SENDER, USDC)
    assert balance.raw == 2_500_000
    assert balance.decimals == 6
    assert balance.formatted == Decimal("2.5")


def test_get_erc20_balance_wraps_errors(adapter, node):
    node.eth.contracts[USDC] = FakeContract(USDC, error=ValueError("execution reverted"))
    with pytest.raises(BalanceFetchFailed):
        adapter.get_erc20_balance(SENDER, USDC)


def test_get_gas_price(adapter):
    price = adapter.get_gas_price()
    assert price.wei == 20 * 10**9
    assert price.gwei == Decimal(20)


@pytest.mark.parametrize("gas_price", [None, 0])
def test_missing_gas_price_is_a_hard_failure(adapter, node, gas_price):
    node.eth.gas_price = gas_price
    with pytest.raises(GasPriceUnavailable):
        adapter.get_gas_price()
    with pytest.raises(GasPriceUnavailable):
        adapter.estimate_eth_gas()


def test_estimate_eth_gas(adapter):
    estimate = adapter.estimate_eth_gas()
    assert estimate.gas_limit == 21000
    assert estimate.gas_cost_eth == Decimal("0.00042")


def test_get_confirmations(adapter, node):
    node.eth.transactions["0xmined"] = {"blockNumber": 991}
    node.eth.transactions["0xpending"] = {"blockNumber": None}
    assert adapter.get_confirmations("0xmined") == 10
    assert adapter.get_confirmations("0xpending") == 0
    assert adapter.get_confirmations("0xunknown") == 0


def test_get_transaction_and_receipt(adapter, node):
    node.eth.transactions["0xabc"] = {"hash": "0xabc", "blockNumber": 5}
    node.eth.receipts["0xabc"] = {"status": 1, "gasUsed": 21000}
    assert adapter.get_transaction("0xabc")["blockNumber"] == 5
    assert adapter.get_transaction_receipt("0xabc")["gasUsed"] == 21000
    assert adapter.get_transaction("0xmissing") is None
    assert adapter.get_transaction_receipt("0xmissing") is None


def test_health_check(adapter, node):
    assert adapter.health_check() is True
    del node.eth.block_number
    assert adapter.health_check() is False


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


def test_send_eth_signs_legacy_transfer(adapter, node):
    result = adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))

    assert result.tx_hash == "0x" + "11" * 32
    assert result.fee == 21000
    assert node.eth.nonce_calls == [(SENDER, "pending")]

    raw = node.eth.raw_sent[0]
    assert Account.recover_transaction(raw) == SENDER
    # Legacy transactions are RLP lists, not typed envelopes.
    assert raw[0] >= 0xC0


def test_send_eth_without_gas_price_does_not_broadcast(adapter, node):
    node.eth.gas_price = None
    with pytest.raises(GasPriceUnavailable):
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))
    assert node.eth.raw_sent == []


def test_send_eth_validation(adapter, node):
    with pytest.raises(InvalidAmount):
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0"))
    with pytest.raises(InvalidAddress):
        adapter.send_eth(SENDER_PATH, "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", Decimal("1"))
    assert node.eth.raw_sent == []


def test_send_eth_rejects_bad_checksum(adapter, node):
    with pytest.raises(InvalidAddress):
        adapter.send_eth(SENDER_PATH, RECIPIENT.replace("a", "A", 1), Decimal("0.25"))
    assert node.eth.raw_sent == []


def test_send_eth_rejects_bitcoin_path(adapter, node):
    with pytest.raises(DerivationFailure):
        adapter.send_eth("m/44'/0'/0'/0/0", RECIPIENT, Decimal("0.25"))
    assert node.eth.raw_sent == []


@pytest.fixture
def key_uses(testnet_keys, node, monkeypatch):
    """Records what the node had been asked when the signing key was derived."""
    uses = []
    original = testnet_keys.signing_key

    @contextmanager
    def recording(path):
        uses.append({"nonce_calls": list(node.eth.nonce_calls)})
        with original(path) as key:
            yield key

    monkeypatch.setattr(testnet_keys, "signing_key", recording)
    return uses


def test_send_eth_derives_key_after_node_reads(adapter, node, key_uses):
    adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))
    assert key_uses == [{"nonce_calls": [(SENDER, "pending")]}]


def test_send_eth_without_gas_price_never_derives_key(adapter, node, key_uses):
    node.eth.gas_price = 0
    with pytest.raises(GasPriceUnavailable):
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))
    assert key_uses == []


def test_send_eth_receipt_timeout(adapter, node):
    node.eth.receipt_error = TimeExhausted("timed out")
    with pytest.raises(ReceiptUnavailable):
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))


def test_send_eth_missing_receipt(adapter, node):
    node.eth.receipt = None
    with pytest.raises(ReceiptUnavailable):
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))


def test_send_eth_broadcast_error(adapter, node):
    node.eth.send_error = ValueError("nonce too low")
    with pytest.raises(BroadcastFailed) as excinfo:
        adapter.send_eth(SENDER_PATH, RECIPIENT, Decimal("0.25"))
    assert "nonce too low" not in str(excinfo.value)


def test_send_erc20_applies_gas_buffer(adapter, node):
    contract = FakeContract(USDC, gas_estimate=50000)
    node.eth.contracts[USDC] = contract
    node.eth.receipt = {"transactionHash": b"\x22" * 32, "gasUsed": 48000, "status": 1}

    result = adapter.send_erc20(SENDER_PATH, RECIPIENT, Decimal("1.5"), USDC, decimals=6, label="USDC")

    assert contract.transfers == [(RECIPIENT, 1_500_000)]
    assert contract.estimate_params == {"from": SENDER}
    assert contract.built["gas"] == 60000
    assert contract.built["gasPrice"] == 20 * 10**9
    assert contract.built["nonce"] == 7
    assert contract.built["chainId"] == 11155111
    assert result.tx_hash == "0x" + "22" * 32
    assert result.fee == 48000
    assert Account.recover_transaction(node.eth.raw_sent[0]) == SENDER


def test_send_erc20_derives_key_after_gas_estimate(adapter, node, key_uses):
    contract = FakeContract(USDC)
    node.eth.contracts[USDC] = contract

    adapter.send_erc20(SENDER_PATH, RECIPIENT, Decimal("1"), USDC)

    assert contract.estimate_params == {"from": SENDER}
    assert key_uses == [{"nonce_calls": [(SENDER, "pending")]}]


def test_send_erc20_below_smallest_unit(adapter, node):
    node.eth.contracts[USDC] = FakeContract(USDC)
    with pytest.raises(InvalidAmount):
        adapter.send_erc20(SENDER_PATH, RECIPIENT, Decimal("0.0000001"), USDC, decimals=6)


def test_reverted_transfer_still_returns_receipt_hash(adapter, node):
    node.eth.contracts[USDC] = FakeContract(USDC)
    node.eth.receipt = {"transactionHash": b"\x33" * 32, "gasUsed": 30000, "status": 0}
    result = adapter.send_erc20(SENDER_PATH, RECIPIENT, Decimal("1"), USDC)
    assert result.tx_hash == "0x" + "33" * 32
