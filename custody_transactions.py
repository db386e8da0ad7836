"""
Wallet records, storage and the outbound send flow.

A user owns one wallet per chain: the Bitcoin wallet holds BTC and the single
Ethereum wallet holds ETH, USDC and USDT. ``TransactionOrchestrator.send``
validates a request, checks the balance, dispatches to the chain adapter and
records the broadcast as ``pending``. Failed sends leave no record.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Protocol

from btc_wallet import BitcoinAdapter, btc_to_satoshis, satoshis_to_btc
from custody_errors import (
    ChainQueryFailed,
    CustodyError,
    DerivationFailure,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    TransactionFailed,
    WalletAlreadyExists,
    WalletNotFound,
)
from custody_types import (
    CHAINS,
    ERC20_TOKENS,
    TOKEN_DECIMALS,
    Chain,
    SendResult,
    TokenSymbol,
    chain_for_token,
    parse_amount,
    resolve_token,
)
from eth_wallet import EthereumAdapter
from hd_keys import DerivedAddress

logger = logging.getLogger(__name__)

TX_STATUS_PENDING = "pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WalletRecord:
    user_id: str
    chain: Chain
    address: str
    derivation_path: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class WalletBalance:
    token: TokenSymbol
    balance: Decimal
    address: str

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "balance": str(self.balance), "address": self.address}


@dataclass(frozen=True)
class OutboundTransaction:
    user_id: str
    chain: Chain
    token: TokenSymbol
    from_address: str
    to_address: str
    amount: str
    tx_hash: str
    fee_or_gas_used: int
    status: str = TX_STATUS_PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class WalletStore(Protocol):
    def add_all(self, records: list[WalletRecord]) -> None: ...

    def find_by_user_id(self, user_id: str) -> list[WalletRecord]: ...

    def find_by_user_id_and_chain(self, user_id: str, chain: Chain) -> WalletRecord | None: ...


class TransactionStore(Protocol):
    def add(self, tx: OutboundTransaction) -> None: ...

    def list_for_user(self, user_id: str, limit: int) -> list[OutboundTransaction]: ...

    def get(self, user_id: str, tx_id: str) -> OutboundTransaction | None: ...


class InMemoryWalletStore:
    """Process-local wallet table keyed by (user_id, chain)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[tuple[str, str], WalletRecord] = {}

    def add_all(self, records: list[WalletRecord]) -> None:
        with self._lock:
            for record in records:
                if (record.user_id, record.chain) in self._rows:
                    raise WalletAlreadyExists(
                        f"User {record.user_id} already has a {record.chain} wallet"
                    )
            for record in records:
                self._rows[(record.user_id, record.chain)] = record

    def find_by_user_id(self, user_id: str) -> list[WalletRecord]:
        with self._lock:
            rows = [r for (uid, _), r in self._rows.items() if uid == user_id]
        return sorted(rows, key=lambda r: r.chain)

    def find_by_user_id_and_chain(self, user_id: str, chain: Chain) -> WalletRecord | None:
        with self._lock:
            return self._rows.get((user_id, chain))


class InMemoryTransactionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: list[OutboundTransaction] = []

    def add(self, tx: OutboundTransaction) -> None:
        with self._lock:
            self._rows.append(tx)

    def list_for_user(self, user_id: str, limit: int) -> list[OutboundTransaction]:
        with self._lock:
            rows = [tx for tx in self._rows if tx.user_id == user_id]
        # Stable sort keeps insertion order for equal timestamps; newest first.
        rows = sorted(enumerate(rows), key=lambda p: (p[1].created_at, p[0]), reverse=True)
        return [tx for _, tx in rows[:limit]]

    def get(self, user_id: str, tx_id: str) -> OutboundTransaction | None:
        with self._lock:
            for tx in self._rows:
                if tx.id == tx_id and tx.user_id == user_id:
                    return tx
        return None


@dataclass
class _WalletLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class WalletLocks:
    """
    One lock per (user, chain); held for the whole of a send.

    An entry lives only while some send holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], _WalletLock] = {}

    @contextmanager
    def hold(self, user_id: str, chain: str) -> Iterator[None]:
        key = (user_id, chain)
        with self._guard:
            entry = self._locks.setdefault(key, _WalletLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class ChainAdapter(Protocol):
    chain: str

    def generate_address(self, user_index: int) -> DerivedAddress: ...

    def validate_address(self, address: str) -> bool: ...

    def get_confirmations(self, tx_hash: str) -> int: ...


def user_index_for(user_id: str) -> int:
    """Platform user ids are non-negative integers and double as the BIP-44 index."""
    try:
        index = int(str(user_id).strip())
    except ValueError as exc:
        raise DerivationFailure(f"User id must be a non-negative integer: {user_id!r}") from exc
    if index < 0:
        raise DerivationFailure(f"User id must be a non-negative integer: {user_id!r}")
    return index


class WalletService:
    def __init__(
        self,
        bitcoin: BitcoinAdapter,
        ethereum: EthereumAdapter,
        token_contracts: dict[str, str],
        store: WalletStore | None = None,
    ) -> None:
        self.bitcoin = bitcoin
        self.ethereum = ethereum
        self.adapters: dict[str, ChainAdapter] = {"bitcoin": bitcoin, "ethereum": ethereum}
        self.token_contracts = dict(token_contracts)
        self.store: WalletStore = store if store is not None else InMemoryWalletStore()

    def create_wallets_for_user(self, user_id: str) -> list[WalletRecord]:
        """Derive and store the user's Bitcoin and Ethereum wallets."""
        user_id = str(user_id)
        if self.store.find_by_user_id(user_id):
            raise WalletAlreadyExists(f"User {user_id} already has wallets")

        index = user_index_for(user_id)
        records = []
        for chain in CHAINS:
            derived = self.adapters[chain].generate_address(index)
            records.append(
                WalletRecord(
                    user_id=user_id,
                    chain=chain,
                    address=derived.address,
                    derivation_path=derived.derivation_path,
                )
            )
        self.store.add_all(records)
        logger.info("Created wallets for user %s", user_id)
        return records

    def find_by_user_id(self, user_id: str) -> list[WalletRecord]:
        return self.store.find_by_user_id(str(user_id))

    def find_by_user_id_and_chain(self, user_id: str, chain: Chain) -> WalletRecord | None:
        return self.store.find_by_user_id_and_chain(str(user_id), chain)

    def _ensure_wallets(self, user_id: str) -> list[WalletRecord]:
        wallets = self.find_by_user_id(user_id)
        if wallets:
            return wallets
        try:
            return self.create_wallets_for_user(user_id)
        except WalletAlreadyExists:
            # Created concurrently by another request.
            return self.find_by_user_id(user_id)

    def token_balance(self, wallet: WalletRecord, token: TokenSymbol) -> Decimal:
        if token == "BTC":
            return satoshis_to_btc(self.bitcoin.get_balance(wallet.address).total)
        if token == "ETH":
            return self.ethereum.get_eth_balance(wallet.address).eth
        contract = self.token_contracts[token]
        return self.ethereum.get_erc20_balance(wallet.address, contract).formatted

    def get_balances(self, user_id: str) -> list[WalletBalance]:
        """
        BTC (confirmed + unconfirmed), ETH, USDC and USDT balances.

        Wallets are created on the first call for a user.
        """
        wallets = {w.chain: w for w in self._ensure_wallets(str(user_id))}
        balances = []
        for token in ("BTC", "ETH", *ERC20_TOKENS):
            wallet = wallets.get(chain_for_token(token))
            if wallet is None:
                continue
            balances.append(
                WalletBalance(
                    token=token,
                    balance=self.token_balance(wallet, token),
                    address=wallet.address,
                )
            )
        return balances

    def get_balance_by_token(self, user_id: str, token: str) -> WalletBalance:
        symbol = resolve_token(token)
        chain = chain_for_token(symbol)
        wallets = {w.chain: w for w in self._ensure_wallets(str(user_id))}
        wallet = wallets.get(chain)
        if wallet is None:
            raise WalletNotFound(f"Wallet not found for token {symbol}")
        return WalletBalance(
            token=symbol, balance=self.token_balance(wallet, symbol), address=wallet.address
        )


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


class TransactionOrchestrator:
    def __init__(
        self,
        wallets: WalletService,
        store: TransactionStore | None = None,
        locks: WalletLocks | None = None,
    ) -> None:
        self.wallets = wallets
        self.store: TransactionStore = store if store is not None else InMemoryTransactionStore()
        self.locks = locks or WalletLocks()
        self._senders: dict[str, Callable[[WalletRecord, TokenSymbol, str, Decimal], SendResult]] = {
            "bitcoin": self._send_bitcoin,
            "ethereum": self._send_ethereum,
        }

    def validate_address(self, token: str, address: str) -> bool:
        chain = chain_for_token(token)
        return self.wallets.adapters[chain].validate_address(address)

    def get_confirmations(self, chain: Chain, tx_hash: str) -> int:
        adapter = self.wallets.adapters.get(chain)
        if adapter is None:
            raise ChainQueryFailed(f"Unsupported chain: {chain!r}")
        return adapter.get_confirmations(tx_hash)

    def _send_bitcoin(
        self, wallet: WalletRecord, token: TokenSymbol, to_address: str, amount: Decimal
    ) -> SendResult:
        return self.wallets.bitcoin.send_transaction(
            wallet.address, wallet.derivation_path, to_address, btc_to_satoshis(amount)
        )

    def _send_ethereum(
        self, wallet: WalletRecord, token: TokenSymbol, to_address: str, amount: Decimal
    ) -> SendResult:
        if token == "ETH":
            return self.wallets.ethereum.send_eth(wallet.derivation_path, to_address, amount)
        return self.wallets.ethereum.send_erc20(
            wallet.derivation_path,
            to_address,
            amount,
            self.wallets.token_contracts[token],
            decimals=TOKEN_DECIMALS[token],
            label=token,
        )

    def send(self, user_id: str, token: str, to_address: str, amount: Any) -> OutboundTransaction:
        """
        Send ``amount`` (human units) of ``token`` from the user's wallet.

        Not idempotent: every successful call broadcasts a new transaction.
        """
        user_id = str(user_id)
        parsed = parse_amount(amount)
        symbol = resolve_token(token)
        chain = chain_for_token(symbol)
        if symbol == "BTC" and btc_to_satoshis(parsed) <= 0:
            raise InvalidAmount("Amount is below 1 satoshi.")

        wallet = self.wallets.find_by_user_id_and_chain(user_id, chain)
        if wallet is None:
            raise WalletNotFound("Wallet not found")

        to_address = (to_address or "").strip()
        if not self.wallets.adapters[chain].validate_address(to_address):
            raise InvalidAddress("Invalid recipient address")

        with self.locks.hold(user_id, chain):
            balance = self.wallets.token_balance(wallet, symbol)
            if balance < parsed:
                raise InsufficientBalance("Insufficient balance")

            try:
                result = self._senders[chain](wallet, symbol, to_address, parsed)
            except CustodyError as exc:
                logger.error("Failed to send %s for user %s: %s", symbol, user_id, exc)
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to send %s for user %s", symbol, user_id)
                raise TransactionFailed("Failed to send transaction") from exc

        tx = OutboundTransaction(
            user_id=user_id,
            chain=chain,
            token=symbol,
            from_address=wallet.address,
            to_address=to_address,
            amount=str(parsed),
            tx_hash=result.tx_hash,
            fee_or_gas_used=result.fee,
        )
        self.store.add(tx)
        logger.info("Transaction sent: %s (%s)", tx.tx_hash, symbol)
        return tx

    def get_transaction_history(self, user_id: str, limit: int = 50) -> list[OutboundTransaction]:
        if limit <= 0:
            return []
        return self.store.list_for_user(str(user_id), limit)

    def get_transaction_by_id(self, user_id: str, tx_id: str) -> OutboundTransaction | None:
        return self.store.get(str(user_id), tx_id)
