"""
Bitcoin chain adapter.

Balances, UTXOs and broadcast go through an Esplora-compatible explorer
(Blockstream by default). Transactions are native SegWit (P2WPKH) built with
python-bitcoinlib and signed with coincurve, using the per-user key derived on
demand from the master seed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import coincurve
import requests
from bip_utils import P2TRAddrDecoder
from bit.network.rates import currency_to_satoshi, satoshi_to_currency
from bitcoin import SelectParams
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    CTransaction,
    CTxInWitness,
    CTxWitness,
    Hash160,
    b2lx,
    b2x,
    lx,
    x,
)
from bitcoin.core.script import (
    OP_0,
    OP_1,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinAddress

from custody_errors import (
    BalanceFetchFailed,
    BroadcastFailed,
    ChainQueryFailed,
    DerivationFailure,
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
)
from custody_types import Network, SendResult
from hd_keys import DerivedAddress, KeyDeriver

logger = logging.getLogger(__name__)

DUST_LIMIT_SATS = 546
TX_OVERHEAD_VBYTES = 150
INPUT_VBYTES = 68


@dataclass(frozen=True)
class Utxo:
    txid: str
    vout: int
    value: int
    confirmed: bool = False
    block_height: int | None = None


@dataclass(frozen=True)
class BtcBalance:
    confirmed: int
    unconfirmed: int
    total: int


# ---- Fee / coin selection ----


def estimate_fee_sats(num_inputs: int, fee_rate_sat_per_vb: int) -> int:
    """Flat-rate estimate: (150 + 68 * inputs) vbytes at the configured rate."""
    return (TX_OVERHEAD_VBYTES + INPUT_VBYTES * num_inputs) * fee_rate_sat_per_vb


def select_utxos(utxos: list[Utxo], target_sats: int) -> tuple[list[Utxo], int]:
    """
    Take UTXOs in the order given until their sum covers ``target_sats``.

    Raises InsufficientFunds if the whole set falls short.
    """
    selected: list[Utxo] = []
    input_sum = 0
    for utxo in utxos:
        selected.append(utxo)
        input_sum += utxo.value
        if input_sum >= target_sats:
            return selected, input_sum
    raise InsufficientFunds(
        f"Insufficient funds: need {target_sats} sats, have {input_sum} sats"
    )


def change_output_sats(input_sum: int, amount_sats: int, fee_sats: int) -> int:
    """
    Change returned to the sender, or 0 when it would be dust.

    Change at or below the dust limit is left to the miner as extra fee.
    """
    change = input_sum - amount_sats - fee_sats
    return change if change > DUST_LIMIT_SATS else 0


def btc_to_satoshis(amount_btc: Decimal) -> int:
    """Truncates anything below one satoshi."""
    return currency_to_satoshi(Decimal(amount_btc), "btc")


def satoshis_to_btc(satoshis: int) -> Decimal:
    return Decimal(satoshi_to_currency(int(satoshis), "btc"))


def _p2wpkh_script_code(pubkey_hash: bytes) -> CScript:
    # BIP143: the scriptCode of a P2WPKH input is the matching P2PKH script.
    return CScript([OP_DUP, OP_HASH160, pubkey_hash, OP_EQUALVERIFY, OP_CHECKSIG])


def output_script(address: str, network: Network) -> CScript:
    """
    scriptPubKey paying ``address`` on ``network``.

    python-bitcoinlib has no bech32m, so taproot (witness v1) addresses are
    decoded with bip-utils.
    """
    hrp = "bc" if network == "mainnet" else "tb"
    if address.lower().startswith(hrp + "1p"):
        program = P2TRAddrDecoder.DecodeAddr(address, hrp=hrp)
        return CScript([OP_1, program])
    SelectParams("mainnet" if network == "mainnet" else "testnet")
    return CBitcoinAddress(address).to_scriptPubKey()


def _build_signed_segwit_tx(
    private_key: bytes,
    utxos: list[Utxo],
    to_script: CScript,
    amount_sats: int,
    change_sats: int,
    change_script: CScript,
) -> str:
    """
    Build and sign a native SegWit (P2WPKH) transaction.

    Every input must belong to ``private_key``; returns the serialized hex.
    """
    signer = coincurve.PrivateKey(bytes(private_key))
    pubkey = signer.public_key.format(compressed=True)
    pubkey_hash = Hash160(pubkey)

    txins = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in utxos]
    txouts = [CMutableTxOut(amount_sats, to_script)]
    if change_sats:
        txouts.append(CMutableTxOut(change_sats, change_script))

    tx = CMutableTransaction(txins, txouts, nVersion=2)
    script_code = _p2wpkh_script_code(pubkey_hash)

    witnesses = []
    for i, utxo in enumerate(utxos):
        sighash = SignatureHash(
            script_code, tx, i, SIGHASH_ALL, amount=utxo.value, sigversion=SIGVERSION_WITNESS_V0
        )
        # libsecp256k1 emits low-S DER signatures, as standardness requires.
        sig = signer.sign(sighash, hasher=None) + bytes([SIGHASH_ALL])
        witnesses.append(CTxInWitness(CScriptWitness([sig, pubkey])))

    tx.wit = CTxWitness(witnesses)
    return b2x(tx.serialize())


class BitcoinAdapter:
    """Chain adapter for BTC."""

    chain = "bitcoin"

    def __init__(
        self,
        keys: KeyDeriver,
        network: Network,
        api_url: str,
        fee_rate_sat_per_vb: int = 10,
        timeout: int = 10,
    ) -> None:
        self._keys = keys
        self.network = network
        self.api_url = api_url.rstrip("/")
        self.fee_rate_sat_per_vb = fee_rate_sat_per_vb
        self.timeout = timeout
        logger.info("Bitcoin adapter initialized - Network: %s", network.upper())

    @classmethod
    def from_config(cls, cfg, keys: KeyDeriver) -> BitcoinAdapter:
        return cls(
            keys=keys,
            network=cfg.network,
            api_url=cfg.btc_api_url,
            fee_rate_sat_per_vb=cfg.btc_fee_rate_sat_per_vb,
            timeout=cfg.http_timeout,
        )

    # ---- Explorer helpers ----

    def _get(self, path: str) -> requests.Response:
        resp = requests.get(f"{self.api_url}{path}", timeout=self.timeout)
        resp.raise_for_status()
        return resp

    # ---- Addresses ----

    def generate_address(self, user_index: int) -> DerivedAddress:
        return self._keys.derive_address("bitcoin", user_index)

    def validate_address(self, address: str) -> bool:
        """True if ``address`` yields an output script on the configured network."""
        try:
            output_script(address, self.network)
            return True
        except Exception:  # noqa: BLE001
            return False

    # ---- Balances / UTXOs ----

    def get_balance(self, address: str) -> BtcBalance:
        """Balance in satoshis from the explorer's chain and mempool stats."""
        try:
            data = self._get(f"/address/{address}").json()
            chain_stats = data["chain_stats"]
            mempool_stats = data["mempool_stats"]
            confirmed = int(chain_stats["funded_txo_sum"]) - int(chain_stats["spent_txo_sum"])
            unconfirmed = int(mempool_stats["funded_txo_sum"]) - int(
                mempool_stats["spent_txo_sum"]
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get balance for %s: %s", address, exc)
            raise BalanceFetchFailed("Failed to fetch Bitcoin balance") from exc
        return BtcBalance(confirmed=confirmed, unconfirmed=unconfirmed, total=confirmed + unconfirmed)

    def get_utxos(self, address: str) -> list[Utxo]:
        try:
            data = self._get(f"/address/{address}/utxo").json()
            utxos = []
            for u in data:
                status = u.get("status") or {}
                utxos.append(
                    Utxo(
                        txid=str(u["txid"]),
                        vout=int(u["vout"]),
                        value=int(u["value"]),
                        confirmed=bool(status.get("confirmed", False)),
                        block_height=status.get("block_height"),
                    )
                )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get UTXOs for %s: %s", address, exc)
            raise BalanceFetchFailed("Failed to fetch UTXOs") from exc
        return utxos

    # ---- Transactions ----

    def get_transaction(self, txid: str) -> dict[str, Any]:
        try:
            return self._get(f"/tx/{txid}").json()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get transaction %s: %s", txid, exc)
            raise ChainQueryFailed("Failed to fetch transaction") from exc

    def get_transaction_hex(self, txid: str) -> str:
        try:
            return self._get(f"/tx/{txid}/hex").text.strip()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get transaction hex for %s: %s", txid, exc)
            raise ChainQueryFailed("Failed to fetch transaction") from exc

    def broadcast_transaction(self, raw_hex: str) -> str:
        """POST the raw hex to the explorer; it answers with the txid as text."""
        try:
            resp = requests.post(
                f"{self.api_url}/tx",
                data=raw_hex,
                headers={"Content-Type": "text/plain"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Failed to broadcast transaction: %s", exc)
            raise BroadcastFailed("Failed to broadcast transaction") from exc
        if not resp.ok:
            logger.error(
                "Failed to broadcast transaction: %s", resp.text or f"HTTP {resp.status_code}"
            )
            raise BroadcastFailed("Failed to broadcast transaction")
        return resp.text.strip()

    def get_block_height(self) -> int:
        try:
            return int(self._get("/blocks/tip/height").text.strip())
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get tip height: %s", exc)
            raise ChainQueryFailed("Failed to fetch block height") from exc

    def get_confirmations(self, txid: str) -> int:
        """Confirmation count; 0 when unconfirmed or when the explorer errors."""
        try:
            tx = self.get_transaction(txid)
            status = tx.get("status") or {}
            if not status.get("confirmed"):
                return 0
            return self.get_block_height() - int(status["block_height"]) + 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to get confirmations for %s: %s", txid, exc)
            return 0

    def health_check(self) -> bool:
        try:
            self.get_block_height()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Bitcoin health check failed: %s", exc)
            return False

    def _check_funding(self, utxo: Utxo, script_pubkey: CScript) -> None:
        # Segwit sighashes commit to the input amount, so the explorer data must
        # match the funding transaction byte for byte.
        raw_hex = self.get_transaction_hex(utxo.txid)
        try:
            funding = CTransaction.deserialize(x(raw_hex))
            output = funding.vout[utxo.vout]
        except Exception as exc:  # noqa: BLE001
            raise ChainQueryFailed(f"Could not decode funding transaction {utxo.txid}") from exc
        if (
            b2lx(funding.GetTxid()) != utxo.txid
            or output.nValue != utxo.value
            or output.scriptPubKey != script_pubkey
        ):
            raise ChainQueryFailed(
                f"UTXO {utxo.txid}:{utxo.vout} does not match its funding transaction"
            )

    def send_transaction(
        self,
        from_address: str,
        derivation_path: str,
        to_address: str,
        amount_sats: int,
    ) -> SendResult:
        """
        Build, sign and broadcast a payment of ``amount_sats`` to ``to_address``.

        UTXOs are taken in explorer order until amount + flat-rate fee is
        covered; change above the dust limit returns to ``from_address``.
        """
        if amount_sats <= 0:
            raise InvalidAmount("Amount must be at least 1 satoshi.")
        if not self.validate_address(to_address):
            raise InvalidAddress(f"Invalid Bitcoin address: {to_address}")

        utxos = self.get_utxos(from_address)
        if not utxos:
            raise InsufficientFunds("No UTXOs available")

        fee_sats = estimate_fee_sats(len(utxos), self.fee_rate_sat_per_vb)
        selected, input_sum = select_utxos(utxos, amount_sats + fee_sats)
        change_sats = change_output_sats(input_sum, amount_sats, fee_sats)

        sender_script = output_script(from_address, self.network)
        recipient_script = output_script(to_address, self.network)
        for utxo in selected:
            self._check_funding(utxo, sender_script)

        with self._keys.signing_key(derivation_path) as key:
            pubkey = coincurve.PrivateKey(bytes(key)).public_key.format(compressed=True)
            if CScript([OP_0, Hash160(pubkey)]) != sender_script:
                raise DerivationFailure(
                    f"Key at {derivation_path} does not control {from_address}"
                )
            raw_hex = _build_signed_segwit_tx(
                key, selected, recipient_script, amount_sats, change_sats, sender_script
            )

        txid = self.broadcast_transaction(raw_hex)
        logger.info("Bitcoin transaction sent: %s", txid)
        return SendResult(tx_hash=txid, fee=fee_sats)
