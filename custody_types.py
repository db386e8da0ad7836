"""Shared chain/token vocabulary and amount conversion helpers."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Literal

from custody_errors import InvalidAmount, UnsupportedToken

Network = Literal["mainnet", "testnet"]
Chain = Literal["bitcoin", "ethereum"]
TokenSymbol = Literal["BTC", "ETH", "USDC", "USDT"]

CHAINS: tuple[Chain, ...] = ("bitcoin", "ethereum")

# ETH, USDC and USDT share the single Ethereum wallet of a user.
TOKEN_CHAINS: dict[str, Chain] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDC": "ethereum",
    "USDT": "ethereum",
}

TOKEN_DECIMALS: dict[str, int] = {
    "BTC": 8,
    "ETH": 18,
    "USDC": 6,
    "USDT": 6,
}

ERC20_TOKENS: tuple[str, ...] = ("USDC", "USDT")


@dataclass(frozen=True)
class SendResult:
    """What a chain adapter reports back after a broadcast."""

    tx_hash: str
    fee: int  # satoshis for Bitcoin, gas used for Ethereum


def resolve_token(token: Any) -> TokenSymbol:
    symbol = str(token or "").strip().upper()
    if symbol not in TOKEN_CHAINS:
        raise UnsupportedToken(f"Unsupported token: {token!r}")
    return symbol  # type: ignore[return-value]


def chain_for_token(token: str) -> Chain:
    return TOKEN_CHAINS[resolve_token(token)]


def parse_amount(value: Any) -> Decimal:
    """
    Parse a human amount ("0.5", 10, Decimal) into a positive finite Decimal.

    Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.
    """
    if isinstance(value, bool):
        raise InvalidAmount("Invalid amount. Must be a number.")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmount("Invalid amount. Must be a number.") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise InvalidAmount("Invalid amount. Must be greater than zero.")
    return parsed


def to_smallest_unit(amount: Decimal, decimals: int) -> int:
    """Human amount -> integer base units, truncating sub-unit dust."""
    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(
        Decimal(1), rounding=ROUND_DOWN
    )
    return int(scaled)


def from_smallest_unit(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)) / (Decimal(10) ** decimals)
