"""
Error taxonomy for the custodial wallet core.

Every error raised across a module boundary derives from CustodyError, so
callers (the MCP server, an HTTP layer) can map a clean message to the user
while the chained ``__cause__`` keeps the provider detail for operators.
"""

from __future__ import annotations


class CustodyError(Exception):
    """Base class for all custodial wallet errors."""

    pass


class ConfigurationError(CustodyError):
    """Missing or invalid configuration (seed password, encrypted seed, URLs)."""

    pass


class SeedAlreadyExists(CustodyError):
    """A master seed is already configured for this deployment."""

    pass


class AuthenticationFailure(CustodyError):
    """Seed ciphertext failed authentication (wrong password or tampering)."""

    pass


class DerivationFailure(CustodyError):
    """BIP32 derivation produced no usable key, or the path is malformed."""

    pass


class InsufficientFunds(CustodyError):
    """Spendable on-chain inputs do not cover amount plus fee."""

    pass


class InsufficientBalance(CustodyError):
    """Pre-flight balance check failed for the requested amount."""

    pass


class InvalidAddress(CustodyError):
    pass


class InvalidAmount(CustodyError):
    pass


class UnsupportedToken(CustodyError):
    pass


class WalletNotFound(CustodyError):
    pass


class WalletAlreadyExists(CustodyError):
    pass


class GasPriceUnavailable(CustodyError):
    """The node returned no usable gas price; sending would risk a stuck tx."""

    pass


class ReceiptUnavailable(CustodyError):
    """No receipt was returned for a submitted Ethereum transaction."""

    pass


class BroadcastFailed(CustodyError):
    pass


class BalanceFetchFailed(CustodyError):
    pass


class TransactionFailed(CustodyError):
    """Wraps an unexpected adapter failure during a send."""

    pass


class ChainQueryFailed(CustodyError):
    """A read-only explorer / node lookup failed (transactions, block height)."""

    pass
