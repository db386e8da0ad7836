#!/usr/bin/env python3
"""
MCP server for the custodial wallet core.

Exposes wallet creation, balances, sends and transaction lookups for
platform users as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from dataclasses import dataclass
from typing import Any, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from btc_wallet import BitcoinAdapter
from custody_config import CustodyConfig
from custody_errors import CustodyError
from custody_transactions import TransactionOrchestrator, WalletService
from custody_types import CHAINS, ERC20_TOKENS, TOKEN_CHAINS
from eth_wallet import EthereumAdapter
from hd_keys import KeyDeriver
from seed_vault import SeedVault

logger = logging.getLogger(__name__)

app = Server("custody_wallet")


@dataclass
class CustodyServices:
    config: CustodyConfig
    vault: SeedVault
    bitcoin: BitcoinAdapter
    ethereum: EthereumAdapter
    wallets: WalletService
    transactions: TransactionOrchestrator


def build_services(cfg: CustodyConfig) -> CustodyServices:
    vault = SeedVault.from_config(cfg)
    keys = KeyDeriver(vault, cfg.network)
    bitcoin = BitcoinAdapter.from_config(cfg, keys)
    ethereum = EthereumAdapter.from_config(cfg, keys)
    wallets = WalletService(
        bitcoin,
        ethereum,
        token_contracts={t: cfg.token_contract(t) for t in ERC20_TOKENS},
    )
    return CustodyServices(
        config=cfg,
        vault=vault,
        bitcoin=bitcoin,
        ethereum=ethereum,
        wallets=wallets,
        transactions=TransactionOrchestrator(wallets),
    )


_services: CustodyServices | None = None
_services_lock = threading.Lock()


def _get_services() -> CustodyServices:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services(CustodyConfig.from_env())
        return _services


def _ok_response(payload: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": True, **payload}))]


def _error_response(message: str, kind: str | None = None) -> List[TextContent]:
    body: dict[str, Any] = {"success": False, "error": message}
    if kind:
        body["kind"] = kind
    return [TextContent(type="text", text=json.dumps(body))]


def _exception_response(exc: Exception) -> List[TextContent]:
    if isinstance(exc, CustodyError):
        return _error_response(str(exc), type(exc).__name__)
    logger.exception("Unexpected error in custody tool")
    return _error_response("Internal error. See server logs.", "InternalError")


def _required_str(arguments: dict[str, Any], key: str) -> str:
    value = str(arguments.get(key) or "").strip()
    if not value:
        raise ValueError(f"Missing {key}.")
    return value


_USER_ID = {"type": "string", "description": "Platform user id (non-negative integer)"}
_TOKEN = {"type": "string", "enum": list(TOKEN_CHAINS), "description": "Token symbol"}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="custody_create_wallets",
            description="Create the Bitcoin and Ethereum wallets for a user.",
            inputSchema={
                "type": "object",
                "properties": {"user_id": _USER_ID},
                "required": ["user_id"],
            },
        ),
        Tool(
            name="custody_get_wallets",
            description="List a user's wallets (chain, address, derivation path).",
            inputSchema={
                "type": "object",
                "properties": {"user_id": _USER_ID},
                "required": ["user_id"],
            },
        ),
        Tool(
            name="custody_get_balances",
            description=(
                "Return BTC, ETH, USDC and USDT balances for a user. "
                "Wallets are created on first use. Optionally filter by token."
            ),
            inputSchema={
                "type": "object",
                "properties": {"user_id": _USER_ID, "token": _TOKEN},
                "required": ["user_id"],
            },
        ),
        Tool(
            name="custody_send",
            description=(
                "Send BTC, ETH, USDC or USDT from a user's wallet. Broadcasts immediately "
                "and is not idempotent; confirm with the user before calling."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "user_id": _USER_ID,
                    "token": _TOKEN,
                    "to_address": {"type": "string", "description": "Recipient address"},
                    "amount": {
                        "type": "string",
                        "description": "Amount in token units, e.g. \"0.001\"",
                    },
                },
                "required": ["user_id", "token", "to_address", "amount"],
            },
        ),
        Tool(
            name="custody_get_transactions",
            description="Outbound transaction history for a user, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "user_id": _USER_ID,
                    "limit": {"type": "integer", "description": "Max records (default 50)"},
                },
                "required": ["user_id"],
            },
        ),
        Tool(
            name="custody_get_transaction",
            description="Look up one outbound transaction of a user by id.",
            inputSchema={
                "type": "object",
                "properties": {
                    "user_id": _USER_ID,
                    "transaction_id": {"type": "string", "description": "Transaction id"},
                },
                "required": ["user_id", "transaction_id"],
            },
        ),
        Tool(
            name="custody_get_confirmations",
            description="Confirmation count for a transaction hash (0 if unmined).",
            inputSchema={
                "type": "object",
                "properties": {
                    "chain": {"type": "string", "enum": list(CHAINS)},
                    "tx_hash": {"type": "string", "description": "Transaction id / hash"},
                },
                "required": ["chain", "tx_hash"],
            },
        ),
        Tool(
            name="custody_validate_address",
            description="Check whether an address is valid for the token's chain.",
            inputSchema={
                "type": "object",
                "properties": {
                    "token": _TOKEN,
                    "address": {"type": "string", "description": "Address to validate"},
                },
                "required": ["token", "address"],
            },
        ),
        Tool(
            name="custody_get_gas_price",
            description="Current Ethereum gas price and the cost of a plain ETH transfer.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="custody_health",
            description="Check seed vault, Bitcoin explorer and Ethereum node health.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    handlers = {
        "custody_create_wallets": _handle_create_wallets,
        "custody_get_wallets": _handle_get_wallets,
        "custody_get_balances": _handle_get_balances,
        "custody_send": _handle_send,
        "custody_get_transactions": _handle_get_transactions,
        "custody_get_transaction": _handle_get_transaction,
        "custody_get_confirmations": _handle_get_confirmations,
        "custody_validate_address": _handle_validate_address,
        "custody_get_gas_price": _handle_get_gas_price,
        "custody_health": _handle_health,
    }
    handler = handlers.get(name)
    if handler is None:
        return _error_response(f"Unknown tool: {name}")
    return await handler(arguments)


async def _handle_create_wallets(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        services = await asyncio.to_thread(_get_services)
        wallets = await asyncio.to_thread(services.wallets.create_wallets_for_user, user_id)
        return _ok_response({"wallets": [w.to_dict() for w in wallets]})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_wallets(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        services = await asyncio.to_thread(_get_services)
        wallets = await asyncio.to_thread(services.wallets.find_by_user_id, user_id)
        return _ok_response({"wallets": [w.to_dict() for w in wallets]})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_balances(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        token = arguments.get("token")
        services = await asyncio.to_thread(_get_services)
        if token:
            balance = await asyncio.to_thread(
                services.wallets.get_balance_by_token, user_id, token
            )
            balances = [balance]
        else:
            balances = await asyncio.to_thread(services.wallets.get_balances, user_id)
        return _ok_response(
            {"network": services.config.network, "balances": [b.to_dict() for b in balances]}
        )
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_send(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        token = _required_str(arguments, "token")
        to_address = _required_str(arguments, "to_address")
        if arguments.get("amount") is None:
            raise ValueError("Missing amount.")
        services = await asyncio.to_thread(_get_services)
        tx = await asyncio.to_thread(
            services.transactions.send, user_id, token, to_address, arguments["amount"]
        )
        return _ok_response({"transaction": tx.to_dict()})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_transactions(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        limit = int(arguments.get("limit") or 50)
        services = await asyncio.to_thread(_get_services)
        txs = await asyncio.to_thread(
            services.transactions.get_transaction_history, user_id, limit
        )
        return _ok_response({"transactions": [tx.to_dict() for tx in txs]})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        user_id = _required_str(arguments, "user_id")
        tx_id = _required_str(arguments, "transaction_id")
        services = await asyncio.to_thread(_get_services)
        tx = await asyncio.to_thread(services.transactions.get_transaction_by_id, user_id, tx_id)
        if tx is None:
            return _error_response("Transaction not found", "TransactionNotFound")
        return _ok_response({"transaction": tx.to_dict()})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_confirmations(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        chain = _required_str(arguments, "chain").lower()
        tx_hash = _required_str(arguments, "tx_hash")
        services = await asyncio.to_thread(_get_services)
        confirmations = await asyncio.to_thread(
            services.transactions.get_confirmations, chain, tx_hash
        )
        return _ok_response({"chain": chain, "tx_hash": tx_hash, "confirmations": confirmations})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_validate_address(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        token = _required_str(arguments, "token")
        address = _required_str(arguments, "address")
        services = await asyncio.to_thread(_get_services)
        valid = await asyncio.to_thread(services.transactions.validate_address, token, address)
        return _ok_response({"token": token.upper(), "address": address, "valid": valid})
    except ValueError as exc:
        return _error_response(str(exc))
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_get_gas_price(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        services = await asyncio.to_thread(_get_services)
        price = await asyncio.to_thread(services.ethereum.get_gas_price)
        estimate = await asyncio.to_thread(services.ethereum.estimate_eth_gas)
        return _ok_response(
            {
                "gas_price_wei": str(price.wei),
                "gas_price_gwei": str(price.gwei),
                "eth_transfer_gas_limit": estimate.gas_limit,
                "eth_transfer_cost_eth": str(estimate.gas_cost_eth),
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def _handle_health(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        services = await asyncio.to_thread(_get_services)
        seed_ok = await asyncio.to_thread(services.vault.health_check)
        bitcoin_ok = await asyncio.to_thread(services.bitcoin.health_check)
        ethereum_ok = await asyncio.to_thread(services.ethereum.health_check)
        return _ok_response(
            {
                "network": services.config.network,
                "healthy": seed_ok and bitcoin_ok and ethereum_ok,
                "seed_vault": seed_ok,
                "bitcoin": bitcoin_ok,
                "ethereum": ethereum_ok,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _exception_response(exc)


async def main() -> None:
    cfg = CustodyConfig.from_env()
    # stdout carries the MCP stream.
    logging.basicConfig(
        level=cfg.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
