"""Lending protocol gateway over JSON-RPC.

Implements the borrower, funds and settlement seams against a node exposing
the ``lending_*`` methods:

- ``lending_listBorrowers()`` → ``["0xabc", ...]``
- ``lending_getPositions(account)`` → ``[{coin_type, supplied, borrowed, is_collateral}]``
- ``lending_getBalance(account, asset)`` → base-unit integer string
- ``lending_getAllowance(account, asset)`` → base-unit integer string
- ``lending_submit(request)`` → ``{"hash": "0x..."}``
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from ..exceptions import ExternalFailure, UnknownAsset
from ..models import Market, Operation, Position, SettlementReceipt
from .client import JsonRpcClient
from .parser import encode_operation, from_base_units, parse_positions

logger = logging.getLogger(__name__)


class RpcLendingGateway:
    """``BorrowerSource``, ``FundsSource`` and ``SettlementExecutor`` over JSON-RPC.

    Balances, allowances and submissions act on behalf of *account* (the
    liquidator's or the user's address).
    """

    def __init__(self, client: JsonRpcClient, account: str, markets: Iterable[Market]) -> None:
        self._client = client
        self.account = account
        self._decimals = {m.asset.id: m.asset.decimals for m in markets}

    def _places(self, asset_id: str) -> int:
        try:
            return self._decimals[asset_id]
        except KeyError:
            raise UnknownAsset(f"No market for asset '{asset_id}'") from None

    # ------------------------------------------------------------------
    # BorrowerSource
    # ------------------------------------------------------------------

    async def list_borrowers(self) -> list[str]:
        result = await self._client.rpc_call("lending_listBorrowers", [])
        if not isinstance(result, list):
            raise ExternalFailure(f"lending_listBorrowers returned {type(result).__name__}")
        return [str(b) for b in result]

    async def get_ledger(self, account_id: str) -> list[Position]:
        result = await self._client.rpc_call("lending_getPositions", [account_id])
        if not isinstance(result, list):
            raise ExternalFailure(f"lending_getPositions returned {type(result).__name__}")
        positions = parse_positions(result, self._decimals)
        logger.debug("Account %s has %d positions", account_id, len(positions))
        return positions

    # ------------------------------------------------------------------
    # FundsSource
    # ------------------------------------------------------------------

    async def get_balance(self, asset_id: str) -> Decimal:
        places = self._places(asset_id)
        raw = await self._client.rpc_call("lending_getBalance", [self.account, asset_id])
        return from_base_units(raw, places)

    async def get_allowance(self, asset_id: str) -> Decimal:
        places = self._places(asset_id)
        raw = await self._client.rpc_call("lending_getAllowance", [self.account, asset_id])
        return from_base_units(raw, places)

    # ------------------------------------------------------------------
    # SettlementExecutor
    # ------------------------------------------------------------------

    async def submit(self, operation: Operation) -> SettlementReceipt:
        self._places(operation.asset_id)
        request = encode_operation(operation, self._decimals, self.account)
        logger.info("Submitting %s %s %s", operation.kind.value, operation.amount, operation.asset_id)
        result = await self._client.rpc_call("lending_submit", [request])
        tx_hash = result.get("hash") if isinstance(result, dict) else None
        return SettlementReceipt(hash=tx_hash)
