"""Pure parsing functions for protocol RPC payloads — no I/O."""
from __future__ import annotations

from collections.abc import Mapping
from decimal import ROUND_DOWN, Decimal
from typing import Any

from ..exceptions import ExternalFailure
from ..models import Operation, Position


def get_asset_id(coin_type: str) -> str:
    """Extract the asset id from a coin type string.

    Examples:
        "0x1::coin::DOT" → "dot"
        "usdc" → "usdc"
    """
    if "::" in coin_type:
        return coin_type.split("::")[-1].lower()
    return coin_type.lower()


def from_base_units(raw: Any, decimals: int) -> Decimal:
    """Convert an integer amount in base units to a token amount."""
    try:
        units = int(raw)
    except (TypeError, ValueError) as e:
        raise ExternalFailure(f"Malformed base-unit amount {raw!r}", e) from e
    if units < 0:
        raise ExternalFailure(f"Negative base-unit amount {raw!r}")
    return Decimal(units).scaleb(-decimals)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer base units, rounding down."""
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def parse_position(entry: Mapping[str, Any], decimals: Mapping[str, int]) -> Position:
    """Parse one position entry.

    Entries look like ``{"coin_type": "0x1::coin::DOT", "supplied": "1000000000000",
    "borrowed": "0", "is_collateral": true}`` with amounts in base units.
    Assets missing from *decimals* are unknown to this engine.
    """
    asset_id = get_asset_id(str(entry.get("coin_type", "")))
    if asset_id not in decimals:
        raise ExternalFailure(f"Position references unknown asset '{asset_id}'")
    places = decimals[asset_id]
    return Position(
        asset_id=asset_id,
        supplied=from_base_units(entry.get("supplied", 0), places),
        borrowed=from_base_units(entry.get("borrowed", 0), places),
        is_collateral=bool(entry.get("is_collateral", False)),
    )


def parse_positions(
    entries: list[Mapping[str, Any]], decimals: Mapping[str, int]
) -> list[Position]:
    """Parse all entries, dropping positions with nothing supplied or borrowed."""
    positions = [parse_position(e, decimals) for e in entries]
    return [p for p in positions if not p.is_empty]


def encode_operation(
    operation: Operation, decimals: Mapping[str, int], sender: str
) -> dict[str, Any]:
    """Build the ``lending_submit`` request body for *operation*."""
    body: dict[str, Any] = {
        "sender": sender,
        "kind": operation.kind.value,
        "asset": operation.asset_id,
        "amount": str(to_base_units(operation.amount, decimals[operation.asset_id])),
    }
    if operation.borrower is not None:
        body["borrower"] = operation.borrower
    return body
