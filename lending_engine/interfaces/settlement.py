"""Settlement executor protocol — the wallet/signer/contract-call layer."""
from typing import Protocol

from ..models import Operation, SettlementReceipt


class SettlementExecutor(Protocol):
    """Confirms an operation externally. Raises on failure."""

    async def submit(self, operation: Operation) -> SettlementReceipt: ...
