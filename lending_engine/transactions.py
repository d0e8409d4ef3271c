"""Append-only transaction log."""
from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from .models import Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionLog:
    """Records transactions newest first.

    A transaction starts PENDING and moves exactly once to SUCCESS or ERROR.
    Entries are never removed.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._entries: list[Transaction] = []
        self._index: dict[str, int] = {}

    def record(self, type_: TransactionType, asset_id: str, amount: Decimal) -> Transaction:
        tx = Transaction(
            id=f"tx-{uuid.uuid4().hex[:16]}",
            type=type_,
            asset_id=asset_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            timestamp=self._clock(),
        )
        self._index[tx.id] = len(self._entries)
        self._entries.append(tx)
        logger.info("Transaction %s %s %s %s pending", tx.id, type_.value, amount, asset_id)
        return tx

    def get(self, tx_id: str) -> Transaction:
        return self._entries[self._index[tx_id]]

    def _finish(self, tx_id: str, **changes: object) -> Transaction:
        tx = self.get(tx_id)
        if tx.status is not TransactionStatus.PENDING:
            raise ValueError(f"Transaction {tx_id} already {tx.status.value}")
        tx = dataclasses.replace(tx, **changes)
        self._entries[self._index[tx_id]] = tx
        return tx

    def mark_success(self, tx_id: str, hash: str | None = None) -> Transaction:
        tx = self._finish(tx_id, status=TransactionStatus.SUCCESS, hash=hash)
        logger.info("Transaction %s succeeded (hash=%s)", tx_id, hash)
        return tx

    def mark_error(self, tx_id: str, reason: str) -> Transaction:
        tx = self._finish(tx_id, status=TransactionStatus.ERROR, error=reason)
        logger.warning("Transaction %s failed: %s", tx_id, reason)
        return tx

    def entries(self) -> list[Transaction]:
        return list(reversed(self._entries))

    def pending(self) -> list[Transaction]:
        return [tx for tx in self.entries() if tx.status is TransactionStatus.PENDING]

    def __len__(self) -> int:
        return len(self._entries)
