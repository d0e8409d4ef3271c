"""Liquidation scanner — finds borrowers below the liquidation threshold."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Callable, TypeVar

from .exceptions import ExternalFailure, ExternalTimeout, LendingError, OpportunityNotFound
from .health import compute_health, debt_value
from .interfaces.borrower_source import BorrowerSource
from .interfaces.market_source import MarketSource
from .models import LiquidationOpportunity, Position, ScanFailure, ScanResult
from .registry import MarketRegistry
from .transactions import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIQUIDATION_THRESHOLD = Decimal("1.0")
LIQUIDATION_DISCOUNT = Decimal("0.05")


def rank(opportunities: Iterable[LiquidationOpportunity]) -> list[LiquidationOpportunity]:
    """Highest profit first; ties broken by id for a stable order."""
    return sorted(opportunities, key=lambda o: (-o.profit, o.id))


def evaluate_borrower(
    borrower: str,
    positions: Sequence[Position],
    registry: MarketRegistry,
    *,
    liquidation_threshold: Decimal = LIQUIDATION_THRESHOLD,
    discount: Decimal = LIQUIDATION_DISCOUNT,
    now: datetime | None = None,
) -> LiquidationOpportunity | None:
    """Return an opportunity if *borrower* is liquidatable, else ``None``.

    The seized collateral is the borrower's largest collateral position by
    value; the debt to repay is their largest debt position by value.
    """
    positions = tuple(positions)
    if debt_value(positions, registry) == 0:
        return None

    health = compute_health(positions, registry)
    if health.value >= liquidation_threshold:
        return None

    collateral = [p for p in positions if p.is_collateral and p.supplied > 0]
    if not collateral:
        logger.debug("Borrower %s is underwater with no collateral to seize", borrower)
        return None
    debts = [p for p in positions if p.borrowed > 0]

    seized = max(collateral, key=lambda p: p.supplied * registry.price(p.asset_id))
    owed = max(debts, key=lambda p: p.borrowed * registry.price(p.asset_id))

    collateral_value_usd = seized.supplied * registry.price(seized.asset_id)
    you_pay = collateral_value_usd * (1 - discount)
    you_receive = collateral_value_usd

    return LiquidationOpportunity(
        id=f"liq-{borrower}-{seized.asset_id}",
        borrower=borrower,
        health_ratio=health.value,
        collateral_asset=seized.asset_id,
        collateral_amount=seized.supplied,
        collateral_value_usd=collateral_value_usd,
        debt_asset=owed.asset_id,
        debt_amount=owed.borrowed,
        discount=discount,
        you_pay=you_pay,
        you_receive=you_receive,
        profit=you_receive - you_pay,
        last_updated=now or utc_now(),
    )


def scan_ledgers(
    ledgers: Mapping[str, Sequence[Position]],
    registry: MarketRegistry,
    *,
    liquidation_threshold: Decimal = LIQUIDATION_THRESHOLD,
    discount: Decimal = LIQUIDATION_DISCOUNT,
    now: datetime | None = None,
) -> ScanResult:
    """Evaluate already-fetched ledgers. One bad ledger never aborts the batch."""
    now = now or utc_now()
    found: list[LiquidationOpportunity] = []
    failures: list[ScanFailure] = []

    for borrower, positions in ledgers.items():
        try:
            opportunity = evaluate_borrower(
                borrower,
                positions,
                registry,
                liquidation_threshold=liquidation_threshold,
                discount=discount,
                now=now,
            )
        except LendingError as e:
            logger.warning("Could not evaluate borrower %s: %s", borrower, e)
            failures.append(ScanFailure(borrower=borrower, reason=str(e)))
            continue
        if opportunity is not None:
            found.append(opportunity)

    return ScanResult(
        opportunities=tuple(rank(found)),
        failures=tuple(failures),
        scanned=len(ledgers),
    )


class LiquidationScanner:
    """Reads borrower ledgers through the external sources and scans them.

    Every external read is bounded by ``fetch_timeout``; per-borrower reads run
    concurrently up to ``max_concurrency``.
    """

    def __init__(
        self,
        market_source: MarketSource,
        borrower_source: BorrowerSource,
        *,
        liquidation_threshold: Decimal = LIQUIDATION_THRESHOLD,
        discount: Decimal = LIQUIDATION_DISCOUNT,
        fetch_timeout: float = 10.0,
        max_concurrency: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._markets = market_source
        self._borrowers = borrower_source
        self.liquidation_threshold = liquidation_threshold
        self.discount = discount
        self._fetch_timeout = fetch_timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock

    async def bounded(self, what: str, call: Awaitable[T]) -> T:
        """Await an external read, mapping timeouts and errors to ExternalFailure."""
        try:
            return await asyncio.wait_for(call, timeout=self._fetch_timeout)
        except asyncio.TimeoutError as e:
            raise ExternalTimeout(what, self._fetch_timeout, e) from e
        except LendingError:
            raise
        except Exception as e:
            raise ExternalFailure(f"{what} failed", e) from e

    async def load_registry(self) -> MarketRegistry:
        markets = await self.bounded("get_markets", self._markets.get_markets())
        return MarketRegistry(markets)

    async def fetch_ledger(self, borrower: str) -> list[Position]:
        async with self._semaphore:
            return await self.bounded(f"get_ledger({borrower})", self._borrowers.get_ledger(borrower))

    def evaluate(
        self, borrower: str, positions: Sequence[Position], registry: MarketRegistry
    ) -> LiquidationOpportunity | None:
        return evaluate_borrower(
            borrower,
            positions,
            registry,
            liquidation_threshold=self.liquidation_threshold,
            discount=self.discount,
            now=self._clock(),
        )

    async def scan(self, registry: MarketRegistry | None = None) -> ScanResult:
        """Scan every borrower. Failed lookups are reported, not raised.

        Failing to load markets or the borrower list does raise: there is
        nothing to scan without them.
        """
        if registry is None:
            registry = await self.load_registry()
        borrowers = await self.bounded("list_borrowers", self._borrowers.list_borrowers())
        logger.info("Scanning %d borrowers", len(borrowers))

        results = await asyncio.gather(
            *(self.fetch_ledger(b) for b in borrowers), return_exceptions=True
        )

        ledgers: dict[str, list[Position]] = {}
        failures: list[ScanFailure] = []
        for borrower, result in zip(borrowers, results):
            if isinstance(result, Exception):
                logger.warning("Skipping borrower %s: %s", borrower, result)
                failures.append(ScanFailure(borrower=borrower, reason=str(result)))
            elif isinstance(result, BaseException):
                raise result
            else:
                ledgers[borrower] = result

        scanned = scan_ledgers(
            ledgers,
            registry,
            liquidation_threshold=self.liquidation_threshold,
            discount=self.discount,
            now=self._clock(),
        )
        result = ScanResult(
            opportunities=scanned.opportunities,
            failures=tuple(failures) + scanned.failures,
            scanned=len(borrowers),
        )
        logger.info(
            "Scan complete: %d borrowers, %d opportunities, %d failures",
            result.scanned, len(result.opportunities), len(result.failures),
        )
        return result


class OpportunityBook:
    """Current liquidation opportunities, refreshed by each scan."""

    def __init__(self) -> None:
        self._items: dict[str, LiquidationOpportunity] = {}

    def update(self, result: ScanResult) -> list[LiquidationOpportunity]:
        """Replace the book with *result* and return the newly seen opportunities.

        Entries for borrowers whose lookup failed in this scan are kept as-is
        until a later scan can confirm them either way.
        """
        fresh = {o.id: o for o in result.opportunities}
        failed = {f.borrower for f in result.failures}
        kept = {
            oid: o for oid, o in self._items.items()
            if o.borrower in failed and oid not in fresh
        }
        new = [o for oid, o in fresh.items() if oid not in self._items]
        self._items = {**kept, **fresh}
        return rank(new)

    def get(self, opportunity_id: str) -> LiquidationOpportunity:
        try:
            return self._items[opportunity_id]
        except KeyError:
            raise OpportunityNotFound(f"No liquidation opportunity '{opportunity_id}'") from None

    def put(self, opportunity: LiquidationOpportunity) -> None:
        self._items[opportunity.id] = opportunity

    def remove(self, opportunity_id: str) -> LiquidationOpportunity | None:
        return self._items.pop(opportunity_id, None)

    @property
    def opportunities(self) -> list[LiquidationOpportunity]:
        return rank(self._items.values())

    def __contains__(self, opportunity_id: object) -> bool:
        return opportunity_id in self._items

    def __len__(self) -> int:
        return len(self._items)
