"""
Data Aggregator

Gathers a station's period volume and sales from upstream ledgers.

Sources:
- TankStockSource: daily tank reconciliation (authoritative when every row
  in the window is physically reconciled)
- SalesLedgerSource: pump transaction aggregates

Which source wins is decided by a SourceSelectionStrategy so new sources can
be added without touching the calculator. Only days with data are
aggregated; missing days are never filled in.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelops.config import settings
from fuelops.core.exceptions import UpstreamDataUnavailable, ValidationError
from fuelops.core.periods import period_bounds
from fuelops.models.commission import DataSource
from fuelops.models.ledger import DailyTankStock, SalesTransaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class DailySlice:
    day: date
    volume: Decimal
    sales: Decimal


@dataclass(frozen=True)
class SourceResult:
    """What one upstream source returned for a window."""
    data_source: str
    daily: tuple
    authoritative: bool


@dataclass(frozen=True)
class PeriodAggregate:
    station_id: uuid.UUID
    period: str
    window_start: date
    window_end: date
    total_volume: Decimal
    total_sales: Decimal
    data_source: str
    daily: tuple

    @property
    def days_with_data(self) -> int:
        return len(self.daily)

    def by_day(self) -> Dict[date, DailySlice]:
        return {item.day: item for item in self.daily}


@runtime_checkable
class AggregationSource(Protocol):
    name: str

    async def fetch(self, station_id: uuid.UUID, start: date, end: date) -> Optional[SourceResult]:
        """Return data for [start, end], or None when the source has no rows."""
        ...


class TankStockSource:
    """Daily tank-stock deltas. Sold volume per row comes from DailyTankStock.sold_volume."""
    name = DataSource.TANK_STOCK.value

    def __init__(self, db: AsyncSession):
        self.db = db

    async def fetch(self, station_id: uuid.UUID, start: date, end: date) -> Optional[SourceResult]:
        result = await self.db.execute(
            select(DailyTankStock)
            .where(
                DailyTankStock.station_id == station_id,
                DailyTankStock.stock_date >= start,
                DailyTankStock.stock_date <= end,
            )
            .order_by(DailyTankStock.stock_date)
        )
        rows = result.scalars().all()
        if not rows:
            return None

        volumes: Dict[date, Decimal] = defaultdict(lambda: ZERO)
        sales: Dict[date, Decimal] = defaultdict(lambda: ZERO)
        for row in rows:
            sold = row.sold_volume
            volumes[row.stock_date] += sold
            if row.unit_price is not None:
                sales[row.stock_date] += sold * Decimal(row.unit_price)

        daily = tuple(
            DailySlice(day=day, volume=volumes[day], sales=sales[day])
            for day in sorted(volumes)
        )
        return SourceResult(
            data_source=self.name,
            daily=daily,
            authoritative=all(row.is_reconciled for row in rows),
        )


class SalesLedgerSource:
    """Per-day aggregates of pump sales transactions."""
    name = DataSource.SALES.value

    def __init__(self, db: AsyncSession):
        self.db = db

    async def fetch(self, station_id: uuid.UUID, start: date, end: date) -> Optional[SourceResult]:
        result = await self.db.execute(
            select(
                SalesTransaction.transaction_date,
                func.sum(SalesTransaction.volume),
                func.sum(SalesTransaction.amount),
            )
            .where(
                SalesTransaction.station_id == station_id,
                SalesTransaction.transaction_date >= start,
                SalesTransaction.transaction_date <= end,
            )
            .group_by(SalesTransaction.transaction_date)
            .order_by(SalesTransaction.transaction_date)
        )
        rows = result.all()
        if not rows:
            return None

        daily = tuple(
            DailySlice(
                day=day,
                volume=Decimal(str(volume or 0)),
                sales=Decimal(str(amount or 0)),
            )
            for day, volume, amount in rows
        )
        return SourceResult(data_source=self.name, daily=daily, authoritative=True)


class SourceSelectionStrategy(Protocol):
    def is_decisive(self, result: SourceResult) -> bool:
        """True when no further sources need to be consulted."""
        ...

    def choose(self, results: Sequence[SourceResult]) -> Optional[SourceResult]:
        """Pick the winning result among those fetched, in source order."""
        ...


class AuthoritativeFirstStrategy:
    """
    First authoritative result in source order wins.
    With no authoritative result, the first result of any kind is used.
    """

    def is_decisive(self, result: SourceResult) -> bool:
        return result.authoritative

    def choose(self, results: Sequence[SourceResult]) -> Optional[SourceResult]:
        for result in results:
            if result.authoritative:
                return result
        return results[0] if results else None


def default_sources(db: AsyncSession) -> List[AggregationSource]:
    """Tank stock first (physically reconciled), then the sales ledger."""
    return [TankStockSource(db), SalesLedgerSource(db)]


class DataAggregator:
    """
    Aggregate a station's period data from the first suitable upstream source.
    """

    def __init__(
        self,
        sources: Sequence[AggregationSource],
        strategy: Optional[SourceSelectionStrategy] = None,
        timeout: Optional[float] = None,
    ):
        self.sources = list(sources)
        self.strategy = strategy or AuthoritativeFirstStrategy()
        self.timeout = settings.UPSTREAM_FETCH_TIMEOUT_SECONDS if timeout is None else timeout

    async def _fetch(self, source: AggregationSource, station_id: uuid.UUID, start: date, end: date) -> Optional[SourceResult]:
        try:
            return await asyncio.wait_for(source.fetch(station_id, start, end), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Source '{source.name}' timed out after {self.timeout}s for station {station_id} "
                f"({start} - {end})"
            )
            return None
        except Exception as e:
            logger.warning(
                f"Source '{source.name}' failed for station {station_id} ({start} - {end}): "
                f"{type(e).__name__}: {e}"
            )
            return None

    async def aggregate(
        self,
        station_id: uuid.UUID,
        period: str,
        as_of: Optional[date] = None,
    ) -> PeriodAggregate:
        """
        Aggregate the period (up to `as_of` for an open period).

        Raises:
            ValidationError: period starts after `as_of`
            UpstreamDataUnavailable: no source yields data for the window
        """
        start, end = period_bounds(period)
        if as_of is not None and as_of < end:
            end = as_of
        if end < start:
            raise ValidationError(
                f"Period {period} has not started yet",
                {"period": period, "as_of": as_of.isoformat() if as_of else None},
            )

        results: List[SourceResult] = []
        for source in self.sources:
            result = await self._fetch(source, station_id, start, end)
            if result is None:
                continue
            results.append(result)
            if self.strategy.is_decisive(result):
                break

        chosen = self.strategy.choose(results)
        if chosen is None:
            raise UpstreamDataUnavailable(
                f"No upstream data for station {station_id} in {period}",
                {
                    "station_id": str(station_id),
                    "period": period,
                    "sources": [source.name for source in self.sources],
                },
            )

        if not chosen.authoritative:
            logger.warning(
                f"Using unreconciled {chosen.data_source} data for station {station_id} in {period}"
            )

        return PeriodAggregate(
            station_id=station_id,
            period=period,
            window_start=start,
            window_end=end,
            total_volume=sum((item.volume for item in chosen.daily), ZERO),
            total_sales=sum((item.sales for item in chosen.daily), ZERO),
            data_source=chosen.data_source,
            daily=chosen.daily,
        )
