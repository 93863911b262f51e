"""
Progressive Accrual Tracker

Day-by-day commission accrual for the open period, with trend markers and an
end-of-period estimate. Read-only; each day reuses the commission calculator
with that day's volume and cap data.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional
import uuid

from fuelops.config import settings
from fuelops.core.exceptions import UpstreamDataUnavailable
from fuelops.core.periods import days_in_period, iter_days, period_bounds
from fuelops.services.commission_calculator import (
    AdjustmentPolicy,
    ZERO,
    calculate,
    round_currency,
    round_volume,
    to_decimal,
)
from fuelops.services.compliance import CapMarginProvider
from fuelops.services.data_aggregator import DataAggregator
from fuelops.services.rate_resolver import RateResolver

logger = logging.getLogger(__name__)


class Trend:
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


def classify_trend(previous: Optional[Decimal], current: Decimal, dead_zone: Optional[Decimal] = None) -> str:
    """
    Compare a day's earnings with the previous day's.
    Relative changes inside +/- dead_zone are neutral; zero to positive is up.
    """
    if previous is None:
        return Trend.NEUTRAL
    dead_zone = to_decimal(settings.TREND_DEAD_ZONE if dead_zone is None else dead_zone)

    if previous == 0:
        return Trend.UP if current > 0 else Trend.NEUTRAL

    change = (current - previous) / previous
    if change > dead_zone:
        return Trend.UP
    if change < -dead_zone:
        return Trend.DOWN
    return Trend.NEUTRAL


@dataclass(frozen=True)
class DailyAccrualPoint:
    date: date
    station_id: uuid.UUID
    volume: Decimal
    commission_earned: Decimal
    cumulative_commission: Decimal
    cumulative_volume: Decimal
    trend: str
    is_today: bool
    has_data: bool


@dataclass
class StationProjection:
    station_id: uuid.UUID
    period: str
    days_in_period: int
    points: List[DailyAccrualPoint] = field(default_factory=list)
    estimated_final_commission: Decimal = ZERO
    is_estimate: bool = True
    data_source: Optional[str] = None

    @property
    def days_elapsed(self) -> int:
        return len(self.points)

    @property
    def cumulative_commission(self) -> Decimal:
        return self.points[-1].cumulative_commission if self.points else ZERO


class ProgressiveTracker:

    def __init__(
        self,
        aggregator: DataAggregator,
        resolver: RateResolver,
        cap_provider: CapMarginProvider,
        dead_zone: Optional[Decimal] = None,
    ):
        self.aggregator = aggregator
        self.resolver = resolver
        self.cap_provider = cap_provider
        self.dead_zone = dead_zone

    async def project(
        self,
        station_id: uuid.UUID,
        period: str,
        today: Optional[date] = None,
        adjustment_policy: Optional[AdjustmentPolicy] = None,
    ) -> StationProjection:
        """
        Build the accrual series from the period start up to today (or the
        period end for a closed period).
        """
        start, end = period_bounds(period)
        today = today or date.today()
        projection = StationProjection(
            station_id=station_id,
            period=period,
            days_in_period=days_in_period(period),
            is_estimate=today <= end,
        )
        if today < start:
            return projection

        window_end = min(today, end)
        rate = await self.resolver.resolve(station_id)

        try:
            aggregate = await self.aggregator.aggregate(station_id, period, as_of=window_end)
            by_day = aggregate.by_day()
            projection.data_source = aggregate.data_source
        except UpstreamDataUnavailable:
            logger.info(f"No upstream data yet for station {station_id} in {period}")
            by_day = {}

        cap_by_day = await self.cap_provider.daily(station_id, start, window_end)

        cumulative = ZERO
        cumulative_volume = ZERO
        previous_earned: Optional[Decimal] = None

        for day in iter_days(start, window_end):
            slice_ = by_day.get(day)
            volume = slice_.volume if slice_ else ZERO
            sales = slice_.sales if slice_ else ZERO

            breakdown = calculate(
                volume,
                sales,
                rate,
                cap_margin_data=cap_by_day.get(day) if slice_ else None,
                adjustment_policy=adjustment_policy,
            )
            earned = breakdown.total_commission
            cumulative += earned
            cumulative_volume += breakdown.total_volume

            projection.points.append(DailyAccrualPoint(
                date=day,
                station_id=station_id,
                volume=breakdown.total_volume,
                commission_earned=earned,
                cumulative_commission=round_currency(cumulative),
                cumulative_volume=round_volume(cumulative_volume),
                trend=classify_trend(previous_earned, earned, self.dead_zone),
                is_today=day == today,
                has_data=slice_ is not None,
            ))
            previous_earned = earned

        elapsed = projection.days_elapsed
        remaining = projection.days_in_period - elapsed
        projection.estimated_final_commission = round_currency(
            cumulative + (cumulative / elapsed) * remaining
        )
        return projection
