"""
Price-cap compliance inputs for the calculator.

Reads PriceCapCompliance rows (published by the compliance service) and the
station's WindfallShortfallConfig, and turns them into CapMarginData and an
AdjustmentPolicy. Read-only.
"""

import logging
from datetime import date
from typing import Dict, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelops.core.periods import iter_days
from fuelops.models.commission import AdjustmentType, WindfallShortfallConfig
from fuelops.models.ledger import PriceCapCompliance
from fuelops.services.commission_calculator import (
    AdjustmentPolicy,
    CapMarginData,
    DEFAULT_ADJUSTMENT_POLICY,
    to_decimal,
)

logger = logging.getLogger(__name__)


def _margin_data(row: PriceCapCompliance) -> CapMarginData:
    return CapMarginData.from_prices(row.price_cap, row.selling_price, row.expected_margin)


class CapMarginProvider:
    """
    Cap margin data per station.

    The record in force for a day is the latest one effective on or before
    that day.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rows_until(self, station_id: uuid.UUID, end: date) -> List[PriceCapCompliance]:
        result = await self.db.execute(
            select(PriceCapCompliance)
            .where(
                PriceCapCompliance.station_id == station_id,
                PriceCapCompliance.effective_date <= end,
            )
            .order_by(PriceCapCompliance.effective_date)
        )
        return list(result.scalars().all())

    async def daily(self, station_id: uuid.UUID, start: date, end: date) -> Dict[date, CapMarginData]:
        """Map every day in [start, end] that has a record in force to its margin data."""
        rows = await self._rows_until(station_id, end)
        in_force: Dict[date, CapMarginData] = {}
        index = -1
        for day in iter_days(start, end):
            while index + 1 < len(rows) and rows[index + 1].effective_date <= day:
                index += 1
            if index >= 0:
                in_force[day] = _margin_data(rows[index])
        return in_force


async def load_adjustment_policy(
    db: AsyncSession,
    station_id: uuid.UUID,
    start: date,
    end: date,
) -> AdjustmentPolicy:
    """
    Build the windfall/shortfall policy for a station and window.
    The most recently effective active config of each type wins; a type
    without config keeps the default share of 1 and threshold of 0.
    """
    result = await db.execute(
        select(WindfallShortfallConfig)
        .where(
            WindfallShortfallConfig.station_id == station_id,
            WindfallShortfallConfig.is_active == True,
        )
        .order_by(WindfallShortfallConfig.effective_date.desc())
    )
    configs = [config for config in result.scalars().all() if config.applies_to(start, end)]
    if not configs:
        return DEFAULT_ADJUSTMENT_POLICY

    windfall = next((c for c in configs if c.type == AdjustmentType.WINDFALL.value), None)
    shortfall = next((c for c in configs if c.type == AdjustmentType.SHORTFALL.value), None)

    policy = AdjustmentPolicy(
        windfall_share=to_decimal(windfall.commission_rate) if windfall else DEFAULT_ADJUSTMENT_POLICY.windfall_share,
        shortfall_share=to_decimal(shortfall.commission_rate) if shortfall else DEFAULT_ADJUSTMENT_POLICY.shortfall_share,
        windfall_threshold=to_decimal(windfall.threshold_amount) if windfall else DEFAULT_ADJUSTMENT_POLICY.windfall_threshold,
        shortfall_threshold=to_decimal(shortfall.threshold_amount) if shortfall else DEFAULT_ADJUSTMENT_POLICY.shortfall_threshold,
    )
    logger.debug(f"Adjustment policy for station {station_id}: {policy}")
    return policy
