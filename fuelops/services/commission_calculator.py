"""
Commission Calculator

Pure computation of a station's commission breakdown from volume, sales,
rate and price-cap margin data. No I/O and no hidden state: identical inputs
always produce an identical CommissionBreakdown.

    total_commission = max(0, base + windfall - shortfall + bonus)
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple


CURRENCY_QUANT = Decimal("0.01")
VOLUME_QUANT = Decimal("0.001")
ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Any) -> Decimal:
    """Convert ints, floats, strings and Decimals without float artefacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_currency(value: Any) -> Decimal:
    return to_decimal(value).quantize(CURRENCY_QUANT, rounding=ROUND_HALF_UP)


def round_volume(value: Any) -> Decimal:
    return to_decimal(value).quantize(VOLUME_QUANT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CapMarginData:
    """
    Price-cap margin data supplied by the compliance collaborator.
    Margins are per unit of volume.
    """
    expected_margin: Decimal
    actual_margin: Decimal

    @classmethod
    def from_prices(cls, price_cap: Any, selling_price: Any, expected_margin: Any = ZERO) -> "CapMarginData":
        """
        Derive margins from the cap vs. selling-price spread.
        Selling below the cap eats into the expected margin; above it adds to it.
        """
        expected = to_decimal(expected_margin)
        actual = expected + (to_decimal(selling_price) - to_decimal(price_cap))
        return cls(expected_margin=expected, actual_margin=actual)

    @property
    def spread(self) -> Decimal:
        return self.actual_margin - self.expected_margin


@dataclass(frozen=True)
class AdjustmentPolicy:
    """Share of the spread credited/debited, and the minimum adjustment applied."""
    windfall_share: Decimal = ONE
    shortfall_share: Decimal = ONE
    windfall_threshold: Decimal = ZERO
    shortfall_threshold: Decimal = ZERO


DEFAULT_ADJUSTMENT_POLICY = AdjustmentPolicy()


@dataclass(frozen=True)
class BonusTier:
    """
    Volume bonus tier. `max_volume` of None means open-ended.
    bonus = bonus_amount + bonus_per_unit * volume
    """
    min_volume: Decimal
    max_volume: Optional[Decimal] = None
    bonus_amount: Decimal = ZERO
    bonus_per_unit: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BonusTier":
        max_volume = data.get("max_volume")
        return cls(
            min_volume=to_decimal(data.get("min_volume", 0)),
            max_volume=to_decimal(max_volume) if max_volume is not None else None,
            bonus_amount=to_decimal(data.get("bonus_amount", 0)),
            bonus_per_unit=to_decimal(data.get("bonus_per_unit", 0)),
        )

    def contains(self, volume: Decimal) -> bool:
        if volume < self.min_volume:
            return False
        return self.max_volume is None or volume <= self.max_volume


def parse_bonus_tiers(raw: Optional[Iterable[Mapping[str, Any]]]) -> tuple:
    """Parse the JSON tier list stored on an OMC."""
    if not raw:
        return ()
    return tuple(BonusTier.from_dict(item) for item in raw)


@dataclass(frozen=True)
class CommissionBreakdown:
    total_volume: Decimal
    total_sales: Decimal
    commission_rate_applied: Decimal
    base_commission_amount: Decimal
    windfall_amount: Decimal
    shortfall_amount: Decimal
    bonus_amount: Decimal
    total_commission: Decimal

    def as_dict(self) -> dict:
        return {
            "total_volume": self.total_volume,
            "total_sales": self.total_sales,
            "commission_rate_applied": self.commission_rate_applied,
            "base_commission_amount": self.base_commission_amount,
            "windfall_amount": self.windfall_amount,
            "shortfall_amount": self.shortfall_amount,
            "bonus_amount": self.bonus_amount,
            "total_commission": self.total_commission,
        }


def lookup_bonus(volume: Decimal, tiers: Sequence[BonusTier]) -> Decimal:
    """Bonus from the highest tier containing the volume; zero if none match."""
    matching = [tier for tier in tiers if tier.contains(volume)]
    if not matching:
        return ZERO
    tier = max(matching, key=lambda t: t.min_volume)
    return tier.bonus_amount + tier.bonus_per_unit * volume


MarginSegment = Tuple[Any, Optional[CapMarginData]]


def segment_margin_adjustments(
    segments: Iterable[MarginSegment],
    policy: AdjustmentPolicy,
) -> tuple:
    """
    Return (windfall, shortfall) over (volume, cap margin data) segments.

    Each segment's volume earns the spread of its own margin data; segments
    without margin data contribute nothing. Amounts are summed unrounded,
    rounded once, then held to the policy thresholds.
    """
    windfall = shortfall = ZERO
    for volume, cap_margin_data in segments:
        if cap_margin_data is None:
            continue
        spread = cap_margin_data.spread
        volume = to_decimal(volume)
        windfall += max(spread, ZERO) * volume * policy.windfall_share
        shortfall += max(-spread, ZERO) * volume * policy.shortfall_share

    windfall = round_currency(windfall)
    shortfall = round_currency(shortfall)
    if windfall < policy.windfall_threshold:
        windfall = ZERO
    if shortfall < policy.shortfall_threshold:
        shortfall = ZERO
    return windfall, shortfall


def margin_adjustments(
    volume: Decimal,
    cap_margin_data: Optional[CapMarginData],
    policy: AdjustmentPolicy,
) -> tuple:
    """Return (windfall, shortfall), both non-negative and rounded."""
    return segment_margin_adjustments([(volume, cap_margin_data)], policy)


def calculate(
    volume: Any,
    sales: Any,
    rate: Any,
    cap_margin_data: Optional[CapMarginData] = None,
    bonus_tiers: Sequence[BonusTier] = (),
    adjustment_policy: Optional[AdjustmentPolicy] = None,
    margin_segments: Optional[Iterable[MarginSegment]] = None,
) -> CommissionBreakdown:
    """
    Compute a commission breakdown.

    Args:
        volume: Total volume sold in the window
        sales: Total sales value in the window
        rate: Commission per unit volume
        cap_margin_data: Price-cap margin data; None means no adjustment applies
        bonus_tiers: Volume bonus table
        adjustment_policy: Windfall/shortfall share and thresholds
        margin_segments: Per-day (volume, cap margin data) pairs; when given they
            replace cap_margin_data so each day earns its own spread

    Returns:
        CommissionBreakdown with currency rounded to 2dp and volume to 3dp
    """
    total_volume = round_volume(volume)
    total_sales = round_currency(sales)
    rate = to_decimal(rate)
    policy = adjustment_policy or DEFAULT_ADJUSTMENT_POLICY

    base = round_currency(total_volume * rate)
    if margin_segments is not None:
        windfall, shortfall = segment_margin_adjustments(margin_segments, policy)
    else:
        windfall, shortfall = margin_adjustments(total_volume, cap_margin_data, policy)
    bonus = round_currency(lookup_bonus(total_volume, bonus_tiers))

    total = max(ZERO, base + windfall - shortfall + bonus)

    return CommissionBreakdown(
        total_volume=total_volume,
        total_sales=total_sales,
        commission_rate_applied=rate,
        base_commission_amount=base,
        windfall_amount=windfall,
        shortfall_amount=shortfall,
        bonus_amount=bonus,
        total_commission=round_currency(total),
    )
